"""dGPU pricing: oracle client and rental price calculator."""

from .oracle import PriceOracle
from .calculator import RentalPriceCalculator

__all__ = ["PriceOracle", "RentalPriceCalculator"]
