"""Rental module: records, countdowns and the end-to-end flow."""

from .countdown import Countdown, remaining_seconds, rental_status
from .record import RentalRecordWriter
from .flow import RentalFlow

__all__ = [
    "Countdown",
    "remaining_seconds",
    "rental_status",
    "RentalRecordWriter",
    "RentalFlow",
]
