"""Rental price calculation in dGPU."""

from typing import Optional, Tuple
import structlog

from ..cache import PriceCache, PRICE_CACHE_KEY
from ..config import get_settings
from ..exceptions import PricingUnavailableError
from ..models import PriceSource, RentalQuote
from .oracle import PriceOracle

logger = structlog.get_logger()


class RentalPriceCalculator:
    """Converts an agent's USD hourly rate into a dGPU amount."""

    def __init__(
        self,
        oracle: PriceOracle,
        cache: PriceCache,
        prices_usd: Optional[dict[str, float]] = None,
        default_rate_usd: Optional[float] = None,
    ):
        settings = get_settings()
        self.oracle = oracle
        self.cache = cache
        self.prices_usd = dict(settings.agent_prices_usd if prices_usd is None else prices_usd)
        self.default_rate_usd = (
            settings.default_rate_usd if default_rate_usd is None else default_rate_usd
        )

    def usd_rate(self, agent_id: str) -> float:
        """Hourly USD rate for an agent (default rate if unlisted)."""
        return self.prices_usd.get(agent_id, self.default_rate_usd)

    async def resolve_price(self) -> Tuple[float, Optional[PriceSource]]:
        """Oracle price, else the cached price, else (0.0, None).

        A fresh oracle price overwrites the cache.
        """
        price = await self.oracle.get_token_price_usd()
        if price > 0:
            self.cache.set(PRICE_CACHE_KEY, price)
            logger.info("oracle_price_cached", price=price)
            return price, PriceSource.ORACLE

        cached = self.cache.get(PRICE_CACHE_KEY)
        if cached and cached > 0:
            logger.warning("oracle_fallback_to_cache", price=cached)
            return cached, PriceSource.CACHE

        logger.error("oracle_no_price_available")
        return 0.0, None

    async def calculate_amount(self, agent_id: str, hours: int = 1) -> float:
        """dGPU required to rent ``agent_id`` for ``hours``.

        Returns 0.0 when no price is available; callers must not proceed
        to payment in that case.
        """
        price, _ = await self.resolve_price()
        if price <= 0:
            return 0.0

        total_usd = self.usd_rate(agent_id) * hours
        amount = total_usd / price
        logger.info("rental_amount_calculated", agent_id=agent_id, hours=hours, usd=total_usd, dgpu=amount)
        return amount

    async def quote(self, agent_id: str, hours: int = 1) -> RentalQuote:
        """Full price breakdown. Raises PricingUnavailableError with no price."""
        if hours <= 0:
            raise ValueError("hours must be positive")

        price, source = await self.resolve_price()
        if price <= 0 or source is None:
            raise PricingUnavailableError(agent_id)

        rate = self.usd_rate(agent_id)
        total_usd = rate * hours
        return RentalQuote(
            agent_slug=agent_id,
            hours=hours,
            usd_rate=rate,
            usd_total=total_usd,
            token_price_usd=price,
            price_source=source,
            dgpu_amount=total_usd / price,
        )
