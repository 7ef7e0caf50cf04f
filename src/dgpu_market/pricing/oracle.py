"""dGPU/USD price oracle client.

The feed follows the CoinGecko simple-price shape::

    GET <oracle_url>?ids=<token_key>&vs_currencies=usd
    -> {"<token_key>": {"usd": 0.0123}}

Any failure yields ``0.0`` ("unknown"); the caller decides whether to
fall back to a cached price.
"""

import math
from typing import Optional
import httpx
import structlog

from ..config import get_settings

logger = structlog.get_logger()


class PriceOracle:
    """Client for the dGPU price feed."""

    def __init__(
        self,
        url: Optional[str] = None,
        token_key: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout: Optional[float] = None,
    ):
        settings = get_settings()
        self.url = url or settings.oracle_url
        self.token_key = token_key or settings.oracle_token_key
        self.timeout = timeout if timeout is not None else settings.oracle_timeout_seconds
        self._client = client

    async def get_token_price_usd(self) -> float:
        """Current dGPU price in USD, or 0.0 when unavailable. Never raises."""
        params = {"ids": self.token_key, "vs_currencies": "usd"}
        try:
            if self._client is not None:
                response = await self._client.get(self.url, params=params, timeout=self.timeout)
            else:
                async with httpx.AsyncClient() as client:
                    response = await client.get(self.url, params=params, timeout=self.timeout)

            if not response.is_success:
                logger.error("oracle_bad_status", status=response.status_code)
                return 0.0

            data = response.json()
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            logger.error("oracle_request_failed", error=str(e))
            return 0.0
        except ValueError as e:
            logger.error("oracle_invalid_json", error=str(e))
            return 0.0

        return self._extract_price(data)

    def _extract_price(self, data) -> float:
        entry = data.get(self.token_key) if isinstance(data, dict) else None
        usd = entry.get("usd") if isinstance(entry, dict) else None
        try:
            price = float(usd) if usd is not None else 0.0
        except (TypeError, ValueError, OverflowError):
            price = 0.0

        if not math.isfinite(price) or price <= 0:
            logger.warning("oracle_price_missing", token_key=self.token_key)
            return 0.0
        return price
