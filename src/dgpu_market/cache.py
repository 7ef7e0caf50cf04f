"""Key-value price cache used as the oracle fallback."""

import json
import math
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional
import structlog

logger = structlog.get_logger()

PRICE_CACHE_KEY = "cached_dgpu_price_usd"


def _finite_price(value: float) -> float:
    price = float(value)
    if not math.isfinite(price):
        raise ValueError(f"Refusing to cache non-finite price: {value}")
    return price


class PriceCache(ABC):
    """Persistent key-value store for last-known-good prices."""

    @abstractmethod
    def get(self, key: str) -> Optional[float]:
        ...

    @abstractmethod
    def set(self, key: str, value: float) -> None:
        ...

    @abstractmethod
    def clear(self) -> None:
        ...


class MemoryPriceCache(PriceCache):
    """Process-local cache."""

    def __init__(self, initial: Optional[dict[str, float]] = None):
        self._values: dict[str, float] = dict(initial or {})

    def get(self, key: str) -> Optional[float]:
        return self._values.get(key)

    def set(self, key: str, value: float) -> None:
        self._values[key] = _finite_price(value)

    def clear(self) -> None:
        self._values.clear()


class FilePriceCache(PriceCache):
    """Cache persisted as a JSON object on disk."""

    def __init__(self, path: str | Path):
        self.path = Path(path).expanduser()

    def _load(self) -> dict:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning("price_cache_unreadable", path=str(self.path), error=str(e))
            return {}
        return data if isinstance(data, dict) else {}

    def get(self, key: str) -> Optional[float]:
        value = self._load().get(key)
        try:
            price = float(value) if value is not None else None
        except (TypeError, ValueError):
            return None
        return price if price is None or math.isfinite(price) else None

    def set(self, key: str, value: float) -> None:
        data = self._load()
        data[key] = _finite_price(value)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(data), encoding="utf-8")

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)
