"""Remaining-time derivation for rentals.

Nothing here is persisted: remaining time is recomputed from
``end_time`` and the clock on every read.
"""

import asyncio
import math
from datetime import datetime
from typing import AsyncIterator, Awaitable, Callable, Optional

from ..clock import Clock, SystemClock
from ..models import Rental, RentalStatus

TICK_SECONDS = 1.0


def remaining_seconds(end_time: datetime, now: datetime) -> int:
    """Whole seconds until ``end_time``, never negative."""
    return max(0, math.floor((end_time - now).total_seconds()))


def rental_status(rental: Optional[Rental], now: datetime) -> RentalStatus:
    if rental is None:
        return RentalStatus.NONE
    if remaining_seconds(rental.end_time, now) > 0:
        return RentalStatus.ACTIVE
    return RentalStatus.EXPIRED


class Countdown:
    """Live countdown to a rental's end time."""

    def __init__(
        self,
        end_time: datetime,
        clock: Optional[Clock] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        interval: float = TICK_SECONDS,
    ):
        self.end_time = end_time
        self.clock = clock or SystemClock()
        self._sleep = sleep
        self.interval = interval

    def remaining(self) -> int:
        return remaining_seconds(self.end_time, self.clock.now())

    @property
    def expired(self) -> bool:
        return self.remaining() == 0

    def status(self) -> RentalStatus:
        return RentalStatus.EXPIRED if self.expired else RentalStatus.ACTIVE

    async def ticks(self) -> AsyncIterator[int]:
        """Yield remaining seconds every interval; ends after yielding 0."""
        while True:
            left = self.remaining()
            yield left
            if left == 0:
                return
            await self._sleep(self.interval)
