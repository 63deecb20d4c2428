"""
Fixed-interval throttle for logical fetch starts.
"""

from __future__ import annotations

import asyncio
import logging

from fetchcore.utils.counters import AtomicCounter

logger = logging.getLogger(__name__)


class RateLimiter:
    """
    Spaces out request starts issued through one engine instance.

    The first acquire returns immediately; every later acquire waits the
    full interval. Callers acquire once per logical fetch, never per retry.
    """

    def __init__(self, interval: float = 1.0, counter: AtomicCounter | None = None):
        self.interval = interval
        self._issued = counter if counter is not None else AtomicCounter()
        logger.debug("Rate limiter initialized with %.3fs interval", interval)

    async def acquire(self) -> int:
        """Count one request start, waiting first unless it is the very first one.

        Returns the number of requests issued before this one.
        """
        previous = self._issued.get_and_increment()
        if previous > 0 and self.interval > 0:
            await asyncio.sleep(self.interval)
        return previous

    @property
    def issued(self) -> int:
        return self._issued.value
