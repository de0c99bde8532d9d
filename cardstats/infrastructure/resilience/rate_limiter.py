"""Implementation of a rate limiter.

Controls the frequency of outgoing listing requests so the shared remote
budget is never exceeded. Uses a sliding window of request timestamps.
"""

import time
import asyncio
import logging
from collections import deque
from typing import Callable, Iterable, List, Optional

from cardstats.domain.models.common import RateLimitStats

logger = logging.getLogger(__name__)

DEFAULT_MAX_REQUESTS = 70 # Max 70 requests...
DEFAULT_TIME_WINDOW_SECONDS = 60 # ...per 60 seconds

class RateLimiter:
    """Sliding window rate limiter.

    The limiter itself never blocks: try_acquire() answers immediately and
    callers decide whether to wait (wait_for_permission) or give up.
    """

    def __init__(
        self,
        max_requests: int = DEFAULT_MAX_REQUESTS,
        time_window: float = DEFAULT_TIME_WINDOW_SECONDS,
        clock: Callable[[], float] = time.time,
        sleep: Optional[Callable[[float], "asyncio.Future"]] = None,
    ):
        """Initializes the rate limiter.

        Args:
            max_requests: Maximum number of requests allowed in the time window.
            time_window: The time window in seconds.
            clock: Wall-clock source; wall time so the window can be persisted.
            sleep: Awaitable sleep used by wait_for_permission (defaults to asyncio.sleep).
        """
        if max_requests < 1:
            raise ValueError("max_requests must be at least 1")
        if time_window <= 0:
            raise ValueError("time_window must be positive")
        self.max_requests = max_requests
        self.time_window = time_window
        self.timestamps: deque = deque()
        self._clock = clock
        self._sleep = sleep or asyncio.sleep
        logger.info(f"RateLimiter initialized: {max_requests} requests / {time_window} seconds")

    def _cleanup_timestamps(self, now: float) -> None:
        """Removes timestamps that have left the trailing window."""
        while self.timestamps and now - self.timestamps[0] >= self.time_window:
            self.timestamps.popleft()

    def try_acquire(self) -> bool:
        """Records a request and returns True if the window has room, else False."""
        now = self._clock()
        self._cleanup_timestamps(now)
        if len(self.timestamps) < self.max_requests:
            self.timestamps.append(now)
            return True
        logger.debug(f"Rate limit reached: {len(self.timestamps)}/{self.max_requests}")
        return False

    def get_wait_time(self) -> float:
        """Estimates the time needed before the next request can be made."""
        now = self._clock()
        self._cleanup_timestamps(now)
        if len(self.timestamps) < self.max_requests:
            return 0.0
        oldest_timestamp = self.timestamps[0]
        return max(0.0, oldest_timestamp + self.time_window - now)

    async def wait_for_permission(self) -> None:
        """Waits until a request is permitted according to the rate limit."""
        while not self.try_acquire():
            wait_time = self.get_wait_time()
            logger.debug(f"Rate limit reached. Waiting for {wait_time:.2f} seconds.")
            await self._sleep(wait_time)

    def stats(self) -> RateLimitStats:
        """Reports window usage without recording a request."""
        now = self._clock()
        live = [ts for ts in self.timestamps if now - ts < self.time_window]
        reset_in = 0
        if live:
            reset_in = max(0, int(round(live[0] + self.time_window - now)))
        return {
            "current": len(live),
            "max": self.max_requests,
            "remaining": max(0, self.max_requests - len(live)),
            "reset_in_seconds": reset_in,
        }

    def snapshot(self) -> List[float]:
        """Returns the live window timestamps, oldest first."""
        now = self._clock()
        self._cleanup_timestamps(now)
        return list(self.timestamps)

    def restore(self, timestamps: Iterable[float]) -> int:
        """Reloads a persisted window. Invalid, expired and excess entries are dropped."""
        now = self._clock()
        valid = sorted(
            float(ts) for ts in timestamps
            if isinstance(ts, (int, float)) and not isinstance(ts, bool) and 0 <= now - ts < self.time_window
        )
        # Keep the newest entries if the persisted window was larger than the current cap
        self.timestamps = deque(valid[-self.max_requests:])
        logger.debug(f"Restored {len(self.timestamps)} request timestamps into the rate window")
        return len(self.timestamps)

    def force_reset(self) -> None:
        """Forgets every recorded request."""
        self.timestamps.clear()
        logger.info("Rate limit window cleared")
