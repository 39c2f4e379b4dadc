"""Rate limiter implementation using sliding window algorithm."""

import asyncio
import time
from typing import Dict, List, Optional

from structlog import get_logger

from ..domain.errors import RateLimitedError

logger = get_logger()


class RateLimiter:
    """Counts message events per key over a sliding time window.

    A ``rate_limit`` of 0 disables the check.
    """

    def __init__(self, rate_limit: int = 0, time_window: int = 60):
        """Initialize rate limiter with configurable parameters."""
        self.rate_limit = rate_limit
        self.time_window = time_window  # in seconds
        self.requests: Dict[str, List[float]] = {}
        self._lock = asyncio.Lock()
        self._cleanup_task: Optional[asyncio.Task] = None
        logger.info(
            "rate_limiter_initialized",
            rate_limit=rate_limit,
            time_window=time_window
        )

    async def start(self):
        """Start the rate limiter cleanup task."""
        if self._cleanup_task is None:
            self._cleanup_task = asyncio.create_task(self._periodic_cleanup())

    async def stop(self):
        """Stop the rate limiter cleanup task."""
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None

    def _prune(self, key: str, now: float) -> List[float]:
        cutoff_time = now - self.time_window
        timestamps = [ts for ts in self.requests.get(key, []) if ts > cutoff_time]
        if timestamps:
            self.requests[key] = timestamps
        else:
            self.requests.pop(key, None)
        return timestamps

    async def _periodic_cleanup(self):
        """Periodically clean up old request timestamps."""
        while True:
            try:
                await asyncio.sleep(self.time_window)
                async with self._lock:
                    now = time.time()
                    for key in list(self.requests.keys()):
                        self._prune(key, now)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("rate_limiter_cleanup_error", error=str(e))

    async def check_rate_limit(self, *keys: str) -> None:
        """Record one event for every key, or raise if any key is over quota."""
        if not self.rate_limit:
            return

        now = time.time()
        async with self._lock:
            for key in keys:
                current = self._prune(key, now)
                if len(current) >= self.rate_limit:
                    logger.warning(
                        "rate_limit_exceeded",
                        key=key,
                        current_requests=len(current),
                        rate_limit=self.rate_limit
                    )
                    raise RateLimitedError(
                        "We are receiving too many requests from you, please wait a minute"
                    )

            for key in keys:
                self.requests.setdefault(key, []).append(now)
            logger.debug("request_tracked", keys=list(keys), rate_limit=self.rate_limit)

    async def get_remaining_requests(self, key: str) -> Optional[int]:
        """Remaining events for the key in the current window, None if unlimited."""
        if not self.rate_limit:
            return None
        async with self._lock:
            return max(0, self.rate_limit - len(self._prune(key, time.time())))
