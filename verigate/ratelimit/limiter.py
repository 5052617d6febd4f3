"""Sliding-window call budget per downstream service."""

import asyncio
import threading
import time
from collections import deque
from collections.abc import Callable

from ..errors import InternalRateLimitError
from ..logging_config import get_logger

logger = get_logger(__name__)


class RateLimiter:
    """Counts calls per service name within a trailing time window.

    Rejection is immediate: there is no queue, callers back off on their
    own. Timestamps older than the window are dropped lazily on every call
    and by an optional background sweep (start()/stop()).

    Example:
        limiter = RateLimiter(limit=60, window_seconds=60)
        if not limiter.try_acquire("cv-enhancement"):
            raise InternalRateLimitError("cv-enhancement", 60, 60)
    """

    def __init__(
        self,
        limit: int = 60,
        window_seconds: float = 60.0,
        sweep_interval_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        if limit < 1:
            raise ValueError("limit must be at least 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")

        self.limit = limit
        self.window_seconds = window_seconds
        self.sweep_interval = sweep_interval_seconds
        self._clock = clock

        self._calls: dict[str, deque[float]] = {}
        self._lock = threading.Lock()
        self._sweep_task: asyncio.Task | None = None
        self._running = False

    def try_acquire(self, service: str) -> bool:
        """Record a call for the service if it fits in the window.

        Returns False once the window already holds `limit` calls.
        """
        now = self._clock()
        with self._lock:
            calls = self._calls.setdefault(service, deque())
            self._drop_expired(calls, now)
            if len(calls) >= self.limit:
                return False
            calls.append(now)
            return True

    def check(self, service: str) -> None:
        """Acquire or raise InternalRateLimitError."""
        if not self.try_acquire(service):
            logger.warning(
                "Rate limit exceeded for service %s (%d / %.0fs)",
                service,
                self.limit,
                self.window_seconds,
            )
            raise InternalRateLimitError(service, self.limit, self.window_seconds)

    def remaining(self, service: str) -> int:
        now = self._clock()
        with self._lock:
            calls = self._calls.get(service)
            if not calls:
                return self.limit
            self._drop_expired(calls, now)
            return max(0, self.limit - len(calls))

    def purge_expired(self) -> int:
        """Drop stale timestamps for every service; returns how many went."""
        now = self._clock()
        removed = 0
        with self._lock:
            for service in list(self._calls):
                calls = self._calls[service]
                removed += self._drop_expired(calls, now)
                if not calls:
                    del self._calls[service]
        return removed

    def reset(self, service: str | None = None) -> None:
        with self._lock:
            if service is None:
                self._calls.clear()
            else:
                self._calls.pop(service, None)

    def get_stats(self) -> dict:
        now = self._clock()
        with self._lock:
            for calls in self._calls.values():
                self._drop_expired(calls, now)
            return {
                "limit": self.limit,
                "window_seconds": self.window_seconds,
                "services": {service: len(calls) for service, calls in self._calls.items()},
            }

    def _drop_expired(self, calls: deque[float], now: float) -> int:
        cutoff = now - self.window_seconds
        removed = 0
        while calls and calls[0] <= cutoff:
            calls.popleft()
            removed += 1
        return removed

    async def start(self) -> None:
        """Start the background sweep."""
        if self._running:
            return
        self._running = True
        self._sweep_task = asyncio.create_task(self._sweep_loop())

    async def stop(self) -> None:
        """Stop the background sweep and wait for it to exit."""
        self._running = False
        if self._sweep_task:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None

    @property
    def is_running(self) -> bool:
        return self._running

    async def _sweep_loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self.sweep_interval)
                removed = self.purge_expired()
                if removed:
                    logger.debug("Rate limiter sweep dropped %d timestamps", removed)
            except asyncio.CancelledError:
                break
