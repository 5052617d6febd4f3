"""Request deduplication: one execution per logical request.

Concurrent callers with the same fingerprint share a single task; the
settled outcome is then served from a short-TTL cache. Cancellation never
propagates into shared work: a caller that times out or is cancelled
stops waiting, the task runs on and still fills the cache.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from ..errors import PipelineTimeoutError
from ..logging_config import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


def make_fingerprint(*parts: Any, **flags: Any) -> str:
    """Stable key for a logical request.

    Positional parts keep their order, flags are sorted by name, and None
    values are left out so optional parameters don't split the key.

    Example:
        make_fingerprint("recommendations", job_id, role="swe", force=False)
        # "recommendations:job-1:force=false:role=swe"
    """
    pieces = [str(p) for p in parts if p is not None]
    for name in sorted(flags):
        value = flags[name]
        if value is None:
            continue
        if isinstance(value, bool):
            value = "true" if value else "false"
        pieces.append(f"{name}={value}")
    return ":".join(pieces)


@dataclass
class InFlightEntry:
    """The single running execution for a fingerprint."""
    fingerprint: str
    task: asyncio.Task
    created_at: float
    waiters: int = 0


@dataclass
class CachedResult:
    """A settled outcome, served until expires_at."""
    fingerprint: str
    expires_at: float
    value: Any = None
    error: BaseException | None = None

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at

    def unwrap(self) -> Any:
        if self.error is not None:
            raise self.error
        return self.value


@dataclass(frozen=True)
class GateResult(Generic[T]):
    value: T
    was_from_cache: bool = False
    was_duplicate: bool = False


class DeduplicationGate:
    """At most one in-flight execution per fingerprint, plus a TTL cache.

    Construct one per process and inject it where needed. start()/stop()
    (or `async with`) run the background sweep that purges expired cache
    entries; lookups also purge lazily, so the sweep only bounds memory.

    Example:
        async with DeduplicationGate(ttl_seconds=30) as gate:
            result = await gate.execute_once("rec-job-1", fetch_recommendations)
            result.value, result.was_from_cache, result.was_duplicate
    """

    def __init__(
        self,
        ttl_seconds: float = 30.0,
        cache_errors: bool = False,
        sweep_interval_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        if ttl_seconds < 0:
            raise ValueError("ttl_seconds cannot be negative")

        self.ttl_seconds = ttl_seconds
        self.cache_errors = cache_errors
        self.sweep_interval = sweep_interval_seconds
        self._clock = clock

        self._in_flight: dict[str, InFlightEntry] = {}
        self._cache: dict[str, CachedResult] = {}

        self._executions = 0
        self._cache_hits = 0
        self._duplicates = 0

        self._sweep_task: asyncio.Task | None = None
        self._running = False

    async def execute_once(
        self,
        key: str,
        factory: Callable[[], Awaitable[T]],
        *,
        force_regenerate: bool = False,
        timeout_ms: float | None = None,
        context: str | None = None,
    ) -> GateResult[T]:
        """Run factory at most once for concurrent callers of the same key.

        Args:
            key: Request fingerprint
            factory: Zero-argument coroutine function producing the value
            force_regenerate: Skip the in-flight entry and the cache and
                start a fresh execution
            timeout_ms: Stop waiting after this long; the execution itself
                keeps running
            context: Free-form label for log lines

        Returns:
            GateResult with the value and where it came from

        Raises:
            PipelineTimeoutError: timeout_ms elapsed before the execution
                settled
            Exception: Whatever the shared execution raised, identical for
                every waiter
        """
        label = f" ({context})" if context else ""

        # No suspension point between the lookups and the registration below.
        if not force_regenerate:
            entry = self._in_flight.get(key)
            if entry is not None:
                self._duplicates += 1
                logger.debug("Attaching to in-flight request %s%s", key, label)
                value = await self._wait(entry, timeout_ms)
                return GateResult(value=value, was_duplicate=True)

            cached = self._lookup(key)
            if cached is not None:
                self._cache_hits += 1
                logger.debug("Serving cached result for %s%s", key, label)
                return GateResult(value=cached.unwrap(), was_from_cache=True)

        entry = self._register(key, factory)
        if force_regenerate:
            logger.info("Forced regeneration for %s%s", key, label)
        else:
            logger.debug("Executing request %s%s", key, label)
        value = await self._wait(entry, timeout_ms)
        return GateResult(value=value)

    def invalidate(self, key: str) -> bool:
        """Drop the cached result for a key; in-flight work is untouched."""
        return self._cache.pop(key, None) is not None

    def clear(self) -> None:
        """Drop every cached result."""
        self._cache.clear()

    def purge_expired(self) -> int:
        now = self._clock()
        expired = [key for key, cached in self._cache.items() if cached.is_expired(now)]
        for key in expired:
            del self._cache[key]
        return len(expired)

    def is_in_flight(self, key: str) -> bool:
        return key in self._in_flight

    @property
    def in_flight_count(self) -> int:
        return len(self._in_flight)

    @property
    def cached_count(self) -> int:
        return len(self._cache)

    def get_stats(self) -> dict:
        return {
            "in_flight": self.in_flight_count,
            "waiters": sum(e.waiters for e in self._in_flight.values()),
            "cached": self.cached_count,
            "executions": self._executions,
            "cache_hits": self._cache_hits,
            "duplicates": self._duplicates,
            "ttl_seconds": self.ttl_seconds,
        }

    def _lookup(self, key: str) -> CachedResult | None:
        cached = self._cache.get(key)
        if cached is None:
            return None
        if cached.is_expired(self._clock()):
            del self._cache[key]
            return None
        return cached

    def _register(self, key: str, factory: Callable[[], Awaitable[T]]) -> InFlightEntry:
        task = asyncio.create_task(self._run(factory), name=f"verigate-dedup:{key}")
        entry = InFlightEntry(fingerprint=key, task=task, created_at=self._clock())
        # A forced regeneration replaces the registration; the superseded
        # task still settles for its own waiters.
        self._in_flight[key] = entry
        self._executions += 1
        task.add_done_callback(lambda t: self._settle(entry, t))
        return entry

    @staticmethod
    async def _run(factory: Callable[[], Awaitable[T]]) -> T:
        return await factory()

    def _settle(self, entry: InFlightEntry, task: asyncio.Task) -> None:
        error = None if task.cancelled() else task.exception()

        if self._in_flight.get(entry.fingerprint) is not entry:
            return
        del self._in_flight[entry.fingerprint]

        if task.cancelled():
            return
        expires_at = self._clock() + self.ttl_seconds
        if error is None:
            self._cache[entry.fingerprint] = CachedResult(
                fingerprint=entry.fingerprint,
                expires_at=expires_at,
                value=task.result(),
            )
        elif self.cache_errors:
            self._cache[entry.fingerprint] = CachedResult(
                fingerprint=entry.fingerprint,
                expires_at=expires_at,
                error=error,
            )
        else:
            logger.debug("Request %s failed, not caching: %r", entry.fingerprint, error)

    async def _wait(self, entry: InFlightEntry, timeout_ms: float | None) -> Any:
        entry.waiters += 1
        try:
            if timeout_ms is None:
                return await asyncio.shield(entry.task)
            try:
                return await asyncio.wait_for(asyncio.shield(entry.task), timeout=timeout_ms / 1000)
            except asyncio.TimeoutError:
                if entry.task.done():
                    raise
                logger.warning(
                    "Request %s timed out after %sms; execution continues in background",
                    entry.fingerprint,
                    timeout_ms,
                )
                raise PipelineTimeoutError(entry.fingerprint, timeout_ms) from None
        finally:
            entry.waiters -= 1

    async def start(self) -> None:
        """Start the background cache sweep."""
        if self._running:
            return
        self._running = True
        self._sweep_task = asyncio.create_task(self._sweep_loop())

    async def stop(self) -> None:
        """Stop the sweep; in-flight executions run to completion on their own."""
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

    async def __aenter__(self) -> "DeduplicationGate":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    async def _sweep_loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self.sweep_interval)
                removed = self.purge_expired()
                if removed:
                    logger.debug("Dedup sweep purged %d cached results", removed)
            except asyncio.CancelledError:
                break
