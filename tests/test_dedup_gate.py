import asyncio

import pytest

from verigate.dedup import DeduplicationGate, make_fingerprint
from verigate.errors import PipelineTimeoutError


class CountingFactory:
    def __init__(self, value="X", delay: float = 0.0, error: Exception | None = None):
        self.value = value
        self.delay = delay
        self.error = error
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.value


class GatedFactory:
    """Blocks until release() so tests control when the execution settles."""

    def __init__(self, value="X"):
        self.value = value
        self.calls = 0
        self._event = asyncio.Event()

    def release(self) -> None:
        self._event.set()

    async def __call__(self):
        self.calls += 1
        await self._event.wait()
        return self.value


@pytest.mark.asyncio
async def test_concurrent_calls_share_one_execution():
    gate = DeduplicationGate()
    factory = CountingFactory(value={"value": "X"}, delay=0.1)

    results = await asyncio.gather(*(gate.execute_once("rec-job-1", factory) for _ in range(5)))

    assert factory.calls == 1
    assert all(r.value == {"value": "X"} for r in results)
    assert sum(1 for r in results if r.was_duplicate) == 4
    assert gate.in_flight_count == 0


@pytest.mark.asyncio
async def test_waiters_receive_the_identical_error():
    gate = DeduplicationGate()
    boom = ValueError("primary exploded")
    factory = CountingFactory(delay=0.01, error=boom)

    results = await asyncio.gather(
        *(gate.execute_once("k", factory) for _ in range(3)),
        return_exceptions=True,
    )

    assert factory.calls == 1
    assert all(r is boom for r in results)
    assert gate.in_flight_count == 0


@pytest.mark.asyncio
async def test_failures_are_not_cached_by_default():
    gate = DeduplicationGate()

    with pytest.raises(ValueError):
        await gate.execute_once("k", CountingFactory(error=ValueError("first")))

    retry = CountingFactory(value="ok")
    result = await gate.execute_once("k", retry)

    assert retry.calls == 1
    assert result.value == "ok"
    assert not result.was_from_cache


@pytest.mark.asyncio
async def test_failures_cached_when_enabled():
    gate = DeduplicationGate(cache_errors=True)

    with pytest.raises(ValueError):
        await gate.execute_once("k", CountingFactory(error=ValueError("first")))

    second = CountingFactory(value="ok")
    with pytest.raises(ValueError, match="first"):
        await gate.execute_once("k", second)
    assert second.calls == 0


@pytest.mark.asyncio
async def test_cached_result_served_within_ttl_and_regenerated_after(clock):
    gate = DeduplicationGate(ttl_seconds=30, clock=clock)
    factory = CountingFactory(value="X")

    first = await gate.execute_once("k", factory)
    clock.advance(29)
    second = await gate.execute_once("k", factory)

    assert not first.was_from_cache
    assert second.was_from_cache
    assert factory.calls == 1

    clock.advance(1)
    third = await gate.execute_once("k", factory)

    assert not third.was_from_cache
    assert factory.calls == 2


@pytest.mark.asyncio
async def test_force_regenerate_bypasses_cache():
    gate = DeduplicationGate()
    factory = CountingFactory(value="X")

    r1 = await gate.execute_once("k", factory)
    r2 = await gate.execute_once("k", factory)
    r3 = await gate.execute_once("k", factory, force_regenerate=True)

    assert factory.calls == 2
    assert (r1.was_from_cache, r2.was_from_cache, r3.was_from_cache) == (False, True, False)


@pytest.mark.asyncio
async def test_superseded_execution_does_not_overwrite_cache():
    gate = DeduplicationGate()
    stale = GatedFactory(value="stale")
    fresh = CountingFactory(value="fresh")

    stale_call = asyncio.create_task(gate.execute_once("k", stale))
    await asyncio.sleep(0)
    forced = await gate.execute_once("k", fresh, force_regenerate=True)

    stale.release()
    stale_result = await stale_call
    cached = await gate.execute_once("k", CountingFactory(value="unused"))

    assert forced.value == "fresh"
    assert stale_result.value == "stale"
    assert cached.was_from_cache
    assert cached.value == "fresh"


@pytest.mark.asyncio
async def test_different_keys_execute_separately():
    gate = DeduplicationGate()
    factory = CountingFactory(delay=0.01)

    results = await asyncio.gather(*(gate.execute_once(f"param-{i}", factory) for i in range(3)))

    assert factory.calls == 3
    assert not any(r.was_from_cache or r.was_duplicate for r in results)


@pytest.mark.asyncio
async def test_caller_timeout_leaves_execution_running_and_fills_cache():
    gate = DeduplicationGate()
    factory = GatedFactory(value="late")

    with pytest.raises(PipelineTimeoutError) as exc_info:
        await gate.execute_once("k", factory, timeout_ms=10)

    assert isinstance(exc_info.value, asyncio.TimeoutError)
    assert exc_info.value.key == "k"
    assert gate.is_in_flight("k")

    waiter = asyncio.create_task(gate.execute_once("k", factory))
    await asyncio.sleep(0)
    factory.release()
    joined = await waiter

    assert joined.value == "late"
    assert joined.was_duplicate
    assert factory.calls == 1

    cached = await gate.execute_once("k", factory)
    assert cached.was_from_cache
    assert cached.value == "late"


@pytest.mark.asyncio
async def test_cancelled_caller_does_not_cancel_shared_execution():
    gate = DeduplicationGate()
    factory = GatedFactory(value="done")

    first = asyncio.create_task(gate.execute_once("k", factory))
    second = asyncio.create_task(gate.execute_once("k", factory))
    await asyncio.sleep(0)

    first.cancel()
    with pytest.raises(asyncio.CancelledError):
        await first

    factory.release()
    result = await second

    assert result.value == "done"
    assert factory.calls == 1


@pytest.mark.asyncio
async def test_factory_timeout_error_is_not_reported_as_caller_timeout():
    gate = DeduplicationGate()

    async def factory():
        raise asyncio.TimeoutError()

    with pytest.raises(asyncio.TimeoutError) as exc_info:
        await gate.execute_once("k", factory, timeout_ms=1000)

    assert not isinstance(exc_info.value, PipelineTimeoutError)


@pytest.mark.asyncio
async def test_invalidate_and_clear(clock):
    gate = DeduplicationGate(clock=clock)
    factory = CountingFactory()

    await gate.execute_once("a", factory)
    await gate.execute_once("b", factory)
    assert gate.cached_count == 2

    assert gate.invalidate("a") is True
    assert gate.invalidate("a") is False
    assert gate.cached_count == 1

    gate.clear()
    assert gate.cached_count == 0


@pytest.mark.asyncio
async def test_background_sweep_purges_expired_entries(clock):
    gate = DeduplicationGate(ttl_seconds=5, sweep_interval_seconds=0.01, clock=clock)

    async with gate:
        assert gate.is_running
        await gate.execute_once("k", CountingFactory())
        assert gate.cached_count == 1

        clock.advance(6)
        await asyncio.sleep(0.05)
        assert gate.cached_count == 0

    assert not gate.is_running


@pytest.mark.asyncio
async def test_stats_track_executions_hits_and_duplicates():
    gate = DeduplicationGate()
    factory = CountingFactory(delay=0.01)

    await asyncio.gather(gate.execute_once("k", factory), gate.execute_once("k", factory))
    await gate.execute_once("k", factory)

    stats = gate.get_stats()
    assert stats["executions"] == 1
    assert stats["duplicates"] == 1
    assert stats["cache_hits"] == 1
    assert stats["in_flight"] == 0


def test_make_fingerprint_is_order_stable_for_flags():
    a = make_fingerprint("recommendations", "job-1", role="swe", force=False)
    b = make_fingerprint("recommendations", "job-1", force=False, role="swe")

    assert a == b == "recommendations:job-1:force=false:role=swe"
    assert make_fingerprint("recommendations", "job-1", role=None) == "recommendations:job-1"
