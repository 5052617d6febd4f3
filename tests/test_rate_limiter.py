import asyncio

import pytest

from verigate.errors import InternalRateLimitError
from verigate.ratelimit import RateLimiter


def test_sixty_calls_pass_and_the_sixty_first_is_rejected(clock):
    limiter = RateLimiter(limit=60, window_seconds=60, clock=clock)

    accepted = [limiter.try_acquire("cv-enhancement") for _ in range(60)]
    assert all(accepted)
    assert limiter.try_acquire("cv-enhancement") is False
    assert limiter.remaining("cv-enhancement") == 0


def test_calls_succeed_again_after_window_rolls_over(clock):
    limiter = RateLimiter(limit=60, window_seconds=60, clock=clock)
    for _ in range(60):
        limiter.try_acquire("svc")

    clock.advance(59)
    assert limiter.try_acquire("svc") is False

    clock.advance(1)
    assert limiter.try_acquire("svc") is True
    assert limiter.remaining("svc") == 59


def test_window_slides_per_call(clock):
    limiter = RateLimiter(limit=2, window_seconds=10, clock=clock)

    assert limiter.try_acquire("svc")
    clock.advance(5)
    assert limiter.try_acquire("svc")
    assert not limiter.try_acquire("svc")

    # Only the first call has left the window.
    clock.advance(5)
    assert limiter.try_acquire("svc")
    assert not limiter.try_acquire("svc")


def test_services_are_limited_independently(clock):
    limiter = RateLimiter(limit=1, window_seconds=60, clock=clock)

    assert limiter.try_acquire("a")
    assert limiter.try_acquire("b")
    assert not limiter.try_acquire("a")


def test_check_raises_internal_rate_limit_error(clock):
    limiter = RateLimiter(limit=1, window_seconds=60, clock=clock)
    limiter.check("svc")

    with pytest.raises(InternalRateLimitError) as exc_info:
        limiter.check("svc")

    assert exc_info.value.service == "svc"
    assert exc_info.value.limit == 1
    assert "svc" in str(exc_info.value)


def test_rejected_calls_do_not_consume_budget(clock):
    limiter = RateLimiter(limit=1, window_seconds=60, clock=clock)
    limiter.try_acquire("svc")
    for _ in range(10):
        limiter.try_acquire("svc")

    clock.advance(60)
    assert limiter.remaining("svc") == 1


def test_purge_and_reset(clock):
    limiter = RateLimiter(limit=5, window_seconds=10, clock=clock)
    limiter.try_acquire("a")
    limiter.try_acquire("b")

    clock.advance(10)
    assert limiter.purge_expired() == 2
    assert limiter.get_stats()["services"] == {}

    limiter.try_acquire("a")
    limiter.reset("a")
    assert limiter.remaining("a") == 5


def test_invalid_limits_are_rejected():
    with pytest.raises(ValueError):
        RateLimiter(limit=0)
    with pytest.raises(ValueError):
        RateLimiter(window_seconds=0)


@pytest.mark.asyncio
async def test_background_sweep_drops_stale_timestamps(clock):
    limiter = RateLimiter(limit=5, window_seconds=10, sweep_interval_seconds=0.01, clock=clock)
    limiter.try_acquire("svc")

    await limiter.start()
    assert limiter.is_running
    clock.advance(11)
    await asyncio.sleep(0.05)
    await limiter.stop()

    assert not limiter.is_running
    assert limiter.get_stats()["services"] == {}
