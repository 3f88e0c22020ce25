"""
Unit tests for the consecutive-failure circuit breaker.
"""
import pytest

from aria_coach.core.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerOpenError,
    CircuitBreakerRegistry,
    CircuitState,
)


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def test_circuit_breaker_closed_state():
    """Calls are admitted while failures stay under the threshold."""
    cb = CircuitBreaker("test", failure_threshold=3)

    cb.before_call()
    cb.record_failure()
    cb.before_call()
    cb.record_failure()

    assert cb.state == CircuitState.CLOSED


def test_circuit_breaker_opens_after_threshold():
    clock = FakeClock()
    cb = CircuitBreaker("test", failure_threshold=2, open_duration_seconds=30, clock=clock)

    cb.record_failure()
    cb.record_failure()

    assert cb.state == CircuitState.OPEN
    clock.now += 10
    with pytest.raises(CircuitBreakerOpenError) as exc_info:
        cb.before_call()
    assert exc_info.value.retry_in_seconds == pytest.approx(20)


def test_success_resets_failure_count():
    cb = CircuitBreaker("test", failure_threshold=2)

    cb.record_failure()
    cb.record_success()
    cb.record_failure()

    assert cb.state == CircuitState.CLOSED


def test_half_open_admits_single_probe():
    clock = FakeClock()
    cb = CircuitBreaker("test", failure_threshold=1, open_duration_seconds=30, clock=clock)
    cb.record_failure()

    clock.now += 31
    assert cb.state == CircuitState.HALF_OPEN
    cb.before_call()
    with pytest.raises(CircuitBreakerOpenError):
        cb.before_call()

    cb.record_success()
    assert cb.state == CircuitState.CLOSED


def test_failed_probe_reopens():
    clock = FakeClock()
    cb = CircuitBreaker("test", failure_threshold=1, open_duration_seconds=30, clock=clock)
    cb.record_failure()
    clock.now += 31

    cb.before_call()
    cb.record_failure()

    assert cb.state == CircuitState.OPEN


def test_release_frees_probe_slot():
    clock = FakeClock()
    cb = CircuitBreaker("test", failure_threshold=1, open_duration_seconds=30, clock=clock)
    cb.record_failure()
    clock.now += 31

    cb.before_call()
    cb.release()
    cb.before_call()

    assert cb.state == CircuitState.HALF_OPEN


@pytest.mark.asyncio
async def test_call_async():
    cb = CircuitBreaker("test", failure_threshold=1)

    async def ok():
        return "ok"

    async def boom():
        raise RuntimeError("boom")

    assert await cb.call_async(ok) == "ok"
    with pytest.raises(RuntimeError):
        await cb.call_async(boom)
    with pytest.raises(CircuitBreakerOpenError):
        await cb.call_async(ok)


def test_registry_reuses_breakers_per_key():
    registry = CircuitBreakerRegistry(failure_threshold=4)

    first = registry.get("groq|https://api.groq.com/openai/v1", name="groq")
    again = registry.get("groq|https://api.groq.com/openai/v1")
    other = registry.get("local|http://localhost:11434/v1", name="local")

    assert first is again
    assert other is not first
    assert first.failure_threshold == 4
    assert [m["name"] for m in registry.snapshot()] == ["groq", "local"]
