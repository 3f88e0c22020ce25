"""
Circuit breaker for LLM providers.

One breaker per provider fingerprint. A run of consecutive transient failures
(transport errors, 429, 5xx) opens the circuit; while open, calls are
rejected immediately so the fallback chain moves on to the next tier without
paying the provider's timeout. After ``open_duration_seconds`` a single probe
is let through (half-open); its outcome closes or re-opens the circuit.

Auth errors and cancellations end a call through ``release()`` and never
count toward opening the circuit.
"""
import time
from enum import Enum
from threading import Lock
from typing import Any, Awaitable, Callable, Dict, Optional

from aria_coach.core.logging import get_logger

logger = get_logger(__name__)


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreakerOpenError(Exception):
    """Raised when a call is rejected because the circuit is open."""

    def __init__(self, name: str, retry_in_seconds: float = 0.0):
        super().__init__(f"Circuit breaker {name} is OPEN")
        self.name = name
        self.retry_in_seconds = retry_in_seconds


class CircuitBreaker:
    """Consecutive-failure circuit breaker with an injectable clock."""

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        open_duration_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.open_duration_seconds = open_duration_seconds
        self._clock = clock

        self._lock = Lock()
        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._opened_at: Optional[float] = None
        self._probe_in_flight = False

    @property
    def state(self) -> CircuitState:
        with self._lock:
            self._update_state()
            return self._state

    def _update_state(self) -> None:
        if self._state == CircuitState.OPEN and self._opened_at is not None:
            if self._clock() - self._opened_at >= self.open_duration_seconds:
                self._state = CircuitState.HALF_OPEN
                self._probe_in_flight = False
                logger.info("circuit_breaker_half_open", circuit_breaker=self.name)

    def before_call(self) -> None:
        """
        Admit or reject a call.

        Raises:
            CircuitBreakerOpenError: circuit open, or a half-open probe is
                already running.
        """
        with self._lock:
            self._update_state()
            if self._state == CircuitState.OPEN:
                remaining = self.open_duration_seconds - (self._clock() - (self._opened_at or 0.0))
                raise CircuitBreakerOpenError(self.name, max(0.0, remaining))
            if self._state == CircuitState.HALF_OPEN:
                if self._probe_in_flight:
                    raise CircuitBreakerOpenError(self.name)
                self._probe_in_flight = True

    def record_success(self) -> None:
        with self._lock:
            if self._state != CircuitState.CLOSED:
                logger.info("circuit_breaker_closed", circuit_breaker=self.name)
            self._state = CircuitState.CLOSED
            self._consecutive_failures = 0
            self._opened_at = None
            self._probe_in_flight = False

    def record_failure(self) -> None:
        with self._lock:
            self._consecutive_failures += 1
            if self._state == CircuitState.HALF_OPEN:
                self._open("circuit_breaker_reopened")
            elif (
                self._state == CircuitState.CLOSED
                and self._consecutive_failures >= self.failure_threshold
            ):
                self._open("circuit_breaker_opened")

    def release(self) -> None:
        """End a call that neither succeeded nor failed transiently (auth errors, cancellation)."""
        with self._lock:
            self._probe_in_flight = False

    def _open(self, event: str) -> None:
        self._state = CircuitState.OPEN
        self._opened_at = self._clock()
        self._probe_in_flight = False
        logger.warning(
            event,
            circuit_breaker=self.name,
            consecutive_failures=self._consecutive_failures,
        )

    async def call_async(self, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        """Run ``func`` under the breaker; any exception counts as a failure."""
        self.before_call()
        try:
            result = await func(*args, **kwargs)
        except Exception:
            self.record_failure()
            raise
        self.record_success()
        return result

    def get_metrics(self) -> Dict[str, Any]:
        with self._lock:
            self._update_state()
            return {
                "name": self.name,
                "state": self._state.value,
                "consecutive_failures": self._consecutive_failures,
                "opened_at": self._opened_at,
            }


class CircuitBreakerRegistry:
    """Lazily creates one breaker per key (provider fingerprint)."""

    def __init__(
        self,
        failure_threshold: int = 5,
        open_duration_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.failure_threshold = failure_threshold
        self.open_duration_seconds = open_duration_seconds
        self._clock = clock
        self._breakers: Dict[str, CircuitBreaker] = {}
        self._lock = Lock()

    def get(self, key: str, name: Optional[str] = None) -> CircuitBreaker:
        with self._lock:
            breaker = self._breakers.get(key)
            if breaker is None:
                breaker = CircuitBreaker(
                    name=name or key,
                    failure_threshold=self.failure_threshold,
                    open_duration_seconds=self.open_duration_seconds,
                    clock=self._clock,
                )
                self._breakers[key] = breaker
            return breaker

    def snapshot(self) -> list:
        with self._lock:
            breakers = list(self._breakers.values())
        return [b.get_metrics() for b in breakers]
