"""
Circuit breaker for external dependencies (LLM providers, Redis).

- CLOSED: calls pass through; results are kept in a sliding window
- OPEN: once the window's error rate reaches the threshold, calls are
  rejected with CircuitBreakerOpenError for ``open_duration_seconds``
- HALF_OPEN: a fraction of calls are let through as trials; enough successes
  close the circuit, otherwise it reopens
"""
import time
from collections import deque
from enum import Enum
from threading import Lock
from typing import Any, Awaitable, Callable, Deque, Optional, Tuple

from app.core.logging import get_logger

logger = get_logger(__name__)

HALF_OPEN_TRIALS = 5
HALF_OPEN_SUCCESSES_TO_CLOSE = 3


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreakerOpenError(Exception):
    """Raised when the circuit rejects a call."""


class CircuitBreaker:
    """
    Error-rate circuit breaker.

    Args:
        name: Dependency name used in logs and metrics
        failure_threshold: Error rate in [0, 1] that opens the circuit
        time_window_seconds: Sliding window for the error rate
        open_duration_seconds: How long the circuit stays open
        half_open_test_percentage: Share of calls allowed through while half-open
        min_requests_for_threshold: Window size below which the circuit never opens
    """

    def __init__(
        self,
        name: str,
        failure_threshold: float = 0.5,
        time_window_seconds: int = 60,
        open_duration_seconds: int = 30,
        half_open_test_percentage: float = 0.1,
        min_requests_for_threshold: int = 10,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.time_window_seconds = time_window_seconds
        self.open_duration_seconds = open_duration_seconds
        self.half_open_test_percentage = half_open_test_percentage
        self.min_requests_for_threshold = min_requests_for_threshold

        self._state = CircuitState.CLOSED
        self._lock = Lock()
        self._window: Deque[Tuple[float, bool]] = deque()
        self._opened_at: Optional[float] = None
        self._half_open_calls = 0
        self._trial_successes = 0
        self._trial_failures = 0

    @property
    def state(self) -> CircuitState:
        with self._lock:
            self._refresh(time.time())
            return self._state

    def is_available(self) -> bool:
        """False while the circuit is open."""
        return self.state != CircuitState.OPEN

    def _trip(self, now: float, **fields: Any) -> None:
        self._state = CircuitState.OPEN
        self._opened_at = now
        logger.warning("circuit_breaker_opened", circuit_breaker=self.name, **fields)

    def _refresh(self, now: float) -> None:
        cutoff = now - self.time_window_seconds
        while self._window and self._window[0][0] < cutoff:
            self._window.popleft()

        if self._state == CircuitState.OPEN:
            if self._opened_at is not None and now - self._opened_at >= self.open_duration_seconds:
                self._state = CircuitState.HALF_OPEN
                self._half_open_calls = 0
                self._trial_successes = 0
                self._trial_failures = 0
                logger.info("circuit_breaker_half_open", circuit_breaker=self.name)
        elif self._state == CircuitState.CLOSED and len(self._window) >= self.min_requests_for_threshold:
            failures = sum(1 for _, ok in self._window if not ok)
            error_rate = failures / len(self._window)
            if error_rate >= self.failure_threshold:
                self._trip(now, error_rate=error_rate, failures=failures, total=len(self._window))

    def _admit(self) -> None:
        with self._lock:
            self._refresh(time.time())
            if self._state == CircuitState.OPEN:
                raise CircuitBreakerOpenError(f"Circuit breaker {self.name} is OPEN")
            if self._state == CircuitState.HALF_OPEN:
                self._half_open_calls += 1
                every = max(1, int(round(1 / self.half_open_test_percentage)))
                if self._half_open_calls % every != 0:
                    raise CircuitBreakerOpenError(f"Circuit breaker {self.name} is HALF_OPEN")

    def record(self, success: bool) -> None:
        now = time.time()
        with self._lock:
            if self._state != CircuitState.HALF_OPEN:
                self._window.append((now, success))
                return

            if success:
                self._trial_successes += 1
            else:
                self._trial_failures += 1
            if self._trial_successes + self._trial_failures < HALF_OPEN_TRIALS:
                return
            if self._trial_successes >= HALF_OPEN_SUCCESSES_TO_CLOSE:
                self._state = CircuitState.CLOSED
                self._opened_at = None
                self._window.clear()
                logger.info(
                    "circuit_breaker_closed",
                    circuit_breaker=self.name,
                    success_count=self._trial_successes,
                    failure_count=self._trial_failures,
                )
            else:
                self._trip(
                    now,
                    success_count=self._trial_successes,
                    failure_count=self._trial_failures,
                )

    def call(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        self._admit()
        try:
            result = func(*args, **kwargs)
        except Exception:
            self.record(False)
            raise
        self.record(True)
        return result

    async def call_async(self, func: Callable[..., Awaitable[Any]], *args: Any, **kwargs: Any) -> Any:
        self._admit()
        try:
            result = await func(*args, **kwargs)
        except Exception:
            self.record(False)
            raise
        self.record(True)
        return result

    def get_metrics(self) -> dict:
        with self._lock:
            self._refresh(time.time())
            failures = sum(1 for _, ok in self._window if not ok)
            total = len(self._window)
            return {
                "name": self.name,
                "state": self._state.value,
                "recent_requests": total,
                "recent_failures": failures,
                "error_rate": failures / total if total else 0.0,
                "opened_at": self._opened_at,
            }
