"""
Unit tests for circuit breaker implementation.
"""
import asyncio
import time

import pytest

from app.core.circuit_breaker import CircuitBreaker, CircuitBreakerOpenError, CircuitState


def fail():
    raise RuntimeError("provider down")


def run_failures(cb, count):
    for _ in range(count):
        with pytest.raises(RuntimeError):
            cb.call(fail)


def test_circuit_breaker_closed_state():
    """Test circuit breaker in closed state (normal operation)."""
    cb = CircuitBreaker("test", failure_threshold=0.5, time_window_seconds=60)

    assert cb.state == CircuitState.CLOSED
    assert cb.call(lambda: "success") == "success"


def test_circuit_breaker_needs_minimum_requests():
    """Test that a few failures below the minimum window do not open the circuit."""
    cb = CircuitBreaker("test", failure_threshold=0.5, min_requests_for_threshold=10)

    run_failures(cb, 5)

    assert cb.state == CircuitState.CLOSED


def test_circuit_breaker_opens_on_error_rate():
    """Test that the error rate reaching the threshold opens the circuit."""
    cb = CircuitBreaker("test", failure_threshold=0.5, min_requests_for_threshold=5)

    for _ in range(3):
        cb.call(lambda: "success")
    run_failures(cb, 3)

    assert cb.state == CircuitState.OPEN
    assert cb.is_available() is False
    with pytest.raises(CircuitBreakerOpenError):
        cb.call(lambda: "should not execute")


def test_circuit_breaker_half_open_after_duration():
    """Test that an open circuit moves to half-open after open_duration_seconds."""
    cb = CircuitBreaker("test", open_duration_seconds=30)
    cb._state = CircuitState.OPEN
    cb._opened_at = time.time() - 31

    assert cb.state == CircuitState.HALF_OPEN


def test_circuit_breaker_half_open_state():
    """Test circuit breaker in half-open state (testing recovery)."""
    cb = CircuitBreaker("test", half_open_test_percentage=0.1)
    cb._state = CircuitState.HALF_OPEN

    skipped_count = 0
    for _ in range(10):
        try:
            cb.call(lambda: "success")
        except CircuitBreakerOpenError:
            skipped_count += 1

    assert skipped_count == 9


def test_circuit_breaker_closes_after_successful_trials():
    """Test that enough successful trial calls close the circuit."""
    cb = CircuitBreaker("test", half_open_test_percentage=1.0)
    cb._state = CircuitState.HALF_OPEN

    for _ in range(5):
        cb.call(lambda: "success")

    assert cb.state == CircuitState.CLOSED


def test_circuit_breaker_reopens_after_failed_trials():
    """Test that failing trial calls reopen the circuit."""
    cb = CircuitBreaker("test", half_open_test_percentage=1.0)
    cb._state = CircuitState.HALF_OPEN

    run_failures(cb, 5)

    assert cb._state == CircuitState.OPEN


def test_circuit_breaker_async():
    """Test circuit breaker with async functions."""
    cb = CircuitBreaker("test")

    async def async_func():
        return "async success"

    assert asyncio.run(cb.call_async(async_func)) == "async success"


def test_circuit_breaker_metrics():
    """Test circuit breaker metrics."""
    cb = CircuitBreaker("test")

    cb.call(lambda: "success")
    run_failures(cb, 1)

    metrics = cb.get_metrics()
    assert metrics["name"] == "test"
    assert metrics["state"] == "closed"
    assert metrics["recent_requests"] == 2
    assert metrics["recent_failures"] == 1
    assert metrics["error_rate"] == 0.5
