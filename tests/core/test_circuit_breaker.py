"""
Unit Tests for Circuit Breaker

Tests cover:
- State transitions (CLOSED → OPEN → HALF_OPEN → CLOSED)
- Failure threshold behavior
- Timeout and recovery
- Wrapping of collaborator exceptions
- Shared per-collaborator registry
"""

import pytest

from hrflow.core.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerState,
    all_breaker_statuses,
    get_breaker,
    reset_all_breakers,
)
from hrflow.core.exceptions import ExternalDependencyError, NotFoundError


class TickClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


@pytest.fixture
def tick():
    return TickClock()


@pytest.fixture
def breaker(tick):
    return CircuitBreaker("notifications", failure_threshold=3, timeout=60, clock=tick)


def _boom():
    raise RuntimeError("smtp down")


# ============================================================================
# BASIC FUNCTIONALITY TESTS
# ============================================================================

@pytest.mark.unit
def test_circuit_breaker_initial_state(breaker):
    """Test circuit breaker starts in CLOSED state"""
    assert breaker.state == CircuitBreakerState.CLOSED
    assert breaker.allow_request()


@pytest.mark.unit
def test_circuit_breaker_single_failure(breaker):
    """Test single failure doesn't open circuit"""
    breaker.record_failure()

    assert breaker.state == CircuitBreakerState.CLOSED


@pytest.mark.unit
def test_circuit_breaker_opens_after_threshold(breaker):
    """Test circuit opens after reaching failure threshold"""
    for _ in range(3):
        breaker.record_failure()

    assert breaker.state == CircuitBreakerState.OPEN
    assert not breaker.allow_request()


@pytest.mark.unit
def test_success_resets_failure_count(breaker):
    breaker.record_failure()
    breaker.record_failure()
    breaker.record_success()
    breaker.record_failure()

    assert breaker.state == CircuitBreakerState.CLOSED
    assert breaker.get_status()["failure_count"] == 1


# ============================================================================
# TIMEOUT AND RECOVERY
# ============================================================================

@pytest.mark.unit
def test_open_becomes_half_open_after_timeout(breaker, tick):
    for _ in range(3):
        breaker.record_failure()

    tick.now += 59
    assert breaker.state == CircuitBreakerState.OPEN

    tick.now += 1
    assert breaker.state == CircuitBreakerState.HALF_OPEN


@pytest.mark.unit
def test_half_open_allows_limited_test_calls(breaker, tick):
    for _ in range(3):
        breaker.record_failure()
    tick.now += 60

    assert breaker.allow_request()
    assert not breaker.allow_request()


@pytest.mark.unit
def test_half_open_success_closes(breaker, tick):
    for _ in range(3):
        breaker.record_failure()
    tick.now += 60

    assert breaker.call(lambda: "ok") == "ok"
    assert breaker.state == CircuitBreakerState.CLOSED


@pytest.mark.unit
def test_half_open_failure_reopens(breaker, tick):
    for _ in range(3):
        breaker.record_failure()
    tick.now += 60

    with pytest.raises(ExternalDependencyError):
        breaker.call(_boom)

    assert breaker.state == CircuitBreakerState.OPEN


# ============================================================================
# CALL WRAPPING
# ============================================================================

@pytest.mark.unit
def test_call_wraps_unexpected_exceptions(breaker):
    with pytest.raises(ExternalDependencyError) as exc_info:
        breaker.call(_boom)

    assert exc_info.value.dependency == "notifications"
    assert "smtp down" in exc_info.value.message
    assert isinstance(exc_info.value.__cause__, RuntimeError)


@pytest.mark.unit
def test_call_fails_fast_when_open(breaker):
    calls = []
    for _ in range(3):
        breaker.record_failure()

    with pytest.raises(ExternalDependencyError, match="circuit breaker open"):
        breaker.call(lambda: calls.append(1))

    assert calls == []


@pytest.mark.unit
def test_engine_errors_pass_through_without_counting(breaker):
    def lookup():
        raise NotFoundError("no such document")

    for _ in range(5):
        with pytest.raises(NotFoundError):
            breaker.call(lookup)

    assert breaker.state == CircuitBreakerState.CLOSED


@pytest.mark.unit
def test_reset_closes_breaker(breaker):
    for _ in range(3):
        breaker.record_failure()

    breaker.reset()

    assert breaker.state == CircuitBreakerState.CLOSED
    assert breaker.get_status()["failure_count"] == 0


# ============================================================================
# REGISTRY
# ============================================================================

@pytest.mark.unit
def test_get_breaker_returns_shared_instance():
    assert get_breaker("employee_directory") is get_breaker("employee_directory")
    assert get_breaker("employee_directory") is not get_breaker("document_storage")


@pytest.mark.unit
def test_all_breaker_statuses_and_reset():
    shared = get_breaker("document_storage")
    for _ in range(shared.failure_threshold):
        shared.record_failure()

    statuses = all_breaker_statuses()
    assert statuses["document_storage"]["state"] == CircuitBreakerState.OPEN

    reset_all_breakers()
    assert all_breaker_statuses()["document_storage"]["state"] == CircuitBreakerState.CLOSED
