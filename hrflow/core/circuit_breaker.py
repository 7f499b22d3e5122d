"""
Circuit Breaker for external collaborators

Stops hammering the employee directory, notification sender or document
storage while they are down. After too many consecutive failures the
breaker opens and calls fail fast with ExternalDependencyError, which the
executor turns into a backed-off retry on the action queue.

States:
- CLOSED: Normal operation, calls go through
- OPEN: Too many failures, calls fail fast
- HALF_OPEN: Timeout passed, a limited number of test calls go through

Example:
    breaker = get_breaker("notifications")
    message_id = breaker.call(sender.send, tenant_id, "welcome", ["emp_1"], context)
"""

import logging
import threading
import time
from typing import Any, Callable, Dict, Optional

from .exceptions import ExternalDependencyError, HRFlowException

logger = logging.getLogger(__name__)


class CircuitBreakerState:
    """Circuit breaker states"""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Consecutive-failure circuit breaker around one collaborator."""

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        timeout: int = 300,
        half_open_max_calls: int = 1,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            name: Collaborator name (used in errors and metrics)
            failure_threshold: Consecutive failures before opening
            timeout: Seconds to stay OPEN before allowing test calls
            half_open_max_calls: Test calls allowed while HALF_OPEN
            clock: Monotonic seconds source
        """
        self.name = name
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.half_open_max_calls = half_open_max_calls
        self._clock = clock

        self._state = CircuitBreakerState.CLOSED
        self._failure_count = 0
        self._opened_at: Optional[float] = None
        self._half_open_calls = 0
        self._lock = threading.Lock()

    @property
    def state(self) -> str:
        with self._lock:
            self._maybe_half_open()
            return self._state

    def _maybe_half_open(self) -> None:
        # Caller holds the lock
        if self._state == CircuitBreakerState.OPEN and self._opened_at is not None:
            if self._clock() - self._opened_at >= self.timeout:
                logger.info(f"CircuitBreaker[{self.name}]: OPEN → HALF_OPEN (timeout passed)")
                self._state = CircuitBreakerState.HALF_OPEN
                self._half_open_calls = 0

    def allow_request(self) -> bool:
        """Whether a call may go through now (reserves a HALF_OPEN test slot)."""
        with self._lock:
            self._maybe_half_open()
            if self._state == CircuitBreakerState.OPEN:
                return False
            if self._state == CircuitBreakerState.HALF_OPEN:
                if self._half_open_calls >= self.half_open_max_calls:
                    return False
                self._half_open_calls += 1
            return True

    def record_success(self) -> None:
        with self._lock:
            if self._state != CircuitBreakerState.CLOSED:
                logger.info(f"CircuitBreaker[{self.name}]: {self._state} → CLOSED (success)")
            self._state = CircuitBreakerState.CLOSED
            self._failure_count = 0
            self._opened_at = None
            self._half_open_calls = 0

    def record_failure(self) -> None:
        with self._lock:
            self._failure_count += 1
            if self._state == CircuitBreakerState.HALF_OPEN:
                self._state = CircuitBreakerState.OPEN
                self._opened_at = self._clock()
                logger.warning(
                    f"CircuitBreaker[{self.name}]: HALF_OPEN → OPEN "
                    f"(test call failed, will retry in {self.timeout}s)"
                )
            elif (
                self._state == CircuitBreakerState.CLOSED
                and self._failure_count >= self.failure_threshold
            ):
                self._state = CircuitBreakerState.OPEN
                self._opened_at = self._clock()
                logger.error(
                    f"CircuitBreaker[{self.name}]: CLOSED → OPEN "
                    f"({self._failure_count} consecutive failures, will retry in {self.timeout}s)"
                )

    def call(self, func: Callable[..., Any], *args, **kwargs) -> Any:
        """
        Invoke `func` through the breaker.

        Unexpected exceptions from the collaborator are wrapped in
        ExternalDependencyError; engine exceptions other than
        ExternalDependencyError (e.g. NotFoundError) pass through and do
        not count as failures.

        Raises:
            ExternalDependencyError: breaker open, or the call failed
        """
        if not self.allow_request():
            raise ExternalDependencyError(
                f"{self.name} is unavailable (circuit breaker open)", dependency=self.name
            )
        try:
            result = func(*args, **kwargs)
        except ExternalDependencyError:
            self.record_failure()
            raise
        except HRFlowException:
            self.record_success()
            raise
        except Exception as e:
            self.record_failure()
            raise ExternalDependencyError(f"{self.name} call failed: {e}", dependency=self.name) from e
        self.record_success()
        return result

    def reset(self) -> None:
        """Manually reset to CLOSED"""
        with self._lock:
            self._state = CircuitBreakerState.CLOSED
            self._failure_count = 0
            self._opened_at = None
            self._half_open_calls = 0

    def get_status(self) -> dict:
        """Breaker status for monitoring"""
        with self._lock:
            self._maybe_half_open()
            return {
                "name": self.name,
                "state": self._state,
                "failure_count": self._failure_count,
                "failure_threshold": self.failure_threshold,
                "timeout_seconds": self.timeout,
            }


# ============================================================================
# SHARED BREAKERS (one per collaborator, per process)
# ============================================================================

_breakers: Dict[str, CircuitBreaker] = {}
_registry_lock = threading.Lock()


def get_breaker(name: str) -> CircuitBreaker:
    with _registry_lock:
        breaker = _breakers.get(name)
        if breaker is None:
            breaker = _breakers[name] = CircuitBreaker(name)
        return breaker


def all_breaker_statuses() -> Dict[str, dict]:
    with _registry_lock:
        breakers = list(_breakers.values())
    return {b.name: b.get_status() for b in breakers}


def reset_all_breakers() -> None:
    with _registry_lock:
        breakers = list(_breakers.values())
    for breaker in breakers:
        breaker.reset()
