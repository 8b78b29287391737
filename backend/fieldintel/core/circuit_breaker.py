"""Per-dependency circuit breakers.

Each external collaborator (Supabase, OpenAI, Anthropic, Salesforce) gets its
own named breaker from :func:`get_circuit_breaker`. A breaker opens after a
run of consecutive failures and rejects calls until a cool-down has passed,
then lets one probe call through.
"""

import enum
import logging
import threading
import time
from collections.abc import Awaitable, Callable
from typing import TypeVar

from fieldintel.core.exceptions import FieldIntelException

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(enum.Enum):
    """Circuit breaker states."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreakerOpen(FieldIntelException):
    """Raised when a call is attempted on an open circuit (503)."""

    def __init__(self, service_name: str) -> None:
        super().__init__(
            message=f"Circuit breaker is open for {service_name}",
            code="SERVICE_UNAVAILABLE",
            status_code=503,
            details={"service": service_name},
        )
        self.service_name = service_name


class CircuitBreaker:
    """Consecutive-failure breaker for one external service.

    Args:
        service_name: Identifier for the protected service (used in logs).
        failure_threshold: Consecutive failures before the circuit opens.
        recovery_timeout: Seconds an open circuit waits before half-opening.
    """

    def __init__(
        self,
        service_name: str,
        failure_threshold: int = 5,
        recovery_timeout: float = 30.0,
    ) -> None:
        self.service_name = service_name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout

        self._failures = 0
        self._opened_at = 0.0
        self._state = CircuitState.CLOSED
        self._lock = threading.Lock()

    @property
    def state(self) -> CircuitState:
        """Current state; an expired OPEN circuit reports HALF_OPEN."""
        with self._lock:
            if (
                self._state is CircuitState.OPEN
                and time.monotonic() - self._opened_at >= self.recovery_timeout
            ):
                self._state = CircuitState.HALF_OPEN
                logger.warning("Circuit half-open for %s", self.service_name)
            return self._state

    @property
    def failure_count(self) -> int:
        return self._failures

    def check(self) -> None:
        """Raise CircuitBreakerOpen if calls are currently rejected."""
        if self.state is CircuitState.OPEN:
            raise CircuitBreakerOpen(self.service_name)

    def record_success(self) -> None:
        with self._lock:
            if self._state is not CircuitState.CLOSED:
                logger.info("Circuit closed for %s", self.service_name)
            self._failures = 0
            self._state = CircuitState.CLOSED

    def record_failure(self) -> None:
        with self._lock:
            self._failures += 1
            # A failed probe re-opens immediately
            if self._state is CircuitState.HALF_OPEN or self._failures >= self.failure_threshold:
                if self._state is not CircuitState.OPEN:
                    logger.warning(
                        "Circuit opened for %s after %d consecutive failures",
                        self.service_name,
                        self._failures,
                    )
                self._state = CircuitState.OPEN
                self._opened_at = time.monotonic()

    def reset(self) -> None:
        with self._lock:
            self._failures = 0
            self._opened_at = 0.0
            self._state = CircuitState.CLOSED

    async def call_async(
        self, func: Callable[..., Awaitable[T]], *args: object, **kwargs: object
    ) -> T:
        """Run an async callable under this breaker.

        Args:
            func: Async callable to execute.
            *args: Positional arguments for func.
            **kwargs: Keyword arguments for func.

        Returns:
            Whatever func returns.

        Raises:
            CircuitBreakerOpen: If the circuit is open.
        """
        self.check()
        try:
            result = await func(*args, **kwargs)
        except Exception:
            self.record_failure()
            raise
        self.record_success()
        return result


_breakers: dict[str, CircuitBreaker] = {}
_registry_lock = threading.Lock()


def get_circuit_breaker(service_name: str) -> CircuitBreaker:
    """Get (or lazily create) the shared breaker for a service."""
    with _registry_lock:
        breaker = _breakers.get(service_name)
        if breaker is None:
            breaker = CircuitBreaker(service_name)
            _breakers[service_name] = breaker
        return breaker


def reset_circuit_breakers() -> None:
    """Close every registered breaker (used by tests)."""
    with _registry_lock:
        for breaker in _breakers.values():
            breaker.reset()


def all_circuit_breakers() -> dict[str, CircuitBreaker]:
    """Snapshot of every registered breaker, keyed by service name."""
    with _registry_lock:
        return dict(_breakers)
