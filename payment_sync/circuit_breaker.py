"""Circuit breaker guarding calls to the clinic backend.

Purpose: Stop hammering the backend from poll ticks and drains while it is
down, and fail fast instead of waiting on a dead connection.

States:
- CLOSED: Normal operation, requests pass through
- OPEN: Backend failing, requests fail immediately
- HALF_OPEN: Cooldown elapsed, one probe request is allowed
"""
import time
import logging
import threading
from typing import Callable, Any, Optional
from enum import Enum

from payment_sync.errors import PaymentSyncError

logger = logging.getLogger(__name__)


class CircuitState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreakerOpen(PaymentSyncError):
    """Raised when the breaker rejects a call without attempting it."""

    def __init__(self, name: str, retry_after: float):
        super().__init__(
            f"Circuit '{name}' is OPEN. Retry after {retry_after:.1f}s"
        )
        self.retry_after = retry_after


class CircuitBreaker:
    """
    Consecutive-failure breaker shared by the poller thread and the caller.

    Only exceptions listed in ``counted`` trip the breaker; anything else
    (for instance a 4xx rejection from the backend) passes through untouched.
    """

    def __init__(
        self,
        name: str = "backend",
        failure_threshold: int = 5,
        timeout: float = 60,
        counted: tuple = (Exception,),
        clock: Callable[[], float] = time.monotonic
    ):
        """
        Args:
            name: Label used in logs and errors
            failure_threshold: Consecutive failures before opening
            timeout: Seconds to stay open before a half-open probe
            counted: Exception types that count as failures
            clock: Monotonic time source (injectable for tests)
        """
        self.name = name
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.counted = counted
        self._clock = clock
        self.failure_count = 0
        self.last_failure_time: Optional[float] = None
        self._state = CircuitState.CLOSED
        self._lock = threading.Lock()

    @property
    def state(self) -> str:
        """Get current state as string."""
        return self._state.value

    def call(self, func: Callable, *args, **kwargs) -> Any:
        """
        Execute func under breaker protection.

        Raises:
            CircuitBreakerOpen: If the circuit is open
            Exception: Whatever func raises
        """
        with self._lock:
            if self._state == CircuitState.OPEN:
                if self._elapsed() >= self.timeout:
                    self._state = CircuitState.HALF_OPEN
                    logger.info(f"Circuit '{self.name}' transitioning to HALF_OPEN")
                else:
                    raise CircuitBreakerOpen(
                        self.name, max(0.0, self.timeout - self._elapsed())
                    )

        try:
            result = func(*args, **kwargs)
        except self.counted:
            self._on_failure()
            raise

        self._on_success()
        return result

    def reset(self):
        """Force the breaker back to CLOSED."""
        with self._lock:
            self.failure_count = 0
            self.last_failure_time = None
            self._state = CircuitState.CLOSED

    def _elapsed(self) -> float:
        if self.last_failure_time is None:
            return float("inf")
        return self._clock() - self.last_failure_time

    def _on_success(self):
        with self._lock:
            self.failure_count = 0
            if self._state == CircuitState.HALF_OPEN:
                self._state = CircuitState.CLOSED
                logger.info(f"Circuit '{self.name}' closed after successful probe")

    def _on_failure(self):
        with self._lock:
            self.failure_count += 1
            self.last_failure_time = self._clock()

            if self._state == CircuitState.HALF_OPEN:
                self._state = CircuitState.OPEN
                logger.warning(f"Circuit '{self.name}' reopened after failed probe")
            elif self.failure_count >= self.failure_threshold:
                self._state = CircuitState.OPEN
                logger.error(
                    f"Circuit '{self.name}' opened after {self.failure_count} failures. "
                    f"Timeout: {self.timeout}s"
                )
