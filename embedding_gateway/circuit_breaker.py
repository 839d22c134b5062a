"""Circuit breaker guarding calls to the embedding provider."""

from __future__ import annotations

import time
from dataclasses import dataclass
from enum import Enum

from .core.logging import get_logger
from .core.metrics import CIRCUIT_BREAKER_FAILURES, CIRCUIT_BREAKER_STATE
from .errors import CircuitOpenError

logger = get_logger(__name__)


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Failures detected, blocking requests
    HALF_OPEN = "half_open"  # Testing if service recovered


_STATE_GAUGE_VALUE = {
    CircuitState.CLOSED: 0,
    CircuitState.HALF_OPEN: 1,
    CircuitState.OPEN: 2,
}


@dataclass
class CircuitBreakerConfig:
    """Configuration for circuit breaker."""

    failure_threshold: int = 5  # Consecutive failures before opening
    recovery_timeout: float = 30.0  # Seconds before attempting recovery
    success_threshold: int = 2  # Successful calls needed to close from half-open


class CircuitBreaker:
    """Counts consecutive provider failures and short-circuits calls while open."""

    def __init__(self, name: str, config: CircuitBreakerConfig | None = None):
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: float | None = None
        self._publish_state()

    def _publish_state(self) -> None:
        CIRCUIT_BREAKER_STATE.labels(circuit_name=self.name).set(_STATE_GAUGE_VALUE[self.state])

    def _transition(self, state: CircuitState) -> None:
        self.state = state
        self._publish_state()

    def _should_attempt_reset(self) -> bool:
        if self.last_failure_time is None:
            return True
        return (time.monotonic() - self.last_failure_time) >= self.config.recovery_timeout

    def check(self) -> None:
        """Raise CircuitOpenError if the call must not be attempted."""
        if self.state == CircuitState.OPEN:
            if not self._should_attempt_reset():
                raise CircuitOpenError(f"Circuit {self.name} is OPEN", provider=self.name)
            logger.info(
                "circuit_breaker.half_open",
                name=self.name,
                failure_count=self.failure_count,
            )
            self.success_count = 0
            self._transition(CircuitState.HALF_OPEN)

    def record_success(self) -> None:
        if self.state == CircuitState.HALF_OPEN:
            self.success_count += 1
            if self.success_count >= self.config.success_threshold:
                logger.info("circuit_breaker.closed", name=self.name, success_count=self.success_count)
                self.failure_count = 0
                self.success_count = 0
                self.last_failure_time = None
                self._transition(CircuitState.CLOSED)
        elif self.failure_count > 0:
            self.failure_count = 0

    def record_failure(self) -> None:
        self.last_failure_time = time.monotonic()
        CIRCUIT_BREAKER_FAILURES.labels(circuit_name=self.name).inc()

        if self.state == CircuitState.HALF_OPEN:
            logger.warning("circuit_breaker.half_open_failure", name=self.name)
            self.failure_count = self.config.failure_threshold
            self._transition(CircuitState.OPEN)
            return

        self.failure_count += 1
        if self.state == CircuitState.CLOSED and self.failure_count >= self.config.failure_threshold:
            logger.error(
                "circuit_breaker.opened",
                name=self.name,
                failure_count=self.failure_count,
                threshold=self.config.failure_threshold,
            )
            self._transition(CircuitState.OPEN)
