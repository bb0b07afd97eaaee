"""
Circuit breaker guarding calls to a remote completion dependency.

Provides the CLOSED, OPEN and HALF_OPEN states, configurable thresholds,
per-dependency tracking and metrics. Breakers are plain objects built once per
dependency at startup and passed to every call site.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)


class CircuitState(Enum):
    """Circuit breaker state."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreakerConfig:
    """Configuration for circuit breaker."""

    failure_threshold: int = 5
    recovery_timeout: float = 60.0
    max_failure_records: int = 50


@dataclass
class FailureRecord:
    """Record of a failure event."""

    error_type: str
    message: str
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "error_type": self.error_type,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class CircuitBreakerMetrics:
    """Metrics for circuit breaker monitoring."""

    name: str
    state: CircuitState
    failure_count: int = 0
    success_count: int = 0
    open_count: int = 0
    last_failure_time: float | None = None
    next_attempt_time: float | None = None

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "success_count": self.success_count,
            "open_count": self.open_count,
            "last_failure_time": self.last_failure_time,
            "next_attempt_time": self.next_attempt_time,
        }


class CircuitBreaker:
    """
    Circuit breaker for one remote dependency.

    Counter updates are atomic with respect to concurrent callers. The OPEN to
    HALF_OPEN transition is evaluated lazily whenever the state is read, so a
    freshly constructed breaker and a long-lived one agree on timing given the
    same failure history.
    """

    def __init__(
        self,
        name: str = "default",
        config: CircuitBreakerConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Initialize circuit breaker.

        Args:
            name: Identity of the guarded dependency
            config: Circuit breaker configuration
            clock: Monotonic time source in seconds
        """
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._open_count = 0
        self._last_failure_time: float | None = None
        self._probe_in_flight = False
        self._failure_records: deque[FailureRecord] = deque(
            maxlen=self.config.max_failure_records
        )

    @property
    def state(self) -> CircuitState:
        """Get current circuit state."""
        with self._lock:
            self._check_recovery_locked()
            return self._state

    @property
    def failure_count(self) -> int:
        """Get current consecutive failure count."""
        return self._failure_count

    @property
    def is_open(self) -> bool:
        return self.state == CircuitState.OPEN

    @property
    def is_closed(self) -> bool:
        return self.state == CircuitState.CLOSED

    @property
    def is_half_open(self) -> bool:
        return self.state == CircuitState.HALF_OPEN

    def allow_request(self) -> bool:
        """
        Check if a request may proceed and claim the probe slot if half-open.

        Returns:
            True if request is allowed
        """
        with self._lock:
            self._check_recovery_locked()
            if self._state == CircuitState.CLOSED:
                return True
            if self._state == CircuitState.HALF_OPEN and not self._probe_in_flight:
                self._probe_in_flight = True
                return True
            return False

    def record_failure(
        self,
        error_type: str = "Unknown",
        message: str = "Request failed",
    ) -> None:
        """
        Record a failure.

        Args:
            error_type: Type of error
            message: Error message
        """
        with self._lock:
            self._check_recovery_locked()
            self._failure_count += 1
            self._last_failure_time = self._clock()
            self._probe_in_flight = False
            self._failure_records.append(FailureRecord(error_type=error_type, message=message))

            if self._state == CircuitState.HALF_OPEN:
                # Failed probe reopens with a fresh timer
                self._transition_to(CircuitState.OPEN)
            elif (
                self._state == CircuitState.CLOSED
                and self._failure_count >= self.config.failure_threshold
            ):
                self._transition_to(CircuitState.OPEN)

    def record_success(self) -> None:
        """Record a success; closes the circuit and resets the failure count."""
        with self._lock:
            self._success_count += 1
            self._failure_count = 0
            self._probe_in_flight = False
            if self._state != CircuitState.CLOSED:
                self._transition_to(CircuitState.CLOSED)

    def next_attempt_time(self) -> float | None:
        """
        When an open circuit admits its next trial call.

        Deterministic (last failure time plus recovery timeout) so independent
        callers reach the same decision without coordination.

        Returns:
            Clock value, or None when the circuit is not open
        """
        with self._lock:
            self._check_recovery_locked()
            if self._state != CircuitState.OPEN or self._last_failure_time is None:
                return None
            return self._last_failure_time + self.config.recovery_timeout

    def seconds_until_retry(self) -> float:
        """Seconds until the next trial call is admitted (0 when not open)."""
        next_attempt = self.next_attempt_time()
        if next_attempt is None:
            return 0.0
        return max(0.0, next_attempt - self._clock())

    def reset(self) -> None:
        """Reset circuit breaker to initial state."""
        with self._lock:
            self._state = CircuitState.CLOSED
            self._failure_count = 0
            self._last_failure_time = None
            self._probe_in_flight = False

    def recent_failures(self) -> list[FailureRecord]:
        """Most recent failure records, oldest first."""
        with self._lock:
            return list(self._failure_records)

    def get_metrics(self) -> CircuitBreakerMetrics:
        """
        Get current metrics.

        Returns:
            CircuitBreakerMetrics with current state
        """
        next_attempt = self.next_attempt_time()
        with self._lock:
            return CircuitBreakerMetrics(
                name=self.name,
                state=self._state,
                failure_count=self._failure_count,
                success_count=self._success_count,
                open_count=self._open_count,
                last_failure_time=self._last_failure_time,
                next_attempt_time=next_attempt,
            )

    def _check_recovery_locked(self) -> None:
        """Move OPEN to HALF_OPEN once the recovery timeout has elapsed."""
        if self._state != CircuitState.OPEN or self._last_failure_time is None:
            return
        if self._clock() - self._last_failure_time >= self.config.recovery_timeout:
            self._transition_to(CircuitState.HALF_OPEN)

    def _transition_to(self, new_state: CircuitState) -> None:
        """Transition to a new state."""
        if new_state == CircuitState.OPEN and self._state != CircuitState.OPEN:
            self._open_count += 1
            logger.warning(
                "Circuit breaker %s opened after %d failures", self.name, self._failure_count
            )
        elif new_state == CircuitState.CLOSED:
            logger.info("Circuit breaker %s closed", self.name)
        elif new_state == CircuitState.HALF_OPEN:
            logger.info("Circuit breaker %s half-open, admitting one trial call", self.name)
            self._probe_in_flight = False

        self._state = new_state


class CircuitBreakerRegistry:
    """
    One circuit breaker per remote-dependency identity.

    Build once at process startup and hand the registry (or the breakers it
    returns) to every call site.
    """

    def __init__(
        self,
        config: CircuitBreakerConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Initialize registry.

        Args:
            config: Configuration shared by all breakers
            clock: Time source shared by all breakers
        """
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._lock = threading.Lock()
        self._breakers: dict[str, CircuitBreaker] = {}

    def get(self, dependency: str) -> CircuitBreaker:
        """Get or create the breaker for a dependency."""
        with self._lock:
            if dependency not in self._breakers:
                self._breakers[dependency] = CircuitBreaker(
                    name=dependency, config=self.config, clock=self._clock
                )
            return self._breakers[dependency]

    def dependencies(self) -> list[str]:
        """Get all tracked dependency names."""
        with self._lock:
            return list(self._breakers)

    def get_all_metrics(self) -> dict[str, CircuitBreakerMetrics]:
        """Get metrics for all dependencies."""
        with self._lock:
            breakers = dict(self._breakers)
        return {name: breaker.get_metrics() for name, breaker in breakers.items()}


__all__ = [
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerMetrics",
    "CircuitBreakerRegistry",
    "CircuitState",
    "FailureRecord",
]
