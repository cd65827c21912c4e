"""
CircuitBreaker - stops periodic refreshes of a source that keeps failing.

States:
- CLOSED: Normal operation, ticks refresh the source
- OPEN: Source failed too often, ticks skip it
- HALF_OPEN: Cooldown elapsed, the next tick may try once

The scheduler reports one outcome per source per refresh cycle: a failure
when some key hit a retryable error and no key succeeded, a success when any
key succeeded. Forced refreshes bypass the breaker.
"""

from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable

from loguru import logger

from dashsync.utils import utcnow


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class CircuitBreaker:
    """Circuit breaker for a single source."""

    def __init__(
        self,
        source_id: str,
        failure_threshold: int = 5,
        reset_timeout: timedelta = timedelta(minutes=5),
        clock: Callable[[], datetime] = utcnow,
    ):
        self.source_id = source_id
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._opened_at: datetime | None = None

    @property
    def state(self) -> CircuitState:
        """Get current state, moving OPEN to HALF_OPEN once the cooldown ran out."""
        if (
            self._state == CircuitState.OPEN
            and self._opened_at
            and self._clock() >= self._opened_at + self.reset_timeout
        ):
            self._state = CircuitState.HALF_OPEN
            logger.info(f"Circuit for '{self.source_id}' transitioned to HALF_OPEN")
        return self._state

    def can_request(self) -> bool:
        return self.state != CircuitState.OPEN

    def record_success(self) -> None:
        if self._state != CircuitState.CLOSED:
            logger.info(f"Circuit for '{self.source_id}' CLOSED (recovered)")
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._opened_at = None

    def record_failure(self) -> None:
        self._failure_count += 1
        if self.state == CircuitState.HALF_OPEN or (
            self._state == CircuitState.CLOSED
            and self._failure_count >= self.failure_threshold
        ):
            self._state = CircuitState.OPEN
            self._opened_at = self._clock()
            logger.warning(
                f"Circuit for '{self.source_id}' OPENED after "
                f"{self._failure_count} failed refreshes"
            )

    def get_status(self) -> dict[str, Any]:
        return {
            "source_id": self.source_id,
            "state": self.state.value,
            "failure_count": self._failure_count,
            "opened_at": self._opened_at.isoformat() if self._opened_at else None,
        }


class CircuitBreakerRegistry:
    """One breaker per source, created on first use."""

    def __init__(
        self,
        failure_threshold: int = 5,
        reset_timeout: timedelta = timedelta(minutes=5),
        clock: Callable[[], datetime] = utcnow,
    ):
        self._breakers: dict[str, CircuitBreaker] = {}
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self._clock = clock

    def get(self, source_id: str) -> CircuitBreaker:
        if source_id not in self._breakers:
            self._breakers[source_id] = CircuitBreaker(
                source_id,
                failure_threshold=self.failure_threshold,
                reset_timeout=self.reset_timeout,
                clock=self._clock,
            )
        return self._breakers[source_id]

    def configure(self, failure_threshold: int, reset_timeout: timedelta) -> None:
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        for cb in self._breakers.values():
            cb.failure_threshold = failure_threshold
            cb.reset_timeout = reset_timeout

    def get_all_status(self) -> dict[str, dict[str, Any]]:
        return {source_id: cb.get_status() for source_id, cb in self._breakers.items()}

    def get_open_circuits(self) -> list[str]:
        return [
            source_id
            for source_id, cb in self._breakers.items()
            if cb.state == CircuitState.OPEN
        ]
