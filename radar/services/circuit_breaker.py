"""
CircuitBreaker - Stops hammering a persistence backend that keeps failing.

States:
- CLOSED: Writes pass through
- OPEN: Store is failing, writes are skipped (they stay pending)
- HALF_OPEN: A limited number of probe writes are let through

The state is derived from when the breaker tripped rather than stored:
- never tripped (or recovered) -> CLOSED
- tripped less than reset_timeout ago -> OPEN
- tripped longer ago -> HALF_OPEN, until a probe succeeds (CLOSED) or fails (trips again)
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable

from loguru import logger

from radar.utils import utc_now


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


@dataclass
class CircuitBreakerConfig:
    """Configuration for circuit breaker."""

    failure_threshold: int = 3  # Consecutive failed writes before tripping
    reset_timeout: timedelta = timedelta(seconds=60)  # Quiet period before probing
    half_open_max_requests: int = 1  # Probe writes per half-open period


class CircuitBreaker:
    """
    Breaker for one store collection.

    Usage:
        cb = CircuitBreaker("baselines")

        if cb.can_request():
            try:
                await store.put_many(...)
                cb.record_success()
            except StoreUnavailable:
                cb.record_failure()
    """

    def __init__(
        self,
        name: str,
        config: CircuitBreakerConfig | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self._clock = clock

        self.consecutive_failures = 0
        self.tripped_at: datetime | None = None
        self.last_failure_at: datetime | None = None
        self._probes = 0

    @property
    def state(self) -> CircuitState:
        if self.tripped_at is None:
            return CircuitState.CLOSED
        if self._clock() < self.tripped_at + self.config.reset_timeout:
            return CircuitState.OPEN
        return CircuitState.HALF_OPEN

    def can_request(self) -> bool:
        """Whether a write may go to the store now. Half-open probes are counted."""
        state = self.state
        if state is not CircuitState.HALF_OPEN:
            return state is CircuitState.CLOSED

        if self._probes >= self.config.half_open_max_requests:
            return False
        self._probes += 1
        logger.info(f"Circuit breaker '{self.name}' probing store ({self._probes})")
        return True

    def record_success(self) -> None:
        if self.tripped_at is not None:
            logger.info(f"Circuit breaker '{self.name}' CLOSED (recovered)")
        self.consecutive_failures = 0
        self.tripped_at = None
        self._probes = 0

    def record_failure(self) -> None:
        self.consecutive_failures += 1
        self.last_failure_at = self._clock()

        # A failed probe trips again immediately
        probing = self.state is CircuitState.HALF_OPEN
        if probing or (
            self.tripped_at is None
            and self.consecutive_failures >= self.config.failure_threshold
        ):
            self._trip()

    def _trip(self) -> None:
        self.tripped_at = self._clock()
        self._probes = 0
        logger.warning(
            f"Circuit breaker '{self.name}' OPENED after "
            f"{self.consecutive_failures} consecutive failures"
        )

    def reset(self) -> None:
        self.consecutive_failures = 0
        self.tripped_at = None
        self.last_failure_at = None
        self._probes = 0

    def get_status(self) -> dict[str, Any]:
        def iso(value: datetime | None) -> str | None:
            return value.isoformat() if value else None

        return {
            "name": self.name,
            "state": self.state.value,
            "consecutive_failures": self.consecutive_failures,
            "last_failure": iso(self.last_failure_at),
            "opened_at": iso(self.tripped_at),
        }


class CircuitBreakerRegistry:
    """
    Lazily creates one breaker per collection, all sharing a config and clock.

    Usage:
        breakers = CircuitBreakerRegistry()
        if breakers.get("snapshots").can_request():
            ...
    """

    def __init__(
        self,
        default_config: CircuitBreakerConfig | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.config = default_config or CircuitBreakerConfig()
        self._clock = clock
        self._by_name: dict[str, CircuitBreaker] = {}

    def get(self, name: str) -> CircuitBreaker:
        breaker = self._by_name.get(name)
        if breaker is None:
            breaker = self._by_name[name] = CircuitBreaker(name, self.config, self._clock)
        return breaker

    def get_all_status(self) -> dict[str, dict[str, Any]]:
        return {name: breaker.get_status() for name, breaker in self._by_name.items()}

    def get_open_circuits(self) -> list[str]:
        return [
            name
            for name, breaker in self._by_name.items()
            if breaker.state is CircuitState.OPEN
        ]
