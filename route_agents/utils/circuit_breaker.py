"""
Circuit breaker guarding an agent's message intake.

State transitions:
- CLOSED -> OPEN: failure count reaches max_failures
- OPEN -> CLOSED: reset_time elapsed since the last failure (count reset to 0)

Successes decay the failure count by one instead of clearing it, so an agent
that keeps failing intermittently still trips the breaker eventually.
"""
import time
from enum import Enum
from typing import Any, Callable, Dict, Optional

from route_agents.config import CircuitBreakerConfig
from route_agents.utils.logger import get_logger

logger = get_logger(__name__)


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"


class CircuitBreaker:
    def __init__(
        self,
        config: Optional[CircuitBreakerConfig] = None,
        name: str = "circuit_breaker",
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or CircuitBreakerConfig()
        self.name = name
        self._clock = clock

        self._failure_count = 0
        self._last_failure_time: Optional[float] = None
        self._state = CircuitState.CLOSED

    @property
    def failure_count(self) -> int:
        return self._failure_count

    @property
    def state(self) -> CircuitState:
        """Current state, closing the breaker first if reset_time has elapsed."""
        if (
            self._state == CircuitState.OPEN
            and self._last_failure_time is not None
            and self._clock() - self._last_failure_time >= self.config.reset_time
        ):
            logger.info("circuit_breaker_closed", breaker=self.name, reason="reset_time_elapsed")
            self._state = CircuitState.CLOSED
            self._failure_count = 0

        return self._state

    def is_open(self) -> bool:
        return self.state == CircuitState.OPEN

    def record_success(self) -> None:
        self._failure_count = max(0, self._failure_count - 1)

    def record_failure(self) -> None:
        self._failure_count += 1
        self._last_failure_time = self._clock()

        if self._state == CircuitState.CLOSED and self._failure_count >= self.config.max_failures:
            logger.warning(
                "circuit_breaker_opened",
                breaker=self.name,
                failures=self._failure_count,
                reset_time=self.config.reset_time
            )
            self._state = CircuitState.OPEN

    def reset(self) -> None:
        self._failure_count = 0
        self._last_failure_time = None
        self._state = CircuitState.CLOSED

    def snapshot(self) -> Dict[str, Any]:
        state = self.state
        retry_in = None
        if state == CircuitState.OPEN and self._last_failure_time is not None:
            retry_in = max(0.0, self.config.reset_time - (self._clock() - self._last_failure_time))
        return {
            "state": state.value,
            "failure_count": self._failure_count,
            "max_failures": self.config.max_failures,
            "reset_time": self.config.reset_time,
            "retry_in": retry_in,
        }
