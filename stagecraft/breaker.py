"""Admission circuit breaker.

Guards the request scanner against runaway workflow starts. Outcomes of
recent scan/start attempts are kept in a rolling window; when the failure
rate over that window crosses the threshold the breaker opens and every
admission is refused until a cooldown elapses. The first attempt after the
cooldown is a single probe (half-open): success closes the breaker, failure
re-opens it with a longer cooldown.
"""

from __future__ import annotations

import logging
import time
from collections import deque
from enum import Enum
from typing import Callable, Deque, Optional

from pydantic import BaseModel

from .config import BreakerConfig
from .utils.retry import backed_off_cooldown

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class BreakerSnapshot(BaseModel):
    state: CircuitState
    failure_rate: float
    attempts: int
    next_test_at: Optional[float] = None


class CircuitBreaker:
    """Three-state breaker over a rolling window of attempt outcomes."""

    def __init__(
        self,
        config: Optional[BreakerConfig] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config or BreakerConfig()
        self._clock = clock
        self._outcomes: Deque[bool] = deque(maxlen=self.config.window_size)
        self._state = CircuitState.CLOSED
        self._next_test_at: Optional[float] = None
        self._probe_in_flight = False
        self._reopens = 0

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def failure_rate(self) -> float:
        if not self._outcomes:
            return 0.0
        return sum(1 for ok in self._outcomes if not ok) / len(self._outcomes)

    def allow_request(self) -> bool:
        """Return whether an admission attempt may proceed now."""
        if self._state == CircuitState.CLOSED:
            return True

        if self._state == CircuitState.OPEN:
            if self._next_test_at is not None and self._clock() >= self._next_test_at:
                self._state = CircuitState.HALF_OPEN
                self._probe_in_flight = True
                logger.info("Circuit breaker half-open - allowing one probe attempt")
                return True
            return False

        # Half-open: only the single probe already handed out.
        if self._probe_in_flight:
            return False
        self._probe_in_flight = True
        return True

    def record_success(self) -> None:
        if self._state == CircuitState.HALF_OPEN:
            logger.info("Circuit breaker probe succeeded - closing")
            self.reset()
            return
        self._outcomes.append(True)

    def record_failure(self) -> None:
        if self._state == CircuitState.HALF_OPEN:
            self._reopens += 1
            self._trip()
            return
        self._outcomes.append(False)
        if (
            self._state == CircuitState.CLOSED
            and len(self._outcomes) >= self.config.min_attempts
            and self.failure_rate > self.config.failure_threshold
        ):
            self._trip()

    def _trip(self) -> None:
        cooldown = backed_off_cooldown(
            self.config.cooldown_seconds,
            self._reopens,
            base=self.config.backoff_base,
            ceiling=self.config.max_cooldown_seconds,
        )
        self._state = CircuitState.OPEN
        self._probe_in_flight = False
        self._next_test_at = self._clock() + cooldown
        logger.warning(
            f"Circuit breaker opened (failure rate {self.failure_rate:.0%}, "
            f"next probe in {cooldown:.0f}s)"
        )

    def reset(self) -> None:
        self._outcomes.clear()
        self._state = CircuitState.CLOSED
        self._next_test_at = None
        self._probe_in_flight = False
        self._reopens = 0

    def seconds_until_probe(self) -> Optional[float]:
        if self._next_test_at is None:
            return None
        return max(0.0, self._next_test_at - self._clock())

    def snapshot(self) -> BreakerSnapshot:
        return BreakerSnapshot(
            state=self._state,
            failure_rate=self.failure_rate,
            attempts=len(self._outcomes),
            next_test_at=self._next_test_at,
        )
