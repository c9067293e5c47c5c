"""Per-provider circuit breaker.

Counts consecutive failures in one place instead of ad hoc counters.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable


class BreakerState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreaker:
    """
    Closed/open/half-open breaker.

    The breaker opens once consecutive failures reach failure_threshold.
    After cooldown_seconds, allow_request() lets one trial through
    (half-open); a success closes the breaker, a failure opens it again.
    """
    failure_threshold: int = 3
    cooldown_seconds: float = 30.0
    clock: Callable[[], float] = field(default=time.monotonic, repr=False)

    state: BreakerState = BreakerState.CLOSED
    consecutive_failures: int = 0
    opened_at: float = 0.0

    @property
    def is_open(self) -> bool:
        return self.state == BreakerState.OPEN

    def record_success(self) -> None:
        self.consecutive_failures = 0
        self.state = BreakerState.CLOSED
        self.opened_at = 0.0

    def record_failure(self) -> bool:
        """
        Count a failure.

        Returns:
            True if this failure opened the breaker
        """
        self.consecutive_failures += 1
        should_open = (
            self.state == BreakerState.HALF_OPEN
            or self.consecutive_failures >= self.failure_threshold
        )
        if should_open and self.state != BreakerState.OPEN:
            self.state = BreakerState.OPEN
            self.opened_at = self.clock()
            return True
        if should_open:
            self.opened_at = self.clock()
        return False

    def allow_request(self) -> bool:
        if self.state == BreakerState.OPEN and self.clock() - self.opened_at >= self.cooldown_seconds:
            self.state = BreakerState.HALF_OPEN
        return self.state != BreakerState.OPEN

    def reset(self) -> None:
        self.record_success()
