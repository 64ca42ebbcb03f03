"""
Circuit breaker for upstream polling.

closed -> open after ``failure_threshold`` consecutive failures. After the
cool-down a single probe is let through (half_open); success closes the
breaker, failure re-opens it for another (possibly longer) cool-down.
"""

import time
from collections.abc import Callable
from enum import Enum


class BreakerState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CooldownPolicy(str, Enum):
    DOUBLE = "double"
    RESET = "reset"


class CircuitBreaker:
    """
    Per-attempt circuit breaker.

    ``clock`` returns monotonic seconds and is injectable so tests never sleep.
    """

    def __init__(
        self,
        failure_threshold: int = 3,
        cooldown_seconds: float = 60.0,
        policy: CooldownPolicy | str = CooldownPolicy.DOUBLE,
        max_cooldown_seconds: float = 240.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be at least 1")
        self.failure_threshold = failure_threshold
        self.base_cooldown = cooldown_seconds
        self.max_cooldown = max(max_cooldown_seconds, cooldown_seconds)
        self.policy = CooldownPolicy(policy)
        self.clock = clock

        self.state = BreakerState.CLOSED
        self.failures = 0
        self.open_cycles = 0
        self.cooldown = cooldown_seconds
        self.opened_at: float | None = None

    @property
    def stalled(self) -> bool:
        """Open for more than one full cycle."""
        return self.open_cycles >= 2

    @property
    def is_open(self) -> bool:
        return self.state != BreakerState.CLOSED

    def remaining_cooldown(self) -> float:
        if self.state != BreakerState.OPEN or self.opened_at is None:
            return 0.0
        return max(0.0, self.cooldown - (self.clock() - self.opened_at))

    def allow_request(self) -> bool:
        """
        Whether the next upstream call may proceed.

        In half_open exactly one caller gets True; the rest wait for that
        probe's result.
        """
        if self.state == BreakerState.CLOSED:
            return True

        if self.state == BreakerState.OPEN:
            if self.remaining_cooldown() > 0:
                return False
            self.state = BreakerState.HALF_OPEN
            return True

        return False

    def record_success(self) -> None:
        self.state = BreakerState.CLOSED
        self.failures = 0
        self.open_cycles = 0
        self.cooldown = self.base_cooldown
        self.opened_at = None

    def record_failure(self) -> None:
        self.failures += 1

        if self.state == BreakerState.HALF_OPEN:
            self.open_cycles += 1
            if self.policy == CooldownPolicy.DOUBLE:
                self.cooldown = min(self.cooldown * 2, self.max_cooldown)
            else:
                self.cooldown = self.base_cooldown
            self._open()
        elif self.state == BreakerState.CLOSED and self.failures >= self.failure_threshold:
            self.open_cycles = 1
            self._open()

    def reset(self) -> None:
        """Back to closed with no timer pending."""
        self.record_success()

    def _open(self) -> None:
        self.state = BreakerState.OPEN
        self.opened_at = self.clock()
