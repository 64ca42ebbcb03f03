"""
Tests for the polling circuit breaker.
"""

import pytest

from messaging_channels.connection.circuit_breaker import (
    BreakerState,
    CircuitBreaker,
    CooldownPolicy,
)


@pytest.fixture
def breaker(fake_clock):
    return CircuitBreaker(failure_threshold=3, cooldown_seconds=60, clock=fake_clock)


def trip(breaker):
    for _ in range(breaker.failure_threshold):
        breaker.record_failure()


class TestCircuitBreaker:
    """Tests for breaker state changes."""

    def test_starts_closed(self, breaker):
        """Test initial state."""
        assert breaker.state == BreakerState.CLOSED
        assert breaker.allow_request() is True
        assert breaker.stalled is False

    def test_opens_after_threshold(self, breaker):
        """Test that consecutive failures open the breaker."""
        breaker.record_failure()
        breaker.record_failure()
        assert breaker.state == BreakerState.CLOSED

        breaker.record_failure()
        assert breaker.state == BreakerState.OPEN
        assert breaker.open_cycles == 1
        assert breaker.allow_request() is False

    def test_success_resets_failure_count(self, breaker):
        """Test that a success in between keeps the breaker closed."""
        breaker.record_failure()
        breaker.record_failure()
        breaker.record_success()
        breaker.record_failure()
        assert breaker.state == BreakerState.CLOSED

    def test_half_open_after_cooldown(self, breaker, fake_clock):
        """Test that exactly one probe is allowed after the cool-down."""
        trip(breaker)

        fake_clock.advance(59)
        assert breaker.allow_request() is False
        assert breaker.remaining_cooldown() == pytest.approx(1)

        fake_clock.advance(1)
        assert breaker.allow_request() is True
        assert breaker.state == BreakerState.HALF_OPEN
        assert breaker.allow_request() is False

    def test_probe_success_closes(self, breaker, fake_clock):
        """Test that a successful probe closes the breaker."""
        trip(breaker)
        fake_clock.advance(60)
        breaker.allow_request()

        breaker.record_success()

        assert breaker.state == BreakerState.CLOSED
        assert breaker.open_cycles == 0
        assert breaker.cooldown == 60

    def test_probe_failure_doubles_cooldown(self, breaker, fake_clock):
        """Test that a failed probe re-opens with a longer cool-down."""
        trip(breaker)
        fake_clock.advance(60)
        breaker.allow_request()

        breaker.record_failure()

        assert breaker.state == BreakerState.OPEN
        assert breaker.cooldown == 120
        assert breaker.open_cycles == 2
        assert breaker.stalled is True

    def test_cooldown_is_capped(self, fake_clock):
        """Test the cool-down ceiling."""
        breaker = CircuitBreaker(failure_threshold=1, cooldown_seconds=60, max_cooldown_seconds=100, clock=fake_clock)
        breaker.record_failure()
        fake_clock.advance(60)
        breaker.allow_request()
        breaker.record_failure()
        assert breaker.cooldown == 100

    def test_reset_policy(self, fake_clock):
        """Test that the reset policy keeps the base cool-down."""
        breaker = CircuitBreaker(
            failure_threshold=1, cooldown_seconds=60, policy=CooldownPolicy.RESET, clock=fake_clock
        )
        breaker.record_failure()
        fake_clock.advance(60)
        breaker.allow_request()
        breaker.record_failure()
        assert breaker.cooldown == 60
        assert breaker.stalled is True

    def test_policy_from_string(self, fake_clock):
        """Test configuring the policy from settings text."""
        assert CircuitBreaker(policy="reset", clock=fake_clock).policy == CooldownPolicy.RESET

    def test_reset(self, breaker):
        """Test manual reset."""
        trip(breaker)
        breaker.reset()
        assert breaker.state == BreakerState.CLOSED
        assert breaker.remaining_cooldown() == 0

    def test_invalid_threshold(self):
        """Test that a zero threshold is rejected."""
        with pytest.raises(ValueError):
            CircuitBreaker(failure_threshold=0)
