"""
Tests for the code-connection flow and its supervisor.
"""

import asyncio

import pytest

from messaging_channels.connection import CodeConnectionFlow, ConnectionSupervisor, PollOutcome
from messaging_channels.connection.circuit_breaker import BreakerState
from messaging_channels.contracts.event_types import ChannelEventType
from messaging_channels.errors import ConnectionStalled
from messaging_channels.persistence.models import ChannelStatus
from messaging_channels.providers.base import LinkingCode, ProviderError


@pytest.fixture
def flow(lifecycle, fake_clock):
    return CodeConnectionFlow(lifecycle, failure_threshold=3, cooldown_seconds=60, clock=fake_clock)


@pytest.fixture
def connecting(make_instance):
    return make_instance(status=ChannelStatus.CONNECTING)


class TestPollOnce:
    """Tests for single poll ticks."""

    async def test_still_connecting_fetches_code(self, flow, connecting, fake_service):
        """Test that a connecting tick refreshes the code."""
        fake_service.code = "qr-code-2"
        attempt = flow.new_attempt(connecting.id)

        result = await flow.poll_once(attempt)

        assert result.outcome == PollOutcome.CONTINUE
        assert result.done is False
        assert attempt.code == "qr-code-2"
        assert attempt.polls == 1

    async def test_connected_upstream(self, flow, connecting, fake_service, lifecycle):
        """Test that the tick that sees 'connected' ends polling."""
        fake_service.status = ChannelStatus.CONNECTED
        attempt = flow.new_attempt(connecting.id)

        result = await flow.poll_once(attempt)

        assert result.outcome == PollOutcome.CONNECTED
        assert result.done is True
        assert lifecycle.get_instance(connecting.id).status == ChannelStatus.CONNECTED.value

    async def test_connected_by_webhook(self, flow, connecting, lifecycle, fake_service):
        """Test that a webhook-driven connect is seen without an upstream call."""
        lifecycle.apply_transition(connecting.id, ChannelStatus.CONNECTED, source="webhook")
        attempt = flow.new_attempt(connecting.id)

        result = await flow.poll_once(attempt)

        assert result.outcome == PollOutcome.CONNECTED
        assert "fetch_status" not in fake_service.calls

    async def test_cancelled(self, flow, connecting):
        """Test that a cancelled attempt stops."""
        attempt = flow.new_attempt(connecting.id)
        attempt.cancel()

        result = await flow.poll_once(attempt)

        assert result.outcome == PollOutcome.CANCELLED
        assert attempt.polls == 0

    async def test_deleted(self, flow, connecting, lifecycle):
        """Test that a deleted instance stops polling."""
        attempt = flow.new_attempt(connecting.id)
        await lifecycle.delete_instance(connecting.id, force=True)

        result = await flow.poll_once(attempt)

        assert result.outcome == PollOutcome.DELETED

    async def test_abandoned(self, flow, connecting, lifecycle):
        """Test that leaving connecting by another path stops polling."""
        lifecycle.apply_transition(connecting.id, ChannelStatus.DISCONNECTED, source="lifecycle")
        attempt = flow.new_attempt(connecting.id)

        result = await flow.poll_once(attempt)

        assert result.outcome == PollOutcome.ABANDONED
        assert result.status == ChannelStatus.DISCONNECTED

    async def test_transient_errors_open_breaker(self, flow, connecting, fake_service, lifecycle):
        """Test that repeated failures open the breaker without touching status."""
        fake_service.status_error = ProviderError("503 upstream", code="503", retryable=True)
        attempt = flow.new_attempt(connecting.id)

        for _ in range(3):
            result = await flow.poll_once(attempt)
            assert result.outcome == PollOutcome.CONTINUE

        assert attempt.breaker.state == BreakerState.OPEN
        assert attempt.consecutive_errors == 3
        assert lifecycle.get_instance(connecting.id).status == ChannelStatus.CONNECTING.value

        skipped = await flow.poll_once(attempt)
        assert skipped.outcome == PollOutcome.SKIPPED
        assert skipped.done is False

    async def test_stalls_after_second_open_cycle(
        self, flow, connecting, fake_service, lifecycle, fake_clock, fake_redis
    ):
        """Test that a failed half-open probe marks the instance stalled."""
        fake_service.status_error = asyncio.TimeoutError()
        attempt = flow.new_attempt(connecting.id)
        for _ in range(3):
            await flow.poll_once(attempt)

        fake_clock.advance(60)
        result = await flow.poll_once(attempt)

        assert result.outcome == PollOutcome.STALLED
        assert result.done is True
        assert isinstance(attempt.stalled_error, ConnectionStalled)
        stored = lifecycle.get_instance(connecting.id)
        assert stored.status == ChannelStatus.ERROR.value
        assert stored.error_message == "Connection stalled: upstream unavailable"
        assert ChannelEventType.CONNECTION_STALLED.value in fake_redis.event_types()

    async def test_recovers_after_cooldown(self, flow, connecting, fake_service, fake_clock):
        """Test that a successful probe closes the breaker again."""
        fake_service.status_error = ProviderError("flaky", retryable=True)
        attempt = flow.new_attempt(connecting.id)
        for _ in range(3):
            await flow.poll_once(attempt)

        fake_service.status_error = None
        fake_clock.advance(60)
        result = await flow.poll_once(attempt)

        assert result.outcome == PollOutcome.CONTINUE
        assert attempt.breaker.state == BreakerState.CLOSED
        assert attempt.consecutive_errors == 0


class TestConnectionSupervisor:
    """Tests for poll loop ownership."""

    @pytest.fixture
    def supervisor(self, lifecycle):
        flow = CodeConnectionFlow(lifecycle, failure_threshold=1, cooldown_seconds=0)
        supervisor = ConnectionSupervisor(flow, interval=0.01)
        lifecycle.supervisor = supervisor
        return supervisor

    async def test_polls_until_connected(self, supervisor, connecting, fake_service):
        """Test that the loop ends once the instance connects."""
        fake_service.status = ChannelStatus.CONNECTED
        supervisor.start(connecting.id)

        result = await supervisor.wait(connecting.id, timeout=2)

        assert result.outcome == PollOutcome.CONNECTED
        assert supervisor.active_instances() == []
        assert supervisor.stats()["total_polls"] >= 1

    async def test_start_is_idempotent(self, lifecycle, connecting):
        """Test that a second start only records the new code."""
        supervisor = ConnectionSupervisor(CodeConnectionFlow(lifecycle), interval=3600)
        first = supervisor.start(connecting.id)
        code = LinkingCode(code="fresh", expires_at=None)

        second = supervisor.start(connecting.id, code=code)

        assert first is second
        assert second.code == "fresh"
        assert supervisor.stats()["active_pollers"] == 1
        await supervisor.shutdown()

    async def test_cancel(self, lifecycle, connecting):
        """Test that cancel wakes and ends the loop."""
        supervisor = ConnectionSupervisor(CodeConnectionFlow(lifecycle), interval=3600)
        supervisor.start(connecting.id)

        assert supervisor.cancel(connecting.id) is True
        result = await supervisor.wait(connecting.id, timeout=1)

        assert result.outcome == PollOutcome.CANCELLED
        assert supervisor.cancel(connecting.id) is False

    async def test_offer_code_requires_active_attempt(self, lifecycle, connecting):
        """Test that codes are only recorded while polling."""
        supervisor = ConnectionSupervisor(CodeConnectionFlow(lifecycle), interval=3600)
        code = LinkingCode(code="pushed", expires_at=None)
        assert supervisor.offer_code(connecting.id, code) is False

        supervisor.start(connecting.id)
        assert supervisor.offer_code(connecting.id, code) is True
        assert supervisor.get_attempt(connecting.id).code == "pushed"
        await supervisor.shutdown()

    async def test_stalled_is_reported(self, supervisor, connecting, fake_service, lifecycle):
        """Test that a stalled attempt is visible through get_code."""
        fake_service.status_error = ProviderError("down", retryable=True)
        supervisor.start(connecting.id)

        result = await supervisor.wait(connecting.id, timeout=2)

        assert result.outcome == PollOutcome.STALLED
        assert supervisor.is_stalled(connecting.id) is True
        assert supervisor.stats()["stalled"] == 1
        code = lifecycle.get_code(connecting.id)
        assert code.stalled is True
        assert code.retryable is True
        assert code.status == ChannelStatus.ERROR

    async def test_restart_after_stall(self, supervisor, connecting, fake_service, lifecycle):
        """Test that a new connection request starts a fresh attempt."""
        fake_service.status_error = ProviderError("down", retryable=True)
        supervisor.start(connecting.id)
        await supervisor.wait(connecting.id, timeout=2)

        fake_service.status_error = None
        await lifecycle.request_connection(connecting.id)

        assert supervisor.is_stalled(connecting.id) is False
        assert lifecycle.get_code(connecting.id).code == "qr-code-1"
        await supervisor.shutdown()

    async def test_shutdown(self, lifecycle, make_instance):
        """Test stopping every loop."""
        supervisor = ConnectionSupervisor(CodeConnectionFlow(lifecycle), interval=3600)
        for name in ("Clinic One", "Clinic Two"):
            supervisor.start(make_instance(name, status=ChannelStatus.CONNECTING).id)

        await supervisor.shutdown()

        assert supervisor.active_instances() == []
