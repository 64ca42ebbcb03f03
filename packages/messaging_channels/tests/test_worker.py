"""
Tests for the channel worker.
"""

from datetime import timedelta

from channel_worker import main as worker
from messaging_channels.persistence.models import ChannelStatus, ChannelType, utcnow
from messaging_channels.service.recovery import RecoveryManager


class TestRunSweep:
    """Tests for the reclaim sweep."""

    def test_reclaims_stale_instance(self, session_factory, make_instance, load_instance):
        """Test that an overdue connection attempt is moved to error."""
        instance = make_instance(status=ChannelStatus.CONNECTING)
        recovery = RecoveryManager(
            session_factory,
            stuck_threshold=timedelta(minutes=60),
            clock=lambda: utcnow() + timedelta(hours=2),
        )

        assert worker.run_sweep(recovery) == 1
        assert load_instance(instance.id).status == "error"

    def test_fresh_instance_untouched(self, session_factory, make_instance, load_instance):
        """Test that a recent connection attempt is left alone."""
        instance = make_instance(status=ChannelStatus.CONNECTING)
        recovery = RecoveryManager(session_factory, stuck_threshold=timedelta(minutes=60))

        assert worker.run_sweep(recovery) == 0
        assert load_instance(instance.id).status == "connecting"

    def test_failure_is_contained(self):
        """Test that a failing sweep does not crash the worker."""

        class BrokenRecovery:
            def reclaim_stale_connections(self):
                raise RuntimeError("database unavailable")

        assert worker.run_sweep(BrokenRecovery()) == 0


class TestMainLoop:
    """Tests for the worker loop."""

    async def test_shutdown_closes_engine(self, channel_engine, fake_service, monkeypatch):
        """Test that the loop exits on shutdown and releases the engine."""
        monkeypatch.setattr(worker, "shutdown_requested", True)
        channel_engine.registry.connection_service(ChannelType.WHATSAPP)

        await worker.main_loop(channel_engine)

        assert fake_service.closed is True
