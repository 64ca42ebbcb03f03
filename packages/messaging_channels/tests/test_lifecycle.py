"""
Tests for the instance lifecycle manager.
"""

import asyncio
from uuid import uuid4

import pytest
from sqlalchemy.exc import OperationalError

from messaging_channels.contracts.event_types import ChannelEventType
from messaging_channels.errors import (
    ConflictActiveConversations,
    ConversationNotFound,
    InstanceNotFound,
    InstanceValidationError,
    InvalidStatusTransition,
    UnsupportedChannelType,
)
from messaging_channels.lifecycle.manager import make_provider_ref, validate_display_name
from messaging_channels.persistence.models import ChannelStatus, ConversationStatus
from messaging_channels.persistence.repo import ChannelRepository
from messaging_channels.providers.base import ProviderError


class TestCreateInstance:
    """Tests for instance creation."""

    async def test_two_step_creation(self, lifecycle, sample_tenant_id, fake_redis):
        """Test that a new instance starts disconnected."""
        instance = await lifecycle.create_instance(sample_tenant_id, "  Main Clinic ", "whatsapp")

        assert instance.status == ChannelStatus.DISCONNECTED.value
        assert instance.status_version == 0
        assert instance.display_name == "Main Clinic"
        assert instance.provider_ref.startswith("main-clinic-")
        assert instance.config == {}
        assert fake_redis.event_types() == [ChannelEventType.INSTANCE_CREATED.value]

    async def test_config_stored_verbatim(self, lifecycle, sample_tenant_id):
        """Test that the tenant's config is stored exactly as supplied."""
        config = {"auto_reply": False, "custom_field": {"nested": [1, 2]}}
        instance = await lifecycle.create_instance(sample_tenant_id, "Main Clinic", "whatsapp", config)
        assert instance.config == config

    async def test_display_name_bounds(self, lifecycle, sample_tenant_id):
        """Test display name length validation."""
        with pytest.raises(InstanceValidationError):
            await lifecycle.create_instance(sample_tenant_id, "ab", "whatsapp")
        with pytest.raises(InstanceValidationError):
            await lifecycle.create_instance(sample_tenant_id, "x" * 51, "whatsapp")

    async def test_invalid_config(self, lifecycle, sample_tenant_id):
        """Test that a malformed phone number is rejected."""
        with pytest.raises(InstanceValidationError) as exc_info:
            await lifecycle.create_instance(
                sample_tenant_id, "Main Clinic", "whatsapp", {"whatsapp": {"phone_number": "12345"}}
            )
        assert exc_info.value.details["errors"]

    async def test_duplicate_name(self, lifecycle, sample_tenant_id, other_tenant_id):
        """Test that names are unique per tenant and channel type."""
        await lifecycle.create_instance(sample_tenant_id, "Main Clinic", "whatsapp")
        with pytest.raises(InstanceValidationError):
            await lifecycle.create_instance(sample_tenant_id, "Main Clinic", "whatsapp")

        # Another tenant may reuse the name
        other = await lifecycle.create_instance(other_tenant_id, "Main Clinic", "whatsapp")
        assert other.tenant_id == other_tenant_id

    async def test_unsupported_channel(self, lifecycle, sample_tenant_id):
        """Test that unregistered channel types are rejected."""
        with pytest.raises(UnsupportedChannelType):
            await lifecycle.create_instance(sample_tenant_id, "Main Clinic", "telegram")

    async def test_create_and_connect(self, channel_engine, sample_tenant_id):
        """Test immediate-connect creation."""
        instance, request = await channel_engine.lifecycle.create_and_connect(
            sample_tenant_id, "Main Clinic", "whatsapp"
        )

        assert instance.status == ChannelStatus.CONNECTING.value
        assert request.code == "qr-code-1"
        assert request.pending is False
        assert channel_engine.supervisor.active_instances() == [instance.id]

        await channel_engine.supervisor.shutdown()


class TestRequestConnection:
    """Tests for connection requests."""

    async def test_returns_code_and_starts_polling(self, channel_engine, make_instance, fake_redis):
        """Test the happy path."""
        instance = make_instance()

        request = await channel_engine.lifecycle.request_connection(instance.id)

        assert request.status == ChannelStatus.CONNECTING
        assert request.code == "qr-code-1"
        assert request.expires_at is not None
        stored = channel_engine.lifecycle.get_instance(instance.id)
        assert stored.status == ChannelStatus.CONNECTING.value
        assert stored.status_version == 1
        assert channel_engine.supervisor.get_attempt(instance.id).code == "qr-code-1"
        assert ChannelEventType.STATUS_CHANGED.value in fake_redis.event_types()

        await channel_engine.supervisor.shutdown()

    async def test_pending_code(self, channel_engine, make_instance, fake_service):
        """Test that a missing synchronous code is reported as pending."""
        fake_service.code = None
        instance = make_instance()

        request = await channel_engine.lifecycle.request_connection(instance.id)

        assert request.pending is True
        await channel_engine.supervisor.shutdown()

    async def test_provider_failure_sets_error(self, lifecycle, make_instance, fake_service):
        """Test that a failed connect leaves the instance in error."""
        fake_service.connect_error = ProviderError("gateway down", code="503", retryable=True)
        instance = make_instance()

        with pytest.raises(ProviderError):
            await lifecycle.request_connection(instance.id)

        stored = lifecycle.get_instance(instance.id)
        assert stored.status == ChannelStatus.ERROR.value
        assert stored.error_message == "Connection request failed: gateway down"

    async def test_timeout_sets_error(self, lifecycle, make_instance, fake_service):
        """Test that a slow provider is cut off by the upstream timeout."""
        lifecycle.upstream_timeout = 0.05
        fake_service.delay = 1.0
        instance = make_instance()

        with pytest.raises(ProviderError) as exc_info:
            await lifecycle.request_connection(instance.id)

        assert exc_info.value.code == "TIMEOUT"
        assert exc_info.value.retryable is True
        assert lifecycle.get_instance(instance.id).status == ChannelStatus.ERROR.value

    async def test_retry_from_error_clears_message(self, lifecycle, make_instance):
        """Test reconnecting an instance in error."""
        instance = make_instance(status=ChannelStatus.ERROR, error_message="old failure")

        await lifecycle.request_connection(instance.id)

        stored = lifecycle.get_instance(instance.id)
        assert stored.status == ChannelStatus.CONNECTING.value
        assert stored.error_message is None

    async def test_not_allowed_when_connected(self, lifecycle, make_instance):
        """Test that a connected instance cannot request a code."""
        instance = make_instance(status=ChannelStatus.CONNECTED)
        with pytest.raises(InvalidStatusTransition):
            await lifecycle.request_connection(instance.id)

    async def test_tenant_scoping(self, lifecycle, make_instance, other_tenant_id):
        """Test that another tenant's instance is not found."""
        instance = make_instance()
        with pytest.raises(InstanceNotFound):
            await lifecycle.request_connection(instance.id, tenant_id=other_tenant_id)


class TestCodeAndCancel:
    """Tests for code polling and cancellation."""

    async def test_get_code(self, channel_engine, make_instance):
        """Test reading the current code."""
        instance = make_instance()
        await channel_engine.lifecycle.request_connection(instance.id)

        code = channel_engine.lifecycle.get_code(instance.id)

        assert code.status == ChannelStatus.CONNECTING
        assert code.code == "qr-code-1"
        assert code.stalled is False
        await channel_engine.supervisor.shutdown()

    async def test_cancel_keeps_status(self, channel_engine, make_instance):
        """Test that cancelling stops polling but leaves the status alone."""
        instance = make_instance()
        await channel_engine.lifecycle.request_connection(instance.id)

        assert channel_engine.lifecycle.cancel_connection(instance.id) is True
        result = await channel_engine.supervisor.wait(instance.id, timeout=1)

        assert result.outcome.value == "cancelled"
        assert channel_engine.lifecycle.get_instance(instance.id).status == ChannelStatus.CONNECTING.value

    def test_cancel_when_not_polling(self, channel_engine, make_instance):
        """Test cancelling an instance with no poll loop."""
        instance = make_instance()
        assert channel_engine.lifecycle.cancel_connection(instance.id) is False


class TestDisconnect:
    """Tests for disconnection."""

    async def test_disconnect(self, lifecycle, make_instance, fake_service):
        """Test disconnecting a connected instance."""
        instance = make_instance(status=ChannelStatus.CONNECTED)

        result = await lifecycle.disconnect(instance.id)

        assert result.status == ChannelStatus.DISCONNECTED.value
        assert "terminate" in fake_service.calls

    async def test_disconnect_survives_upstream_failure(self, lifecycle, make_instance, fake_service):
        """Test that a failed upstream logout still disconnects locally."""
        fake_service.terminate_error = ProviderError("unreachable", retryable=True)
        instance = make_instance(status=ChannelStatus.CONNECTED)

        result = await lifecycle.disconnect(instance.id)

        assert result.status == ChannelStatus.DISCONNECTED.value

    async def test_disconnect_suspended(self, lifecycle, make_instance):
        """Test that administrative statuses cannot be disconnected."""
        instance = make_instance(status=ChannelStatus.SUSPENDED)
        with pytest.raises(InvalidStatusTransition):
            await lifecycle.disconnect(instance.id)


class TestDeleteInstance:
    """Tests for deletion."""

    async def test_delete(self, lifecycle, make_instance, fake_service):
        """Test deleting an idle instance."""
        instance = make_instance()

        await lifecycle.delete_instance(instance.id)

        assert "delete_remote" in fake_service.calls
        with pytest.raises(InstanceNotFound):
            lifecycle.get_instance(instance.id)

    async def test_active_conversations_block_delete(self, lifecycle, make_instance, add_conversation):
        """Test that active conversations block deletion."""
        instance = make_instance()
        add_conversation(instance)
        add_conversation(instance, "+15550000002", ConversationStatus.RESOLVED)

        with pytest.raises(ConflictActiveConversations) as exc_info:
            await lifecycle.delete_instance(instance.id)

        assert exc_info.value.active_conversations == 1
        assert lifecycle.get_instance(instance.id) is not None

    async def test_force_delete(self, lifecycle, make_instance, add_conversation, session_factory):
        """Test that force deletes and keeps conversations."""
        instance = make_instance()
        add_conversation(instance)

        await lifecycle.delete_instance(instance.id, force=True)

        with session_factory() as db:
            assert ChannelRepository(db).get_instance(instance.id) is None
            assert ChannelRepository(db).get_conversation(instance.id, "+15550000001") is not None

    @pytest.mark.parametrize("status", [ConversationStatus.RESOLVED, ConversationStatus.ARCHIVED])
    async def test_closed_conversation_no_longer_blocks_delete(self, lifecycle, make_instance, add_conversation, status):
        """Test that closing the last active conversation allows deletion."""
        instance = make_instance()
        conversation = add_conversation(instance)

        with pytest.raises(ConflictActiveConversations):
            await lifecycle.delete_instance(instance.id)

        lifecycle.update_conversation_status(conversation.id, status, tenant_id=instance.tenant_id)
        await lifecycle.delete_instance(instance.id)

        with pytest.raises(InstanceNotFound):
            lifecycle.get_instance(instance.id)


class TestRefreshStatus:
    """Tests for upstream reconciliation."""

    async def test_connected_upstream(self, lifecycle, make_instance, fake_service):
        """Test that a connecting instance picks up the connected state."""
        fake_service.status = ChannelStatus.CONNECTED
        instance = make_instance(status=ChannelStatus.CONNECTING)

        assert await lifecycle.refresh_status(instance.id) == ChannelStatus.CONNECTED

    async def test_connecting_not_regressed(self, lifecycle, make_instance, fake_service):
        """Test that upstream 'disconnected' does not regress connecting."""
        fake_service.status = ChannelStatus.DISCONNECTED
        instance = make_instance(status=ChannelStatus.CONNECTING)

        assert await lifecycle.refresh_status(instance.id) == ChannelStatus.CONNECTING

    async def test_lost_session(self, lifecycle, make_instance, fake_service):
        """Test that a connected instance follows upstream to disconnected."""
        fake_service.status = ChannelStatus.DISCONNECTED
        instance = make_instance(status=ChannelStatus.CONNECTED)

        assert await lifecycle.refresh_status(instance.id) == ChannelStatus.DISCONNECTED

    async def test_provider_error_propagates(self, lifecycle, make_instance, fake_service):
        """Test that refresh does not swallow provider errors."""
        fake_service.status_error = ProviderError("boom", retryable=True)
        instance = make_instance(status=ChannelStatus.CONNECTED)

        with pytest.raises(ProviderError):
            await lifecycle.refresh_status(instance.id)
        assert lifecycle.get_instance(instance.id).status == ChannelStatus.CONNECTED.value


class TestApplyTransition:
    """Tests for guarded status writes."""

    def test_disallowed_is_skipped(self, lifecycle, make_instance):
        """Test that a disallowed transition is not written."""
        instance = make_instance()

        outcome = lifecycle.apply_transition(instance.id, ChannelStatus.CONNECTED, source="webhook")

        assert outcome.applied is False
        assert outcome.current == ChannelStatus.DISCONNECTED
        assert lifecycle.get_instance(instance.id).status_version == 0

    def test_same_status_is_noop(self, lifecycle, make_instance):
        """Test that re-applying the current status does not bump the version."""
        instance = make_instance(status=ChannelStatus.CONNECTING)

        outcome = lifecycle.apply_transition(instance.id, ChannelStatus.CONNECTING, source="webhook")

        assert outcome.applied is False
        assert lifecycle.get_instance(instance.id).status_version == 0

    def test_error_message_change_is_written(self, lifecycle, make_instance):
        """Test that a new error message is recorded on a same-status write."""
        instance = make_instance(status=ChannelStatus.ERROR, error_message="first")

        outcome = lifecycle.apply_transition(
            instance.id, ChannelStatus.ERROR, source="poller", error_message="second"
        )

        assert outcome.applied is True
        stored = lifecycle.get_instance(instance.id)
        assert stored.error_message == "second"
        assert stored.status_version == 1

    def test_version_increments(self, lifecycle, make_instance, fake_redis):
        """Test that every applied write bumps status_version."""
        instance = make_instance()

        lifecycle.apply_transition(instance.id, ChannelStatus.CONNECTING, source="lifecycle")
        outcome = lifecycle.apply_transition(instance.id, ChannelStatus.CONNECTED, source="webhook")

        assert outcome.status_version == 2
        assert fake_redis.event_types().count(ChannelEventType.STATUS_CHANGED.value) == 2

    def test_missing_instance(self, lifecycle):
        """Test writing to an unknown instance."""
        with pytest.raises(InstanceNotFound):
            lifecycle.apply_transition(uuid4(), ChannelStatus.CONNECTING, source="lifecycle")

    def test_administrative_override(self, lifecycle, make_instance, session_factory):
        """Test leaving suspended through the administrative path."""
        instance = make_instance(status=ChannelStatus.SUSPENDED)

        outcome = lifecycle.set_administrative_status(
            instance.id, ChannelStatus.DISCONNECTED, actor="ops", reason="billing resolved"
        )

        assert outcome.previous == ChannelStatus.SUSPENDED
        assert lifecycle.get_instance(instance.id).status == ChannelStatus.DISCONNECTED.value
        with session_factory() as db:
            logs = ChannelRepository(db).list_audit_logs(instance.id)
        assert logs[0].action == "status_override"
        assert logs[0].actor == "ops"

    def test_administrative_override_survives_audit_failure(self, lifecycle, make_instance, monkeypatch):
        """Test that a failed audit write does not undo the override."""
        instance = make_instance(status=ChannelStatus.SUSPENDED)

        def broken_audit(self, *args, **kwargs):
            raise OperationalError("INSERT INTO channel_audit_logs", {}, Exception("db down"))

        monkeypatch.setattr(ChannelRepository, "create_audit_log", broken_audit)

        outcome = lifecycle.set_administrative_status(instance.id, ChannelStatus.DISCONNECTED, actor="ops")

        assert outcome.applied is True
        assert lifecycle.get_instance(instance.id).status == ChannelStatus.DISCONNECTED.value


class TestUpdateInstance:
    """Tests for config and display name updates."""

    def test_merges_top_level_keys(self, lifecycle, make_instance):
        """Test that updated keys replace stored ones and the rest are kept as stored."""
        stored = {
            "welcome_message": "Hola",
            "business_hours": {"timezone": "America/Bogota", "days": ["mon", "tue"]},
            "auto_reply": True,
        }
        instance = make_instance(config=stored)

        updated = lifecycle.update_instance(instance.id, {"auto_reply": False, "custom_field": {"z": 1, "a": 2}})

        expected = {**stored, "auto_reply": False, "custom_field": {"z": 1, "a": 2}}
        reread = lifecycle.get_instance(instance.id)
        assert updated.config == expected
        assert reread.config == expected
        assert list(reread.config) == list(expected)
        assert list(reread.config["custom_field"]) == ["z", "a"]

    def test_audit_entry(self, lifecycle, make_instance, session_factory):
        """Test that updates are audited with the changed fields."""
        instance = make_instance()

        lifecycle.update_instance(instance.id, {"auto_reply": False}, display_name="Downtown Clinic", actor="ops")

        with session_factory() as db:
            logs = ChannelRepository(db).list_audit_logs(instance.id)
        assert logs[0].action == "instance_updated"
        assert logs[0].actor == "ops"
        assert logs[0].details == {"updated_fields": ["auto_reply", "display_name"]}

    def test_invalid_config_leaves_stored_config(self, lifecycle, make_instance):
        """Test that a rejected update changes nothing."""
        instance = make_instance(config={"auto_reply": True})

        with pytest.raises(InstanceValidationError):
            lifecycle.update_instance(instance.id, {"ai_config": {"temperature": 5}})
        with pytest.raises(InstanceValidationError):
            lifecycle.update_instance(instance.id, ["auto_reply"])

        assert lifecycle.get_instance(instance.id).config == {"auto_reply": True}

    def test_rename(self, lifecycle, make_instance):
        """Test renaming, including onto a taken name."""
        instance = make_instance()
        make_instance("Other Clinic")

        renamed = lifecycle.update_instance(instance.id, display_name="North Clinic")

        assert renamed.display_name == "North Clinic"
        with pytest.raises(InstanceValidationError):
            lifecycle.update_instance(instance.id, display_name="Other Clinic")
        with pytest.raises(InstanceValidationError):
            lifecycle.update_instance(instance.id, display_name="ab")
        assert lifecycle.get_instance(instance.id).display_name == "North Clinic"

    def test_other_tenant(self, lifecycle, make_instance, other_tenant_id):
        """Test that another tenant cannot update the instance."""
        instance = make_instance()
        with pytest.raises(InstanceNotFound):
            lifecycle.update_instance(instance.id, {"auto_reply": False}, tenant_id=other_tenant_id)

    def test_survives_audit_failure(self, lifecycle, make_instance, monkeypatch):
        """Test that a failed audit write keeps the update."""
        instance = make_instance()

        def broken_audit(self, *args, **kwargs):
            raise OperationalError("INSERT INTO channel_audit_logs", {}, Exception("db down"))

        monkeypatch.setattr(ChannelRepository, "create_audit_log", broken_audit)

        lifecycle.update_instance(instance.id, {"auto_reply": False})

        assert lifecycle.get_instance(instance.id).config == {"auto_reply": False}


class TestConversations:
    """Tests for conversation listing and status changes."""

    def test_list_with_status_filter(self, lifecycle, make_instance, add_conversation):
        """Test listing all conversations and only resolved ones."""
        instance = make_instance()
        add_conversation(instance, "+15550000001")
        resolved = add_conversation(instance, "+15550000002", ConversationStatus.RESOLVED)

        everything = lifecycle.list_conversations(instance.id)
        only_resolved = lifecycle.list_conversations(instance.id, status="resolved")

        assert len(everything) == 2
        assert [c.id for c in only_resolved] == [resolved.id]

    def test_list_other_tenant(self, lifecycle, make_instance, other_tenant_id):
        """Test that listing is tenant scoped."""
        instance = make_instance()
        with pytest.raises(InstanceNotFound):
            lifecycle.list_conversations(instance.id, other_tenant_id)

    def test_update_status(self, lifecycle, make_instance, add_conversation):
        """Test resolving a conversation."""
        conversation = add_conversation(make_instance())

        updated = lifecycle.update_conversation_status(conversation.id, ConversationStatus.RESOLVED)

        assert updated.status == ConversationStatus.RESOLVED.value
        assert updated.id == conversation.id

    def test_update_status_unknown_conversation(self, lifecycle):
        """Test a conversation id that does not exist."""
        with pytest.raises(ConversationNotFound):
            lifecycle.update_conversation_status(uuid4(), ConversationStatus.ARCHIVED)

    def test_update_status_other_tenant(self, lifecycle, make_instance, add_conversation, other_tenant_id):
        """Test that another tenant cannot close the conversation."""
        conversation = add_conversation(make_instance())

        with pytest.raises(ConversationNotFound):
            lifecycle.update_conversation_status(conversation.id, "archived", tenant_id=other_tenant_id)

        assert lifecycle.list_conversations(conversation.instance_id)[0].status == ConversationStatus.ACTIVE.value

    def test_update_status_unknown_status(self, lifecycle, make_instance, add_conversation):
        """Test that unknown statuses are rejected."""
        conversation = add_conversation(make_instance())
        with pytest.raises(ValueError):
            lifecycle.update_conversation_status(conversation.id, "closed")


class TestListingAndHealth:
    """Tests for listing and channel health."""

    def test_list_instances_with_metrics(self, lifecycle, make_instance, add_conversation, sample_tenant_id, other_tenant_id):
        """Test that listing is tenant-scoped and carries metrics."""
        mine = make_instance()
        make_instance("Other Clinic", tenant_id=other_tenant_id)
        add_conversation(mine)

        summaries = lifecycle.list_instances(sample_tenant_id)

        assert [s.instance.id for s in summaries] == [mine.id]
        assert summaries[0].metrics == {"conversations": 1, "active_conversations": 1, "messages": 0}

    def test_health_empty(self, lifecycle, sample_tenant_id):
        """Test health with no instances."""
        health = lifecycle.channel_health(sample_tenant_id)
        assert health["overall"] == "healthy"
        assert health["total"] == 0

    def test_health_critical(self, lifecycle, make_instance, sample_tenant_id):
        """Test that no connected instances is critical."""
        make_instance(status=ChannelStatus.ERROR)
        health = lifecycle.channel_health(sample_tenant_id)
        assert health["overall"] == "critical"
        assert health["channels"] == [{"type": "whatsapp", "total": 1, "connected": 0, "error": 1}]

    def test_health_warning(self, lifecycle, make_instance, sample_tenant_id):
        """Test that under 80% connected is a warning."""
        make_instance("Clinic One", status=ChannelStatus.CONNECTED)
        make_instance("Clinic Two", status=ChannelStatus.DISCONNECTED)
        assert lifecycle.channel_health(sample_tenant_id)["overall"] == "warning"

    def test_health_healthy(self, lifecycle, make_instance, sample_tenant_id):
        """Test that all connected is healthy."""
        make_instance("Clinic One", status=ChannelStatus.CONNECTED)
        make_instance("Clinic Two", status=ChannelStatus.CONNECTED)
        assert lifecycle.channel_health(sample_tenant_id)["overall"] == "healthy"


class TestHelpers:
    """Tests for module helpers."""

    def test_validate_display_name_strips(self):
        """Test whitespace stripping."""
        assert validate_display_name("  Clinic  ") == "Clinic"

    def test_provider_ref(self):
        """Test provider reference format."""
        from uuid import UUID

        ref = make_provider_ref("Dr. Smith's Office!", UUID("abcdef01-0000-0000-0000-000000000000"))
        assert ref == "dr-smith-s-office-abcdef01"

    async def test_call_upstream_passthrough(self, lifecycle):
        """Test that a fast call returns its value."""

        async def quick():
            await asyncio.sleep(0)
            return 42

        assert await lifecycle.call_upstream(quick(), "quick") == 42
