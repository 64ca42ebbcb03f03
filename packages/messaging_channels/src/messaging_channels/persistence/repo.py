"""
Channel Repository

Repository pattern for channel engine database operations.
Every status mutation is a single conditional UPDATE keyed by instance id
(and tenant id when scoped), so concurrent writers resolve last-write-wins.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import func
from sqlalchemy.orm import Session

from messaging_channels.persistence.models import (
    ChannelAuditLog,
    ChannelConversation,
    ChannelInstance,
    ChannelMessage,
    ChannelStatus,
    ContentType,
    ConversationStatus,
    MessageDirection,
    utcnow,
)


class ChannelRepository:
    """Repository for channel engine database operations."""

    def __init__(self, db: Session):
        self.db = db

    # =========================================================================
    # Instances
    # =========================================================================

    def get_instance(
        self,
        instance_id: UUID,
        tenant_id: UUID | None = None,
    ) -> ChannelInstance | None:
        """Get instance by ID, optionally scoped to a tenant."""
        query = self.db.query(ChannelInstance).filter(ChannelInstance.id == instance_id)
        if tenant_id is not None:
            query = query.filter(ChannelInstance.tenant_id == tenant_id)
        return query.first()

    def get_instance_by_provider_ref(self, provider_ref: str) -> ChannelInstance | None:
        """Get instance by its upstream instance name."""
        return (
            self.db.query(ChannelInstance)
            .filter(ChannelInstance.provider_ref == provider_ref)
            .first()
        )

    def resolve_instance_ref(self, instance_ref: str) -> ChannelInstance | None:
        """Resolve a webhook instance reference (instance id or provider_ref)."""
        try:
            instance_id = UUID(str(instance_ref))
        except ValueError:
            return self.get_instance_by_provider_ref(instance_ref)
        return self.get_instance(instance_id) or self.get_instance_by_provider_ref(instance_ref)

    def get_instance_by_name(
        self,
        tenant_id: UUID,
        channel_type: str,
        display_name: str,
    ) -> ChannelInstance | None:
        """Get instance by tenant, channel type and display name."""
        return (
            self.db.query(ChannelInstance)
            .filter(
                ChannelInstance.tenant_id == tenant_id,
                ChannelInstance.channel_type == channel_type,
                ChannelInstance.display_name == display_name,
            )
            .first()
        )

    def list_instances(
        self,
        tenant_id: UUID | None = None,
        channel_type: str | None = None,
    ) -> list[ChannelInstance]:
        """List instances, newest first."""
        query = self.db.query(ChannelInstance)
        if tenant_id is not None:
            query = query.filter(ChannelInstance.tenant_id == tenant_id)
        if channel_type:
            query = query.filter(ChannelInstance.channel_type == channel_type)
        return query.order_by(ChannelInstance.created_at.desc()).all()

    def list_instances_by_status(
        self,
        statuses: list[ChannelStatus],
        tenant_id: UUID | None = None,
    ) -> list[ChannelInstance]:
        """List instances in any of the given statuses, most recently updated first."""
        query = self.db.query(ChannelInstance).filter(
            ChannelInstance.status.in_([s.value for s in statuses])
        )
        if tenant_id is not None:
            query = query.filter(ChannelInstance.tenant_id == tenant_id)
        return query.order_by(ChannelInstance.updated_at.desc()).all()

    def list_flagged_instances(self, tenant_id: UUID | None = None) -> list[ChannelInstance]:
        """List instances on the known-problematic list."""
        query = self.db.query(ChannelInstance).filter(
            ChannelInstance.flagged_problematic == True  # noqa: E712
        )
        if tenant_id is not None:
            query = query.filter(ChannelInstance.tenant_id == tenant_id)
        return query.order_by(ChannelInstance.updated_at.desc()).all()

    def list_stale_instances(
        self,
        status: ChannelStatus,
        updated_before: datetime,
    ) -> list[ChannelInstance]:
        """List instances that have sat in a status since before the cutoff."""
        return (
            self.db.query(ChannelInstance)
            .filter(
                ChannelInstance.status == status.value,
                ChannelInstance.updated_at < updated_before,
            )
            .order_by(ChannelInstance.updated_at.asc())
            .all()
        )

    def create_instance(
        self,
        tenant_id: UUID,
        channel_type: str,
        display_name: str,
        provider_ref: str,
        config: dict[str, Any],
        status: ChannelStatus = ChannelStatus.DISCONNECTED,
        instance_id: UUID | None = None,
    ) -> ChannelInstance:
        """Create a new instance record."""
        instance = ChannelInstance(
            tenant_id=tenant_id,
            channel_type=channel_type,
            display_name=display_name,
            provider_ref=provider_ref,
            config=config,
            status=status.value,
            status_version=0,
        )
        if instance_id is not None:
            instance.id = instance_id
        self.db.add(instance)
        return instance

    def update_instance_status(
        self,
        instance_id: UUID,
        status: ChannelStatus,
        error_message: str | None = None,
        clear_error: bool = False,
        tenant_id: UUID | None = None,
    ) -> int:
        """
        Conditionally write an instance status.

        Args:
            instance_id: Instance to update
            status: New status
            error_message: Error message to store (optional)
            clear_error: Clear the stored error message
            tenant_id: Restrict the write to this tenant (optional)

        Returns:
            Number of rows updated (0 if the instance is gone)
        """
        values: dict[Any, Any] = {
            ChannelInstance.status: status.value,
            ChannelInstance.status_version: ChannelInstance.status_version + 1,
            ChannelInstance.updated_at: utcnow(),
        }
        if error_message is not None:
            values[ChannelInstance.error_message] = error_message
        elif clear_error:
            values[ChannelInstance.error_message] = None

        query = self.db.query(ChannelInstance).filter(ChannelInstance.id == instance_id)
        if tenant_id is not None:
            query = query.filter(ChannelInstance.tenant_id == tenant_id)

        return query.update(values, synchronize_session="fetch")

    def set_problematic_flag(
        self,
        instance_id: UUID,
        flagged: bool,
        reason: str | None = None,
        tenant_id: UUID | None = None,
    ) -> int:
        """Set or clear the known-problematic flag."""
        query = self.db.query(ChannelInstance).filter(ChannelInstance.id == instance_id)
        if tenant_id is not None:
            query = query.filter(ChannelInstance.tenant_id == tenant_id)

        return query.update(
            {
                ChannelInstance.flagged_problematic: flagged,
                ChannelInstance.flag_reason: reason if flagged else None,
                ChannelInstance.updated_at: utcnow(),
            },
            synchronize_session="fetch",
        )

    def touch_instance(self, instance_id: UUID, tenant_id: UUID | None = None) -> int:
        """Bump updated_at without a status write (status_version unchanged)."""
        query = self.db.query(ChannelInstance).filter(ChannelInstance.id == instance_id)
        if tenant_id is not None:
            query = query.filter(ChannelInstance.tenant_id == tenant_id)
        return query.update({ChannelInstance.updated_at: utcnow()}, synchronize_session="fetch")

    def touch_instance_activity(self, instance_id: UUID, at: datetime | None = None) -> None:
        """Record activity on an instance without changing its status."""
        now = at or utcnow()
        self.db.query(ChannelInstance).filter(ChannelInstance.id == instance_id).update(
            {ChannelInstance.last_activity: now},
            synchronize_session="fetch",
        )

    def update_instance_config(
        self,
        instance: ChannelInstance,
        config: dict[str, Any],
        display_name: str | None = None,
    ) -> ChannelInstance:
        """Replace the stored config (and optionally the display name)."""
        instance.config = config
        if display_name is not None:
            instance.display_name = display_name
        instance.updated_at = utcnow()
        return instance

    def delete_instance(self, instance: ChannelInstance) -> None:
        """Remove an instance row. Conversations and messages are left in place."""
        self.db.delete(instance)

    # =========================================================================
    # Conversations
    # =========================================================================

    def get_conversation(self, instance_id: UUID, contact_ref: str) -> ChannelConversation | None:
        """Get conversation by instance and contact."""
        return (
            self.db.query(ChannelConversation)
            .filter(
                ChannelConversation.instance_id == instance_id,
                ChannelConversation.contact_ref == contact_ref,
            )
            .first()
        )

    def get_or_create_conversation(
        self,
        instance: ChannelInstance,
        contact_ref: str,
        contact_name: str | None = None,
    ) -> tuple[ChannelConversation, bool]:
        """
        Get existing conversation or create a new one.

        An existing conversation picks up a changed contact name.

        Returns:
            Tuple of (conversation, created) where created is True if new.
        """
        conversation = self.get_conversation(instance.id, contact_ref)
        if conversation:
            if contact_name and conversation.contact_name != contact_name:
                conversation.contact_name = contact_name
            return conversation, False

        conversation = ChannelConversation(
            tenant_id=instance.tenant_id,
            instance_id=instance.id,
            contact_ref=contact_ref,
            contact_name=contact_name,
            status=ConversationStatus.ACTIVE.value,
            message_count=0,
        )
        self.db.add(conversation)
        self.db.flush()
        return conversation, True

    def update_conversation_activity(
        self,
        conversation: ChannelConversation,
        preview: str | None,
        at: datetime | None = None,
    ) -> None:
        """Update last-message markers after a message."""
        now = at or utcnow()
        conversation.last_activity = now
        conversation.updated_at = utcnow()
        if preview is not None:
            conversation.last_message_preview = preview[:255]
        conversation.message_count = (conversation.message_count or 0) + 1

    def count_active_conversations(self, instance_id: UUID) -> int:
        """Count conversations still open on an instance."""
        return (
            self.db.query(func.count(ChannelConversation.id))
            .filter(
                ChannelConversation.instance_id == instance_id,
                ChannelConversation.status == ConversationStatus.ACTIVE.value,
            )
            .scalar()
            or 0
        )

    def get_conversation_by_id(
        self,
        conversation_id: UUID,
        tenant_id: UUID | None = None,
    ) -> ChannelConversation | None:
        query = self.db.query(ChannelConversation).filter(ChannelConversation.id == conversation_id)
        if tenant_id is not None:
            query = query.filter(ChannelConversation.tenant_id == tenant_id)
        return query.first()

    def update_conversation_status(
        self,
        conversation_id: UUID,
        status: ConversationStatus,
        tenant_id: UUID | None = None,
    ) -> int:
        """Set a conversation status. Returns the number of rows updated."""
        query = self.db.query(ChannelConversation).filter(ChannelConversation.id == conversation_id)
        if tenant_id is not None:
            query = query.filter(ChannelConversation.tenant_id == tenant_id)
        return query.update(
            {
                ChannelConversation.status: status.value,
                ChannelConversation.updated_at: utcnow(),
            },
            synchronize_session="fetch",
        )

    def list_conversations(
        self,
        instance_id: UUID,
        status: ConversationStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[ChannelConversation]:
        """List conversations for an instance."""
        query = self.db.query(ChannelConversation).filter(
            ChannelConversation.instance_id == instance_id
        )

        if status:
            query = query.filter(ChannelConversation.status == status.value)

        return (
            query.order_by(ChannelConversation.last_activity.desc())
            .offset(offset)
            .limit(limit)
            .all()
        )

    # =========================================================================
    # Messages
    # =========================================================================

    def get_message_by_external_id(
        self,
        conversation_id: UUID,
        external_id: str,
    ) -> ChannelMessage | None:
        """Get message by provider message ID (for idempotency)."""
        return (
            self.db.query(ChannelMessage)
            .filter(
                ChannelMessage.conversation_id == conversation_id,
                ChannelMessage.external_id == external_id,
            )
            .first()
        )

    def create_message(
        self,
        tenant_id: UUID,
        conversation_id: UUID,
        direction: MessageDirection,
        content_type: ContentType,
        content_text: str | None = None,
        external_id: str | None = None,
        raw_payload: dict[str, Any] | None = None,
        created_at: datetime | None = None,
    ) -> ChannelMessage:
        """Append a message record."""
        message = ChannelMessage(
            tenant_id=tenant_id,
            conversation_id=conversation_id,
            direction=direction.value,
            content_type=content_type.value,
            content_text=content_text,
            external_id=external_id,
            raw_payload=raw_payload or {},
        )
        if created_at is not None:
            message.created_at = created_at
        self.db.add(message)
        return message

    # =========================================================================
    # Metrics
    # =========================================================================

    def get_instance_metrics(self, instance_id: UUID) -> dict[str, int]:
        """Conversation and message counts for an instance."""
        conversations = (
            self.db.query(func.count(ChannelConversation.id))
            .filter(ChannelConversation.instance_id == instance_id)
            .scalar()
            or 0
        )
        messages = (
            self.db.query(func.count(ChannelMessage.id))
            .join(ChannelConversation, ChannelConversation.id == ChannelMessage.conversation_id)
            .filter(ChannelConversation.instance_id == instance_id)
            .scalar()
            or 0
        )
        return {
            "conversations": conversations,
            "active_conversations": self.count_active_conversations(instance_id),
            "messages": messages,
        }

    # =========================================================================
    # Audit
    # =========================================================================

    def create_audit_log(
        self,
        instance: ChannelInstance,
        action: str,
        actor: str = "system",
        details: dict[str, Any] | None = None,
    ) -> ChannelAuditLog:
        """Record an action taken on an instance."""
        entry = ChannelAuditLog(
            tenant_id=instance.tenant_id,
            instance_id=instance.id,
            channel_type=instance.channel_type,
            action=action,
            actor=actor,
            details=details or {},
        )
        self.db.add(entry)
        return entry

    def list_audit_logs(self, instance_id: UUID, limit: int = 50) -> list[ChannelAuditLog]:
        """List audit entries for an instance, newest first."""
        return (
            self.db.query(ChannelAuditLog)
            .filter(ChannelAuditLog.instance_id == instance_id)
            .order_by(ChannelAuditLog.created_at.desc())
            .limit(limit)
            .all()
        )
