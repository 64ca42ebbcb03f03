"""
Channel Engine Database Models

Tables owned by the messaging channels engine.

Tables:
- channel_instances: Tenant-configured messaging endpoints and their connection status
- channel_conversations: One thread per remote contact per instance
- channel_messages: Append-only inbound/outbound messages
- channel_audit_logs: Recovery and administrative actions on instances
"""

from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base

ChannelBase = declarative_base()

# JSONB on PostgreSQL, plain JSON elsewhere. Instance config uses plain JSON
# so the stored text is returned exactly as written.
JSONType = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes read back from drivers that drop tzinfo."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class ChannelType(str, Enum):
    """Kinds of messaging channels an instance can be bound to."""

    WHATSAPP = "whatsapp"
    TELEGRAM = "telegram"
    VOICE = "voice"
    SMS = "sms"
    EMAIL = "email"


class ChannelStatus(str, Enum):
    """Connection status of a channel instance."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"
    SUSPENDED = "suspended"
    MAINTENANCE = "maintenance"


class ConversationStatus(str, Enum):
    """Status of a conversation."""

    ACTIVE = "active"
    RESOLVED = "resolved"
    ESCALATED = "escalated"
    ARCHIVED = "archived"


class MessageDirection(str, Enum):
    """Direction of a message."""

    INBOUND = "inbound"
    OUTBOUND = "outbound"


class ContentType(str, Enum):
    """Normalized content kinds stored on messages."""

    TEXT = "text"
    IMAGE = "image"
    AUDIO = "audio"
    DOCUMENT = "document"
    VIDEO = "video"
    OTHER = "other"


class ChannelModelMixin:
    """Common fields for all channel engine models."""

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    tenant_id = Column(Uuid(as_uuid=True), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)


class ChannelInstance(ChannelBase, ChannelModelMixin):
    """
    A tenant-configured connection to one messaging provider endpoint.

    ``provider_ref`` is the upstream instance name; webhooks are routed by it
    or by the instance id. ``status`` is only written through the lifecycle
    manager, the connection flow or the recovery manager.
    """

    __tablename__ = "channel_instances"

    channel_type = Column(String(20), nullable=False)
    display_name = Column(String(50), nullable=False)
    provider_ref = Column(String(100), nullable=False)
    status = Column(String(20), nullable=False, default=ChannelStatus.DISCONNECTED.value)
    status_version = Column(Integer, nullable=False, default=0)
    config = Column(JSON, nullable=False, default=dict)
    error_message = Column(Text, nullable=True)
    last_activity = Column(DateTime(timezone=True), nullable=True)

    # Operator allow-list of known-problematic instances
    flagged_problematic = Column(Boolean, nullable=False, default=False)
    flag_reason = Column(Text, nullable=True)

    __table_args__ = (
        UniqueConstraint(
            "tenant_id", "channel_type", "display_name", name="uq_channel_instances_tenant_type_name"
        ),
        UniqueConstraint("provider_ref", name="uq_channel_instances_provider_ref"),
        Index("idx_channel_instances_status_updated", "status", "updated_at"),
        Index("idx_channel_instances_flagged", "flagged_problematic"),
    )


class ChannelConversation(ChannelBase, ChannelModelMixin):
    """
    The thread of messages with one remote contact on one instance.

    Created lazily on the first inbound message. Never deleted by the engine.
    """

    __tablename__ = "channel_conversations"

    instance_id = Column(Uuid(as_uuid=True), nullable=False, index=True)
    contact_ref = Column(String(100), nullable=False)  # E.164 or provider JID
    contact_name = Column(String(255), nullable=True)
    patient_id = Column(Uuid(as_uuid=True), nullable=True)
    status = Column(String(20), nullable=False, default=ConversationStatus.ACTIVE.value)
    last_activity = Column(DateTime(timezone=True), nullable=True)
    last_message_preview = Column(String(255), nullable=True)
    message_count = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        UniqueConstraint("instance_id", "contact_ref", name="uq_channel_conversations_instance_contact"),
        Index("idx_channel_conversations_instance_status", "instance_id", "status"),
    )


class ChannelMessage(ChannelBase, ChannelModelMixin):
    """
    One inbound or outbound unit of content. Append-only.

    Provider message ids (external_id) are used for idempotency.
    """

    __tablename__ = "channel_messages"

    conversation_id = Column(Uuid(as_uuid=True), nullable=False, index=True)
    direction = Column(String(10), nullable=False)
    content_type = Column(String(20), nullable=False, default=ContentType.TEXT.value)
    content_text = Column(Text, nullable=True)
    external_id = Column(String(100), nullable=True)
    raw_payload = Column(JSONType, nullable=False, default=dict)

    __table_args__ = (
        UniqueConstraint("conversation_id", "external_id", name="uq_channel_messages_conversation_external"),
        Index("idx_channel_messages_conversation_created", "conversation_id", "created_at"),
    )


class ChannelAuditLog(ChannelBase, ChannelModelMixin):
    """Audit trail for recovery resets, flags and administrative status changes."""

    __tablename__ = "channel_audit_logs"

    instance_id = Column(Uuid(as_uuid=True), nullable=False, index=True)
    channel_type = Column(String(20), nullable=False)
    action = Column(String(50), nullable=False)
    actor = Column(String(100), nullable=False, default="system")
    details = Column(JSONType, nullable=False, default=dict)
