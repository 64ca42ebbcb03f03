"""Persistence layer for the channels engine."""

from messaging_channels.persistence.models import (
    ChannelAuditLog,
    ChannelBase,
    ChannelConversation,
    ChannelInstance,
    ChannelMessage,
    ChannelStatus,
    ChannelType,
    ContentType,
    ConversationStatus,
    MessageDirection,
)
from messaging_channels.persistence.repo import ChannelRepository

__all__ = [
    "ChannelAuditLog",
    "ChannelBase",
    "ChannelConversation",
    "ChannelInstance",
    "ChannelMessage",
    "ChannelRepository",
    "ChannelStatus",
    "ChannelType",
    "ContentType",
    "ConversationStatus",
    "MessageDirection",
]
