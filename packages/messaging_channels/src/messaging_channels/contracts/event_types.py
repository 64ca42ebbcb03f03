"""
Channel Event Types

Events published by the messaging channels engine.
"""

from enum import Enum


class ChannelEventType(str, Enum):
    """
    Event types for the messaging channels engine.

    PUBLISHED by this engine:
    - INSTANCE_CREATED: A tenant created a channel instance
    - STATUS_CHANGED: An instance status was written
    - MESSAGE_RECEIVED: An inbound message was persisted
    - REPLY_SENT: An automated reply went out through the provider
    - INSTANCE_RESET: Recovery force-reset an instance
    - CONNECTION_STALLED: Code-connection polling gave up
    """

    INSTANCE_CREATED = "channel_instance_created"
    STATUS_CHANGED = "channel_status_changed"
    MESSAGE_RECEIVED = "channel_message_received"
    REPLY_SENT = "channel_reply_sent"
    INSTANCE_RESET = "channel_instance_reset"
    CONNECTION_STALLED = "channel_connection_stalled"

    def __str__(self) -> str:
        return self.value


class WebhookEventType(str, Enum):
    """Provider-neutral webhook event types handled by the webhook processor."""

    MESSAGE_RECEIVED = "message.received"
    CONNECTION_STATUS_CHANGED = "connection.status_changed"
    CODE_UPDATED = "code.updated"
    INSTANCE_CREATED = "instance.created"
