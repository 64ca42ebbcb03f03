"""Event contracts and payload models for the channels engine."""

from messaging_channels.contracts.event_types import ChannelEventType, WebhookEventType
from messaging_channels.contracts.payloads import InstanceConfig, WebhookEvent

__all__ = [
    "ChannelEventType",
    "InstanceConfig",
    "WebhookEvent",
    "WebhookEventType",
]
