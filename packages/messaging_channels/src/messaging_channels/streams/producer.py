"""
Channel Event Publisher

Publishes channel engine events to a Redis Stream.

Publishing is best-effort: state changes are already committed by the time
an event is emitted, so a Redis outage is logged and never propagated.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any
from uuid import UUID, uuid4

import redis

from messaging_channels.contracts.event_types import ChannelEventType
from messaging_channels.contracts.payloads import (
    InstanceResetPayload,
    MessageReceivedPayload,
    StatusChangedPayload,
)

logger = logging.getLogger(__name__)

DEFAULT_EVENTS_STREAM = "bc:channels:events"
EVENT_VERSION = 1


def stream_fields(
    event_type: ChannelEventType,
    tenant_id: UUID,
    payload: dict[str, Any],
    correlation_id: str | None = None,
) -> dict[str, str]:
    """
    Build the stream entry for one event.

    Redis Streams only carry strings, so the payload is JSON-encoded and
    ids and timestamps are rendered as text.
    """
    return {
        "event_id": str(uuid4()),
        "event_type": event_type.value,
        "tenant_id": str(tenant_id),
        "occurred_at": datetime.now(timezone.utc).isoformat(),
        "version": str(EVENT_VERSION),
        "payload": json.dumps(payload),
        "correlation_id": correlation_id or "",
    }


class ChannelEventPublisher:
    """
    Producer for publishing channel events to Redis Streams.
    """

    def __init__(
        self,
        redis_client: redis.Redis,
        stream_name: str = DEFAULT_EVENTS_STREAM,
        max_len: int = 100000,
    ):
        self.redis = redis_client
        self.stream_name = stream_name
        self.max_len = max_len

    def publish_status_changed(
        self,
        tenant_id: UUID,
        payload: StatusChangedPayload,
        correlation_id: str | None = None,
    ) -> str | None:
        """Publish CHANNEL_STATUS_CHANGED."""
        return self.publish(
            ChannelEventType.STATUS_CHANGED,
            tenant_id,
            payload.model_dump(mode="json"),
            correlation_id=correlation_id,
        )

    def publish_message_received(
        self,
        tenant_id: UUID,
        payload: MessageReceivedPayload,
        correlation_id: str | None = None,
    ) -> str | None:
        """Publish CHANNEL_MESSAGE_RECEIVED."""
        return self.publish(
            ChannelEventType.MESSAGE_RECEIVED,
            tenant_id,
            payload.model_dump(mode="json"),
            correlation_id=correlation_id,
        )

    def publish_instance_reset(
        self,
        tenant_id: UUID,
        payload: InstanceResetPayload,
    ) -> str | None:
        """Publish CHANNEL_INSTANCE_RESET."""
        return self.publish(
            ChannelEventType.INSTANCE_RESET,
            tenant_id,
            payload.model_dump(mode="json"),
        )

    def publish(
        self,
        event_type: ChannelEventType,
        tenant_id: UUID,
        payload: dict[str, Any],
        correlation_id: str | None = None,
    ) -> str | None:
        """
        Publish an event.

        Returns:
            Stream message ID, or None if Redis rejected the write
        """
        fields = stream_fields(event_type, tenant_id, payload, correlation_id)

        try:
            msg_id = self.redis.xadd(
                self.stream_name,
                fields,
                maxlen=self.max_len,
                approximate=True,
            )
        except redis.RedisError as e:
            logger.warning(
                f"Failed to publish {event_type.value}: {e}",
                extra={"stream": self.stream_name, "event_id": fields["event_id"]},
            )
            return None

        logger.debug(
            f"Published to {self.stream_name}",
            extra={
                "stream": self.stream_name,
                "event_type": fields["event_type"],
                "event_id": fields["event_id"],
                "msg_id": msg_id,
            },
        )

        return msg_id
