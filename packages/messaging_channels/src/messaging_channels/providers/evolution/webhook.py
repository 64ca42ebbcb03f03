"""
Evolution API Webhook Utilities

Helper functions for turning Evolution API webhook bodies into
provider-neutral WebhookEvents and for reading their data blocks.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from messaging_channels.contracts.event_types import WebhookEventType
from messaging_channels.contracts.payloads import WebhookEvent
from messaging_channels.errors import MissingRequiredData
from messaging_channels.persistence.models import ChannelStatus, ContentType

logger = logging.getLogger(__name__)

WHATSAPP_USER_SUFFIX = "@s.whatsapp.net"

# Evolution event name -> provider-neutral event type
EVENT_MAP: dict[str, WebhookEventType] = {
    "messages.upsert": WebhookEventType.MESSAGE_RECEIVED,
    "connection.update": WebhookEventType.CONNECTION_STATUS_CHANGED,
    "qrcode.updated": WebhookEventType.CODE_UPDATED,
    "instance.create": WebhookEventType.INSTANCE_CREATED,
    "instance.created": WebhookEventType.INSTANCE_CREATED,
}

# Evolution connection state -> local status
STATE_MAP: dict[str, ChannelStatus] = {
    "open": ChannelStatus.CONNECTED,
    "close": ChannelStatus.DISCONNECTED,
    "connecting": ChannelStatus.CONNECTING,
}


@dataclass
class NormalizedMessage:
    """An inbound Evolution message reduced to what the engine stores."""

    external_id: str
    contact_ref: str
    from_me: bool
    content_type: ContentType
    content_text: str
    message_type: str
    contact_name: str | None = None
    timestamp: datetime | None = None
    raw_payload: dict[str, Any] = field(default_factory=dict)


def normalize_event_name(event: str) -> str:
    """MESSAGES_UPSERT and messages.upsert are the same event."""
    return event.strip().lower().replace("_", ".")


def parse_evolution_webhook(
    body: dict[str, Any],
    instance_ref: str | None = None,
) -> WebhookEvent | None:
    """
    Build a WebhookEvent from an Evolution webhook body.

    Args:
        body: Parsed JSON body ({event, instance, data, date_time?})
        instance_ref: Instance reference from the URL (overrides body.instance)

    Returns:
        WebhookEvent, or None for events the engine does not handle

    Raises:
        MissingRequiredData: body lacks event/instance or data is not an object
    """
    event = body.get("event")
    if not event or not isinstance(event, str):
        raise MissingRequiredData("Missing webhook event name")

    ref = instance_ref or body.get("instance")
    if isinstance(ref, dict):
        ref = ref.get("instanceName") or ref.get("name")
    if not ref:
        raise MissingRequiredData("Missing webhook instance reference")

    data = body.get("data", {})
    if not isinstance(data, dict):
        raise MissingRequiredData("Webhook data must be an object")

    event_name = normalize_event_name(event)
    event_type = EVENT_MAP.get(event_name)
    if event_type is None:
        logger.debug(f"Ignoring Evolution event {event_name}", extra={"instance": ref})
        return None

    return WebhookEvent(
        event_type=event_type.value,
        instance_ref=str(ref),
        payload=data,
        timestamp=_parse_event_time(body.get("date_time")),
        raw_event=event,
    )


def _parse_event_time(value: Any) -> datetime:
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
            return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
        except ValueError:
            pass
    return datetime.now(timezone.utc)


def normalize_contact_ref(remote_jid: str) -> str:
    """
    Normalize a WhatsApp JID into the stored contact reference.

    "15551234567@s.whatsapp.net" and "+15551234567" both become "+15551234567".
    Group and other JIDs are kept as-is.
    """
    contact = remote_jid.strip()
    if contact.endswith(WHATSAPP_USER_SUFFIX):
        contact = contact[: -len(WHATSAPP_USER_SUFFIX)]
    if contact.isdigit():
        contact = f"+{contact}"
    return contact


def extract_inbound_message(
    data: dict[str, Any],
    default_timestamp: datetime | None = None,
) -> NormalizedMessage:
    """
    Extract and normalize the message carried by a messages.upsert event.

    Raises:
        MissingRequiredData: remoteJid or message id is absent
    """
    key = data.get("key") or {}
    remote_jid = key.get("remoteJid")
    message_id = key.get("id")

    if not remote_jid or not message_id:
        raise MissingRequiredData("Missing required message data: contactJid or messageId")

    message = data.get("message") or {}
    message_type = data.get("messageType") or _guess_message_type(message)
    content_type, content_text = normalize_content(message_type, message)

    timestamp = default_timestamp
    raw_ts = data.get("messageTimestamp")
    if raw_ts:
        try:
            timestamp = datetime.fromtimestamp(int(raw_ts), tz=timezone.utc)
        except (TypeError, ValueError, OverflowError):
            logger.debug(f"Unparseable messageTimestamp: {raw_ts}")

    return NormalizedMessage(
        external_id=str(message_id),
        contact_ref=normalize_contact_ref(str(remote_jid)),
        from_me=bool(key.get("fromMe")),
        content_type=content_type,
        content_text=content_text,
        message_type=message_type,
        contact_name=data.get("pushName") or None,
        timestamp=timestamp,
        raw_payload=data,
    )


def _guess_message_type(message: dict[str, Any]) -> str:
    for candidate in message:
        if candidate.endswith("Message") or candidate == "conversation":
            return candidate
    return "unknown"


def normalize_content(message_type: str, message: dict[str, Any]) -> tuple[ContentType, str]:
    """
    Map an Evolution message to (content_type, display text).

    Text passes through; image/video use the caption; documents use the
    file name; audio gets a fixed placeholder.
    """
    if message_type == "conversation":
        return ContentType.TEXT, message.get("conversation") or ""

    if message_type == "extendedTextMessage":
        return ContentType.TEXT, (message.get("extendedTextMessage") or {}).get("text") or ""

    if message_type == "imageMessage":
        image = message.get("imageMessage") or {}
        return ContentType.IMAGE, image.get("caption") or "[Image]"

    if message_type == "documentMessage":
        document = message.get("documentMessage") or {}
        return ContentType.DOCUMENT, (
            document.get("fileName") or document.get("caption") or "[Document]"
        )

    if message_type == "audioMessage":
        return ContentType.AUDIO, "[Audio message]"

    if message_type == "videoMessage":
        video = message.get("videoMessage") or {}
        return ContentType.VIDEO, video.get("caption") or "[Video]"

    return ContentType.OTHER, f"[{message_type} message]"


def map_connection_state(state: str | None) -> ChannelStatus:
    """Map an Evolution connection state to the local status (unknown -> error)."""
    if not state:
        return ChannelStatus.ERROR
    return STATE_MAP.get(str(state).lower(), ChannelStatus.ERROR)


def extract_connection_state(data: dict[str, Any]) -> str | None:
    """Read the state from a connection.update data block."""
    state = data.get("state") or data.get("connection") or data.get("status")
    return str(state) if state else None


def extract_code(data: dict[str, Any]) -> str | None:
    """Read the linking code from a qrcode.updated data block."""
    qrcode = data.get("qrcode")
    if isinstance(qrcode, dict):
        return qrcode.get("base64") or qrcode.get("code")
    if isinstance(qrcode, str):
        return qrcode
    return data.get("base64") or data.get("code")


def validate_api_key(
    request_headers: dict[str, str],
    expected_api_key: str,
    body: dict[str, Any] | None = None,
) -> bool:
    """
    Validate API key from request headers (or body).

    Evolution API can send the key in:
    - Header: "apikey"
    - Header: "Authorization: Bearer <key>"
    - Body: "apikey"
    """
    headers = {k.lower(): v for k, v in request_headers.items()}

    if headers.get("apikey") == expected_api_key:
        return True

    auth_header = headers.get("authorization", "")
    if auth_header.startswith("Bearer ") and auth_header[7:] == expected_api_key:
        return True

    if body and body.get("apikey") == expected_api_key:
        return True

    return False
