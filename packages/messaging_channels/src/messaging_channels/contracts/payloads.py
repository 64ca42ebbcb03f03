"""
Channel Payload Models

Pydantic models for webhook events, instance configuration and the payloads
of events published to Redis Streams.
"""

import re
from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field, field_validator

PHONE_PATTERN = re.compile(r"^\+\d{10,15}$")


# =============================================================================
# Webhook events
# =============================================================================


class WebhookEvent(BaseModel):
    """
    Provider-neutral webhook event.

    Built by a provider parser (e.g. Evolution) from the raw webhook body.
    """

    event_type: str = Field(..., description="Normalized event type (WebhookEventType value)")
    instance_ref: str = Field(..., description="Instance id or provider instance name")
    payload: dict[str, Any] = Field(default_factory=dict, description="Provider event data")
    timestamp: datetime = Field(..., description="When the provider emitted the event")
    raw_event: str | None = Field(None, description="Event name as sent by the provider")


# =============================================================================
# Instance configuration
# =============================================================================


class BusinessHoursConfig(BaseModel):
    """Opening hours used to decide between normal and outside-hours replies."""

    model_config = {"extra": "allow"}

    enabled: bool = False
    timezone: str = "UTC"
    schedule: dict[str, Any] = Field(default_factory=dict)


class AIConfig(BaseModel):
    model_config = {"extra": "allow"}

    enabled: bool = True
    model: str | None = None
    temperature: float | None = Field(None, ge=0, le=2)
    max_tokens: int | None = Field(None, gt=0)
    timeout_seconds: int | None = Field(None, gt=0)
    custom_prompt: str | None = None


class WebhookTargetConfig(BaseModel):
    model_config = {"extra": "allow"}

    url: str | None = None
    secret: str | None = None
    events: list[str] = Field(default_factory=list)

    @field_validator("url")
    @classmethod
    def _http_url(cls, value: str | None) -> str | None:
        if value and not value.startswith(("http://", "https://")):
            raise ValueError("webhook url must start with http:// or https://")
        return value


class LimitsConfig(BaseModel):
    model_config = {"extra": "allow"}

    max_concurrent_chats: int | None = Field(None, gt=0)
    message_rate_limit: int | None = Field(None, gt=0)
    session_timeout_minutes: int | None = Field(None, gt=0)


class WhatsAppConfig(BaseModel):
    model_config = {"extra": "allow"}

    phone_number: str | None = None
    qr_code: dict[str, Any] = Field(default_factory=dict)
    features: dict[str, Any] = Field(default_factory=dict)

    @field_validator("phone_number")
    @classmethod
    def _e164(cls, value: str | None) -> str | None:
        if value and not PHONE_PATTERN.match(value):
            raise ValueError("phone_number must be in +E.164 format")
        return value


class InstanceConfig(BaseModel):
    """
    Tenant-owned configuration for a channel instance.

    Used for validation and typed reads only; the stored config is always the
    exact structure the tenant supplied.
    """

    model_config = {"extra": "allow"}

    auto_reply: bool = True
    business_hours: BusinessHoursConfig = Field(default_factory=BusinessHoursConfig)
    ai_config: AIConfig = Field(default_factory=AIConfig)
    webhook: WebhookTargetConfig = Field(default_factory=WebhookTargetConfig)
    limits: LimitsConfig = Field(default_factory=LimitsConfig)
    whatsapp: WhatsAppConfig = Field(default_factory=WhatsAppConfig)


# =============================================================================
# Published event payloads
# =============================================================================


class StatusChangedPayload(BaseModel):
    """Payload for CHANNEL_STATUS_CHANGED."""

    instance_id: UUID
    channel_type: str
    previous_status: str | None = None
    status: str
    status_version: int | None = None
    source: str = Field(..., description="lifecycle, webhook, poller or recovery")
    error_message: str | None = None


class MessageReceivedPayload(BaseModel):
    """Payload for CHANNEL_MESSAGE_RECEIVED."""

    instance_id: UUID
    conversation_id: UUID
    message_id: UUID
    contact_ref: str
    contact_name: str | None = None
    content_type: str
    content_text: str | None = None
    external_id: str
    is_new_conversation: bool = False


class InstanceResetPayload(BaseModel):
    """Payload for CHANNEL_INSTANCE_RESET."""

    instance_id: UUID
    previous_status: str
    status: str
    actor: str
    reason: str | None = None
