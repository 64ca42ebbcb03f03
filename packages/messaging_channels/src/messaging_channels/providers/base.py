"""
Channel Provider Base

Abstract interfaces resolved per channel type by the channel registry:
- ConnectionService: talks to the upstream gateway (connect, status, send)
- MessageProcessor: decides how to answer an inbound message
- AppointmentBridge: turns classified intents into booking actions/replies

Plus the external collaborators they depend on (intent classifier,
appointment backend).
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from messaging_channels.persistence.models import (
    ChannelConversation,
    ChannelInstance,
    ChannelMessage,
    ChannelStatus,
)


class ProviderError(Exception):
    """Error from an upstream messaging provider."""

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
        retryable: bool = False,
    ):
        super().__init__(message)
        self.code = code
        self.details = details or {}
        self.retryable = retryable


@dataclass
class LinkingCode:
    """A scannable linking code issued by the upstream provider."""

    code: str
    expires_at: datetime
    pairing_code: str | None = None


@dataclass
class ProviderResponse:
    """
    Response from provider after sending a message.
    """

    success: bool
    message_id: str | None = None
    error_code: str | None = None
    error_message: str | None = None
    raw_response: dict[str, Any] = field(default_factory=dict)


class MessageIntent(str, Enum):
    """Intents the message processor can act on."""

    APPOINTMENT_BOOKING = "appointment_booking"
    RESCHEDULE = "reschedule"
    CANCEL = "cancel"
    INQUIRY = "inquiry"
    GREETING = "greeting"
    EMERGENCY = "emergency"
    UNKNOWN = "unknown"


@dataclass
class IntentResult:
    """Output of an intent classifier."""

    intent: MessageIntent
    confidence: float = 0.0
    entities: dict[str, Any] = field(default_factory=dict)
    keyword: str | None = None


@dataclass
class ProcessingResult:
    """What the message processor decided for one inbound message."""

    intent: MessageIntent | None = None
    confidence: float = 0.0
    reply_text: str | None = None
    actions: list[str] = field(default_factory=list)


class ConnectionService(ABC):
    """
    Upstream gateway operations for one channel type.

    Every method may raise ProviderError; retryable=True marks transient
    failures (network, timeout, 5xx).
    """

    @abstractmethod
    async def connect(self, instance: ChannelInstance) -> LinkingCode | None:
        """
        Register the instance upstream (if needed) and request a linking code.

        Returns:
            LinkingCode if the provider returned one synchronously, else None
        """
        ...

    @abstractmethod
    async def fetch_code(self, instance: ChannelInstance) -> LinkingCode | None:
        """Request a fresh linking code for an instance that is connecting."""
        ...

    @abstractmethod
    async def fetch_status(self, instance: ChannelInstance) -> ChannelStatus:
        """Get the live upstream connection status."""
        ...

    @abstractmethod
    async def terminate(self, instance: ChannelInstance) -> None:
        """End the upstream session (logout)."""
        ...

    @abstractmethod
    async def delete_remote(self, instance: ChannelInstance) -> None:
        """Remove the instance from the upstream provider."""
        ...

    @abstractmethod
    async def instance_exists(self, instance: ChannelInstance) -> bool:
        """Check whether the upstream provider still knows the instance."""
        ...

    @abstractmethod
    async def send_text(
        self,
        instance: ChannelInstance,
        to: str,
        text: str,
    ) -> ProviderResponse:
        """Send a text message through the instance."""
        ...

    async def close(self) -> None:
        """Release network resources."""
        return None


class IntentClassifier(ABC):
    """Turns message text into an intent. External collaborator."""

    @abstractmethod
    async def classify(self, text: str, context: dict[str, Any] | None = None) -> IntentResult:
        ...


class AppointmentBackend(ABC):
    """
    Opaque calls into the appointment domain.

    Slot validation, pricing and booking rules live behind this interface.
    """

    @abstractmethod
    async def available_slots(
        self,
        tenant_id: Any,
        entities: dict[str, Any],
    ) -> list[dict[str, Any]]:
        ...

    @abstractmethod
    async def book(
        self,
        tenant_id: Any,
        contact_ref: str,
        entities: dict[str, Any],
    ) -> dict[str, Any] | None:
        ...

    @abstractmethod
    async def cancel(
        self,
        tenant_id: Any,
        contact_ref: str,
        entities: dict[str, Any],
    ) -> bool:
        ...


class AppointmentBridge(ABC):
    """Maps a classified intent to booking actions and a reply for the contact."""

    @abstractmethod
    async def handle_intent(
        self,
        instance: ChannelInstance,
        conversation: ChannelConversation,
        intent: IntentResult,
    ) -> ProcessingResult:
        ...


class MessageProcessor(ABC):
    """Decides how the engine answers an inbound message."""

    @abstractmethod
    async def process_message(
        self,
        instance: ChannelInstance,
        conversation: ChannelConversation,
        message: ChannelMessage,
    ) -> ProcessingResult:
        ...
