"""
Channel providers.

Available providers:
- evolution: Evolution API (Baileys-based WhatsApp Web integration)
"""

from messaging_channels.providers.base import (
    AppointmentBackend,
    AppointmentBridge,
    ConnectionService,
    IntentClassifier,
    IntentResult,
    LinkingCode,
    MessageIntent,
    MessageProcessor,
    ProcessingResult,
    ProviderError,
    ProviderResponse,
)

__all__ = [
    "AppointmentBackend",
    "AppointmentBridge",
    "ConnectionService",
    "IntentClassifier",
    "IntentResult",
    "LinkingCode",
    "MessageIntent",
    "MessageProcessor",
    "ProcessingResult",
    "ProviderError",
    "ProviderResponse",
]
