"""Message handling and operator services for channel instances."""

from messaging_channels.service.appointment_bridge import WhatsAppAppointmentBridge
from messaging_channels.service.automation import KeywordIntentClassifier
from messaging_channels.service.recovery import RecoveryManager, ResetResult, StuckInstance
from messaging_channels.service.webhook_processor import WebhookProcessor
from messaging_channels.service.whatsapp_processor import WhatsAppMessageProcessor

__all__ = [
    "KeywordIntentClassifier",
    "RecoveryManager",
    "ResetResult",
    "StuckInstance",
    "WebhookProcessor",
    "WhatsAppAppointmentBridge",
    "WhatsAppMessageProcessor",
]
