"""
WhatsApp Message Processor

Decides how to answer an inbound WhatsApp message: instance config first
(auto-reply, business hours), then intent classification and the appointment
bridge.
"""

import logging
from collections.abc import Callable
from datetime import datetime, timezone

from messaging_channels.contracts.payloads import InstanceConfig
from messaging_channels.persistence.models import (
    ChannelConversation,
    ChannelInstance,
    ChannelMessage,
)
from messaging_channels.providers.base import (
    AppointmentBridge,
    IntentClassifier,
    MessageIntent,
    MessageProcessor,
    ProcessingResult,
)
from messaging_channels.service.automation import (
    OUTSIDE_HOURS_REPLY,
    KeywordIntentClassifier,
    is_within_business_hours,
)

logger = logging.getLogger(__name__)


class WhatsAppMessageProcessor(MessageProcessor):
    """Message processor for WhatsApp instances."""

    def __init__(
        self,
        bridge: AppointmentBridge,
        classifier: IntentClassifier | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.bridge = bridge
        self.classifier = classifier or KeywordIntentClassifier()
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    async def process_message(
        self,
        instance: ChannelInstance,
        conversation: ChannelConversation,
        message: ChannelMessage,
    ) -> ProcessingResult:
        config = InstanceConfig.model_validate(instance.config or {})
        if not config.auto_reply:
            return ProcessingResult()

        intent = await self.classifier.classify(
            message.content_text or "",
            {
                "tenant_id": str(instance.tenant_id),
                "channel_type": instance.channel_type,
                "contact_ref": conversation.contact_ref,
            },
        )

        logger.debug(
            f"Classified message as {intent.intent.value}",
            extra={"conversation_id": str(conversation.id), "confidence": intent.confidence},
        )

        # Emergencies are answered at any hour
        if intent.intent != MessageIntent.EMERGENCY and not is_within_business_hours(
            config.business_hours, self.clock()
        ):
            return ProcessingResult(
                intent=intent.intent,
                confidence=intent.confidence,
                reply_text=OUTSIDE_HOURS_REPLY,
                actions=["outside_hours"],
            )

        if intent.intent == MessageIntent.UNKNOWN:
            return ProcessingResult(intent=intent.intent, confidence=intent.confidence)

        return await self.bridge.handle_intent(instance, conversation, intent)
