"""
WhatsApp Appointment Bridge

Turns a classified intent into booking actions and a WhatsApp reply. The
booking rules themselves live behind AppointmentBackend.
"""

import logging
from typing import Any

from messaging_channels.persistence.models import ChannelConversation, ChannelInstance
from messaging_channels.providers.base import (
    AppointmentBackend,
    AppointmentBridge,
    IntentResult,
    MessageIntent,
    ProcessingResult,
)
from messaging_channels.service.automation import DEFAULT_REPLIES

logger = logging.getLogger(__name__)

MAX_SLOTS_SHOWN = 5

NO_SLOTS_REPLY = "En este momento no hay horarios disponibles. ¿Desea que le avisemos cuando se libere uno?"
BOOKED_REPLY = "✅ Su cita quedó agendada para el *{date}* a las *{time}*."
BOOK_FAILED_REPLY = "No pudimos agendar ese horario. Por favor elija otro de la lista."
CANCELLED_REPLY = "Su cita fue cancelada. Si desea agendar una nueva, escríbanos."
CANCEL_FAILED_REPLY = "No encontramos una cita para cancelar. ¿Podría confirmarme los detalles?"


def format_slots(slots: list[dict[str, Any]], limit: int = MAX_SLOTS_SHOWN) -> str:
    """Render available slots as a numbered WhatsApp list."""
    lines = ["📅 *Horarios disponibles:*", ""]
    for index, slot in enumerate(slots[:limit], start=1):
        line = f"{index}. *{slot.get('date', '')}* {slot.get('time') or slot.get('start_time', '')}".rstrip()
        provider = slot.get("doctor") or slot.get("provider")
        if provider:
            line += f" - {provider}"
        lines.append(line)

    if len(slots) > limit:
        lines.append(f"... y {len(slots) - limit} más")

    lines.append("")
    lines.append("Responda con el número del horario que prefiere.")
    return "\n".join(lines)


class WhatsAppAppointmentBridge(AppointmentBridge):
    """
    Appointment bridge for WhatsApp conversations.

    Without a backend every intent gets its default reply.
    """

    def __init__(
        self,
        backend: AppointmentBackend | None = None,
        replies: dict[MessageIntent, str] | None = None,
    ):
        self.backend = backend
        self.replies = {**DEFAULT_REPLIES, **(replies or {})}

    def _reply(self, intent: IntentResult, text: str, actions: list[str] | None = None) -> ProcessingResult:
        return ProcessingResult(
            intent=intent.intent,
            confidence=intent.confidence,
            reply_text=text,
            actions=actions or [],
        )

    async def handle_intent(
        self,
        instance: ChannelInstance,
        conversation: ChannelConversation,
        intent: IntentResult,
    ) -> ProcessingResult:
        if intent.intent == MessageIntent.EMERGENCY:
            return self._reply(intent, self.replies[MessageIntent.EMERGENCY], ["escalate"])

        if self.backend is None:
            return self._reply(intent, self.replies.get(intent.intent, self.replies[MessageIntent.UNKNOWN]))

        if intent.intent == MessageIntent.APPOINTMENT_BOOKING:
            return await self._book(instance, conversation, intent)
        if intent.intent == MessageIntent.RESCHEDULE:
            return await self._offer_slots(instance, intent)
        if intent.intent == MessageIntent.CANCEL:
            return await self._cancel(instance, conversation, intent)

        return self._reply(intent, self.replies.get(intent.intent, self.replies[MessageIntent.UNKNOWN]))

    async def _offer_slots(self, instance: ChannelInstance, intent: IntentResult) -> ProcessingResult:
        slots = await self.backend.available_slots(instance.tenant_id, intent.entities)
        if not slots:
            return self._reply(intent, NO_SLOTS_REPLY)
        return self._reply(intent, format_slots(slots), ["slots_offered"])

    async def _book(
        self,
        instance: ChannelInstance,
        conversation: ChannelConversation,
        intent: IntentResult,
    ) -> ProcessingResult:
        # Only book when the patient named a concrete date and time
        if "date" not in intent.entities or "time" not in intent.entities:
            return await self._offer_slots(instance, intent)

        appointment = await self.backend.book(instance.tenant_id, conversation.contact_ref, intent.entities)
        if not appointment:
            return self._reply(intent, BOOK_FAILED_REPLY)

        logger.info(
            "Appointment booked from conversation",
            extra={"conversation_id": str(conversation.id), "appointment": appointment.get("id")},
        )
        return self._reply(
            intent,
            BOOKED_REPLY.format(
                date=appointment.get("date", ""),
                time=appointment.get("time") or intent.entities.get("time", ""),
            ),
            ["appointment_created"],
        )

    async def _cancel(
        self,
        instance: ChannelInstance,
        conversation: ChannelConversation,
        intent: IntentResult,
    ) -> ProcessingResult:
        cancelled = await self.backend.cancel(instance.tenant_id, conversation.contact_ref, intent.entities)
        if not cancelled:
            return self._reply(intent, CANCEL_FAILED_REPLY)
        return self._reply(intent, CANCELLED_REPLY, ["appointment_cancelled"])
