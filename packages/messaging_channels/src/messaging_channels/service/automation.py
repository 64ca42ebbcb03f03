"""
Channel Automation

Keyword-based intent detection for patient messages and the default replies
the assistant sends for each intent.
"""

import logging
import re
from datetime import datetime, timezone
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from messaging_channels.contracts.payloads import BusinessHoursConfig
from messaging_channels.providers.base import IntentClassifier, IntentResult, MessageIntent

logger = logging.getLogger(__name__)

# Checked in order; the first intent with a matching keyword wins
INTENT_KEYWORDS: dict[MessageIntent, set[str]] = {
    MessageIntent.EMERGENCY: {
        "emergencia",
        "urgencia",
        "urgente",
        "sangrado",
        "dolor fuerte",
        "no puedo respirar",
        "emergency",
        "urgent",
        "bleeding",
        "chest pain",
    },
    MessageIntent.CANCEL: {
        "cancelar",
        "anular",
        "cancel",
    },
    MessageIntent.RESCHEDULE: {
        "reprogramar",
        "reagendar",
        "cambiar cita",
        "cambiar mi cita",
        "mover cita",
        "mover mi cita",
        "reschedule",
        "change appointment",
        "move appointment",
    },
    MessageIntent.APPOINTMENT_BOOKING: {
        "agendar",
        "reservar",
        "cita",
        "turno",
        "book",
        "appointment",
        "schedule",
    },
    MessageIntent.INQUIRY: {
        "horario",
        "horarios",
        "precio",
        "costo",
        "informacion",
        "información",
        "consulta",
        "hours",
        "price",
        "cost",
        "information",
    },
    MessageIntent.GREETING: {
        "hola",
        "buenos dias",
        "buenos días",
        "buenas tardes",
        "buenas noches",
        "hello",
        "hi",
        "good morning",
    },
}

DEFAULT_REPLIES: dict[MessageIntent, str] = {
    MessageIntent.APPOINTMENT_BOOKING: (
        "Entiendo que desea agendar una cita. ¿Podría indicarme qué especialidad necesita?"
    ),
    MessageIntent.INQUIRY: "Le ayudo a consultar sus citas. ¿Podría proporcionarme su número de identificación?",
    MessageIntent.RESCHEDULE: "Puedo ayudarle a reprogramar su cita. ¿Cuál es el número de su cita actual?",
    MessageIntent.CANCEL: "Entiendo que desea cancelar una cita. ¿Podría confirmarme los detalles?",
    MessageIntent.EMERGENCY: (
        "Entiendo que es una emergencia. Por favor contacte inmediatamente al 911 "
        "o diríjase al servicio de urgencias más cercano."
    ),
    MessageIntent.GREETING: "¡Hola! Soy el asistente virtual. ¿En qué puedo ayudarle hoy?",
    MessageIntent.UNKNOWN: (
        "Disculpe, no entendí su mensaje. ¿Podría reformularlo o contactar a nuestro personal?"
    ),
}

OUTSIDE_HOURS_REPLY = (
    "Gracias por su mensaje. Estamos fuera del horario de atención; "
    "le responderemos lo antes posible."
)

TIME_PATTERN = re.compile(r"\b([01]?\d|2[0-3])[:h]([0-5]\d)\b")
DATE_PATTERN = re.compile(r"\b(\d{1,2})/(\d{1,2})(?:/(\d{2,4}))?\b")

WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")


class KeywordIntentClassifier(IntentClassifier):
    """
    Default intent classifier.

    Word-boundary keyword matching over Spanish and English vocabulary, plus
    simple date/time entity extraction.
    """

    def __init__(self, intent_keywords: dict[MessageIntent, set[str]] | None = None):
        self.intent_keywords = intent_keywords or INTENT_KEYWORDS

    async def classify(self, text: str, context: dict[str, Any] | None = None) -> IntentResult:
        return self.detect(text)

    def detect(self, text: str | None) -> IntentResult:
        if not text:
            return IntentResult(intent=MessageIntent.UNKNOWN)

        text_lower = text.lower().strip()
        entities = extract_entities(text_lower)

        for intent, keywords in self.intent_keywords.items():
            for keyword in sorted(keywords, key=len, reverse=True):
                if self._matches(text_lower, keyword):
                    return IntentResult(
                        intent=intent,
                        confidence=0.8,
                        entities=entities,
                        keyword=keyword,
                    )

        return IntentResult(intent=MessageIntent.UNKNOWN, entities=entities)

    def _matches(self, text: str, keyword: str) -> bool:
        pattern = r"\b" + re.escape(keyword) + r"\b"
        return bool(re.search(pattern, text, re.IGNORECASE))


def extract_entities(text: str) -> dict[str, Any]:
    """Pull a time (HH:MM) and a day/month date out of free text."""
    entities: dict[str, Any] = {}

    time_match = TIME_PATTERN.search(text)
    if time_match:
        entities["time"] = f"{int(time_match.group(1)):02d}:{time_match.group(2)}"

    date_match = DATE_PATTERN.search(text)
    if date_match:
        day, month, year = date_match.groups()
        entities["date"] = {"day": int(day), "month": int(month), "year": int(year) if year else None}

    return entities


def _minutes(value: str) -> int:
    hours, _, minutes = value.partition(":")
    return int(hours) * 60 + int(minutes or 0)


def is_within_business_hours(hours: BusinessHoursConfig, now: datetime | None = None) -> bool:
    """
    Whether ``now`` falls inside the configured opening hours.

    A weekday missing from the schedule is not restricted; a weekday with
    ``enabled: false`` is closed.
    """
    if not hours.enabled:
        return True

    try:
        tz = ZoneInfo(hours.timezone)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(f"Unknown business hours timezone {hours.timezone!r}, using UTC")
        tz = timezone.utc

    local = (now or datetime.now(timezone.utc)).astimezone(tz)
    day = hours.schedule.get(WEEKDAYS[local.weekday()])
    if not isinstance(day, dict):
        return True
    if not day.get("enabled", True):
        return False

    start, end = day.get("start"), day.get("end")
    if not start or not end:
        return True

    try:
        current = local.hour * 60 + local.minute
        return _minutes(start) <= current < _minutes(end)
    except ValueError:
        logger.warning(f"Invalid business hours entry: {day}")
        return True
