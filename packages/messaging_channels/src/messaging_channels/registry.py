"""
Channel Registry

Maps a channel type to the three implementations the engine needs for it:
a connection service, a message processor and an appointment bridge.

Populated once at process start. Components are built lazily on first use
and cached for the life of the registry.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass

from basecore.settings import Settings, get_settings

from messaging_channels.errors import UnsupportedChannelType
from messaging_channels.persistence.models import ChannelType
from messaging_channels.providers.base import (
    AppointmentBackend,
    AppointmentBridge,
    ConnectionService,
    IntentClassifier,
    MessageProcessor,
)

logger = logging.getLogger(__name__)

ConnectionServiceFactory = Callable[[], ConnectionService]
MessageProcessorFactory = Callable[[AppointmentBridge], MessageProcessor]
AppointmentBridgeFactory = Callable[[], AppointmentBridge]


@dataclass(frozen=True)
class ChannelComponents:
    """Factories registered for one channel type."""

    channel_type: ChannelType
    connection_service_factory: ConnectionServiceFactory
    message_processor_factory: MessageProcessorFactory
    appointment_bridge_factory: AppointmentBridgeFactory


class ChannelRegistry:
    """Channel type -> implementations lookup table."""

    def __init__(self):
        self._components: dict[ChannelType, ChannelComponents] = {}
        self._connection_services: dict[ChannelType, ConnectionService] = {}
        self._message_processors: dict[ChannelType, MessageProcessor] = {}
        self._bridges: dict[ChannelType, AppointmentBridge] = {}

    @staticmethod
    def _coerce(channel_type: ChannelType | str) -> ChannelType:
        if isinstance(channel_type, ChannelType):
            return channel_type
        try:
            return ChannelType(str(channel_type).lower())
        except ValueError:
            raise UnsupportedChannelType(str(channel_type)) from None

    def register(
        self,
        channel_type: ChannelType | str,
        connection_service_factory: ConnectionServiceFactory,
        message_processor_factory: MessageProcessorFactory,
        appointment_bridge_factory: AppointmentBridgeFactory,
    ) -> None:
        """Register (or replace) the implementations for a channel type."""
        key = self._coerce(channel_type)
        self._components[key] = ChannelComponents(
            channel_type=key,
            connection_service_factory=connection_service_factory,
            message_processor_factory=message_processor_factory,
            appointment_bridge_factory=appointment_bridge_factory,
        )
        self._connection_services.pop(key, None)
        self._message_processors.pop(key, None)
        self._bridges.pop(key, None)
        logger.debug(f"Registered channel type {key.value}")

    def resolve(self, channel_type: ChannelType | str) -> ChannelComponents:
        """
        Get the factories for a channel type.

        Raises:
            UnsupportedChannelType: nothing registered for the type
        """
        key = self._coerce(channel_type)
        components = self._components.get(key)
        if components is None:
            raise UnsupportedChannelType(key.value)
        return components

    def supported_types(self) -> set[ChannelType]:
        return set(self._components)

    def is_supported(self, channel_type: ChannelType | str) -> bool:
        try:
            self.resolve(channel_type)
        except UnsupportedChannelType:
            return False
        return True

    def connection_service(self, channel_type: ChannelType | str) -> ConnectionService:
        """Get the cached connection service for a channel type."""
        components = self.resolve(channel_type)
        key = components.channel_type
        if key not in self._connection_services:
            self._connection_services[key] = components.connection_service_factory()
        return self._connection_services[key]

    def appointment_bridge(self, channel_type: ChannelType | str) -> AppointmentBridge:
        """Get the cached appointment bridge for a channel type."""
        components = self.resolve(channel_type)
        key = components.channel_type
        if key not in self._bridges:
            self._bridges[key] = components.appointment_bridge_factory()
        return self._bridges[key]

    def message_processor(self, channel_type: ChannelType | str) -> MessageProcessor:
        """Get the cached message processor for a channel type."""
        components = self.resolve(channel_type)
        key = components.channel_type
        if key not in self._message_processors:
            bridge = self.appointment_bridge(key)
            self._message_processors[key] = components.message_processor_factory(bridge)
        return self._message_processors[key]

    async def close(self) -> None:
        """Close every connection service that was built."""
        for service in self._connection_services.values():
            await service.close()
        self._connection_services.clear()


def build_default_registry(
    settings: Settings | None = None,
    intent_classifier: IntentClassifier | None = None,
    appointment_backend: AppointmentBackend | None = None,
) -> ChannelRegistry:
    """
    Build the registry used by the services.

    WhatsApp is backed by Evolution API; other channel types are not
    registered and resolve to UnsupportedChannelType.
    """
    from messaging_channels.providers.evolution import (
        EvolutionApiClient,
        EvolutionConnectionService,
    )
    from messaging_channels.service.appointment_bridge import WhatsAppAppointmentBridge
    from messaging_channels.service.whatsapp_processor import WhatsAppMessageProcessor

    settings = settings or get_settings()

    def evolution_factory() -> ConnectionService:
        client = EvolutionApiClient(
            api_url=settings.EVOLUTION_API_URL,
            api_key=settings.EVOLUTION_API_KEY,
            timeout=settings.UPSTREAM_TIMEOUT_SECONDS,
        )
        return EvolutionConnectionService(
            client,
            webhook_base_url=settings.CHANNEL_WEBHOOK_BASE_URL,
            code_ttl_seconds=settings.CODE_TTL_SECONDS,
        )

    registry = ChannelRegistry()
    registry.register(
        ChannelType.WHATSAPP,
        connection_service_factory=evolution_factory,
        message_processor_factory=lambda bridge: WhatsAppMessageProcessor(
            bridge, classifier=intent_classifier
        ),
        appointment_bridge_factory=lambda: WhatsAppAppointmentBridge(backend=appointment_backend),
    )
    return registry
