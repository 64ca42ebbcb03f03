"""
Channel engine wiring.

Builds the registry, lifecycle manager, connection supervisor, webhook
processor and recovery manager from settings so the webhook service, worker
and CLI share one composition.
"""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import timedelta

from sqlalchemy.orm import sessionmaker

from basecore.redis import get_redis_client
from basecore.settings import Settings, get_settings

from messaging_channels.connection.flow import CodeConnectionFlow
from messaging_channels.connection.supervisor import ConnectionSupervisor
from messaging_channels.lifecycle.manager import InstanceLifecycleManager
from messaging_channels.registry import ChannelRegistry, build_default_registry
from messaging_channels.service.recovery import RecoveryManager
from messaging_channels.service.webhook_processor import WebhookProcessor
from messaging_channels.streams.producer import ChannelEventPublisher

logger = logging.getLogger(__name__)


@dataclass
class ChannelEngine:
    registry: ChannelRegistry
    lifecycle: InstanceLifecycleManager
    supervisor: ConnectionSupervisor
    webhook_processor: WebhookProcessor
    recovery: RecoveryManager
    events: ChannelEventPublisher | None = None

    async def close(self) -> None:
        """Finish pending reply dispatches, stop polling and release upstream clients."""
        await self.webhook_processor.shutdown()
        await self.supervisor.shutdown()
        await self.registry.close()


def build_event_publisher(settings: Settings | None = None) -> ChannelEventPublisher | None:
    settings = settings or get_settings()
    if not settings.EVENTS_ENABLED:
        return None
    return ChannelEventPublisher(get_redis_client(), stream_name=settings.EVENTS_STREAM)


def build_engine(
    session_factory: sessionmaker,
    settings: Settings | None = None,
    registry: ChannelRegistry | None = None,
    events: ChannelEventPublisher | None = None,
    clock: Callable[[], float] = time.monotonic,
) -> ChannelEngine:
    """
    Compose the engine.

    Args:
        session_factory: SQLAlchemy sessionmaker for the instance store
        settings: Settings (defaults to get_settings())
        registry: Channel registry (defaults to build_default_registry())
        events: Event publisher (None disables events)
        clock: Monotonic clock for the circuit breakers
    """
    settings = settings or get_settings()
    registry = registry or build_default_registry(settings)

    lifecycle = InstanceLifecycleManager(
        session_factory,
        registry,
        events=events,
        upstream_timeout=settings.UPSTREAM_TIMEOUT_SECONDS,
    )
    flow = CodeConnectionFlow(
        lifecycle,
        failure_threshold=settings.BREAKER_FAILURE_THRESHOLD,
        cooldown_seconds=settings.BREAKER_COOLDOWN_SECONDS,
        cooldown_policy=settings.BREAKER_COOLDOWN_POLICY,
        max_cooldown_seconds=settings.BREAKER_MAX_COOLDOWN_SECONDS,
        clock=clock,
    )
    supervisor = ConnectionSupervisor(flow, interval=settings.POLL_INTERVAL_SECONDS)
    lifecycle.supervisor = supervisor

    webhook_processor = WebhookProcessor(
        session_factory,
        registry,
        lifecycle,
        supervisor=supervisor,
        events=events,
        code_ttl_seconds=settings.CODE_TTL_SECONDS,
    )
    recovery = RecoveryManager(
        session_factory,
        stuck_threshold=timedelta(minutes=settings.STUCK_THRESHOLD_MINUTES),
        events=events,
        connection_service_resolver=lifecycle.connection_service_for,
        supervisor=supervisor,
        upstream_timeout=settings.UPSTREAM_TIMEOUT_SECONDS,
    )

    logger.debug(
        "Channel engine built",
        extra={"channel_types": sorted(t.value for t in registry.supported_types())},
    )

    return ChannelEngine(
        registry=registry,
        lifecycle=lifecycle,
        supervisor=supervisor,
        webhook_processor=webhook_processor,
        recovery=recovery,
        events=events,
    )
