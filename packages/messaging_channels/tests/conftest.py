"""
Pytest fixtures for messaging channels tests.

Storage is an in-memory SQLite database; the upstream provider and Redis are
replaced by in-process fakes.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from uuid import UUID, uuid4

import pytest
import redis

from basecore.db import create_db_engine, make_sessionmaker
from basecore.settings import Settings

from messaging_channels.engine import build_engine
from messaging_channels.lifecycle.manager import InstanceLifecycleManager, make_provider_ref
from messaging_channels.persistence.models import (
    ChannelBase,
    ChannelConversation,
    ChannelStatus,
    ConversationStatus,
)
from messaging_channels.persistence.repo import ChannelRepository
from messaging_channels.providers.base import (
    ConnectionService,
    LinkingCode,
    ProviderResponse,
)
from messaging_channels.registry import ChannelRegistry
from messaging_channels.service.appointment_bridge import WhatsAppAppointmentBridge
from messaging_channels.service.whatsapp_processor import WhatsAppMessageProcessor
from messaging_channels.streams.producer import ChannelEventPublisher


class FakeConnectionService(ConnectionService):
    """Scriptable upstream provider."""

    def __init__(self):
        self.status = ChannelStatus.CONNECTING
        self.code = "qr-code-1"
        self.exists = True
        self.delay = 0.0
        self.send_delay = 0.0
        self.connect_error: Exception | None = None
        self.status_error: Exception | None = None
        self.terminate_error: Exception | None = None
        self.exists_error: Exception | None = None
        self.calls: list[str] = []
        self.sent: list[tuple[str, str]] = []
        self.closed = False

    def _linking_code(self) -> LinkingCode | None:
        if self.code is None:
            return None
        return LinkingCode(code=self.code, expires_at=datetime.now(timezone.utc) + timedelta(seconds=45))

    async def connect(self, instance):
        self.calls.append("connect")
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.connect_error:
            raise self.connect_error
        return self._linking_code()

    async def fetch_code(self, instance):
        self.calls.append("fetch_code")
        return self._linking_code()

    async def fetch_status(self, instance):
        self.calls.append("fetch_status")
        if self.status_error:
            raise self.status_error
        return self.status

    async def terminate(self, instance):
        self.calls.append("terminate")
        if self.terminate_error:
            raise self.terminate_error

    async def delete_remote(self, instance):
        self.calls.append("delete_remote")

    async def instance_exists(self, instance):
        self.calls.append("instance_exists")
        if self.exists_error:
            raise self.exists_error
        return self.exists

    async def send_text(self, instance, to, text):
        if self.send_delay:
            await asyncio.sleep(self.send_delay)
        self.sent.append((to, text))
        return ProviderResponse(success=True, message_id=f"out-{len(self.sent)}", raw_response={})

    async def close(self):
        self.closed = True


class FakeRedis:
    """Records XADD calls."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.entries: list[tuple[str, dict[str, str]]] = []

    def xadd(self, stream, fields, maxlen=None, approximate=True):
        if self.fail:
            raise redis.ConnectionError("Connection refused")
        self.entries.append((stream, fields))
        return f"{len(self.entries)}-0"

    def event_types(self) -> list[str]:
        return [fields["event_type"] for _, fields in self.entries]


class FakeClock:
    """Monotonic clock the tests move by hand."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def sample_tenant_id():
    """Sample tenant UUID."""
    return UUID("12345678-1234-1234-1234-123456789012")


@pytest.fixture
def other_tenant_id():
    """A second tenant."""
    return UUID("87654321-4321-4321-4321-210987654321")


@pytest.fixture
def sample_phone():
    """Sample contact phone number."""
    return "+15551234567"


@pytest.fixture
def db_engine():
    engine = create_db_engine("sqlite://")
    ChannelBase.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return make_sessionmaker(db_engine)


@pytest.fixture
def fake_service():
    return FakeConnectionService()


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def events(fake_redis):
    return ChannelEventPublisher(fake_redis, stream_name="test:channels:events")


@pytest.fixture
def registry(fake_service):
    """Registry with WhatsApp backed by the fake provider."""
    registry = ChannelRegistry()
    registry.register(
        "whatsapp",
        connection_service_factory=lambda: fake_service,
        message_processor_factory=lambda bridge: WhatsAppMessageProcessor(bridge),
        appointment_bridge_factory=lambda: WhatsAppAppointmentBridge(),
    )
    return registry


@pytest.fixture
def test_settings():
    return Settings(
        POLL_INTERVAL_SECONDS=3600,
        BREAKER_FAILURE_THRESHOLD=3,
        BREAKER_COOLDOWN_SECONDS=60,
        UPSTREAM_TIMEOUT_SECONDS=2,
        CODE_TTL_SECONDS=45,
        STUCK_THRESHOLD_MINUTES=60,
        EVOLUTION_WEBHOOK_API_KEY="hook-key",
    )


@pytest.fixture
def lifecycle(session_factory, registry, events):
    """Lifecycle manager without a supervisor."""
    return InstanceLifecycleManager(session_factory, registry, events=events)


@pytest.fixture
def channel_engine(session_factory, registry, events, test_settings):
    """Fully wired engine. Poll loops sleep for an hour, so nothing polls on its own."""
    return build_engine(session_factory, settings=test_settings, registry=registry, events=events)


@pytest.fixture
def make_instance(session_factory, sample_tenant_id):
    """Insert an instance directly in a given status."""

    def _make(
        display_name: str = "Main Clinic",
        status: ChannelStatus = ChannelStatus.DISCONNECTED,
        tenant_id: UUID | None = None,
        config: dict | None = None,
        flagged: bool = False,
        flag_reason: str | None = None,
        error_message: str | None = None,
    ):
        instance_id = uuid4()
        with session_factory() as db:
            repo = ChannelRepository(db)
            instance = repo.create_instance(
                tenant_id=tenant_id or sample_tenant_id,
                channel_type="whatsapp",
                display_name=display_name,
                provider_ref=make_provider_ref(display_name, instance_id),
                config=config or {},
                status=status,
                instance_id=instance_id,
            )
            instance.flagged_problematic = flagged
            instance.flag_reason = flag_reason
            instance.error_message = error_message
            db.commit()
            db.refresh(instance)
            return instance

    return _make


@pytest.fixture
def add_conversation(session_factory):
    """Attach a conversation to an instance."""

    def _add(instance, contact_ref: str = "+15550000001", status: ConversationStatus = ConversationStatus.ACTIVE):
        with session_factory() as db:
            conversation = ChannelConversation(
                tenant_id=instance.tenant_id,
                instance_id=instance.id,
                contact_ref=contact_ref,
                status=status.value,
                message_count=0,
            )
            db.add(conversation)
            db.commit()
            db.refresh(conversation)
            return conversation

    return _add


@pytest.fixture
def load_instance(session_factory):
    """Re-read an instance from storage."""

    def _load(instance_id):
        with session_factory() as db:
            return ChannelRepository(db).get_instance(instance_id)

    return _load


@pytest.fixture
def fake_clock():
    return FakeClock()
