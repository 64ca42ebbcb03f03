"""
Instance Lifecycle Manager

Owns creation, connection initiation, disconnection, deletion and status
refresh of channel instances.

Every operation opens its own session, so stored status is never cached
across calls. Status writes go through apply_transition(), which enforces the
transition table and issues a single conditional UPDATE (last-write-wins).
"""

import asyncio
import logging
import re
from collections.abc import Awaitable
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, TypeVar
from uuid import UUID, uuid4

from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from messaging_channels.contracts.event_types import ChannelEventType
from messaging_channels.contracts.payloads import InstanceConfig, StatusChangedPayload
from messaging_channels.errors import (
    ConflictActiveConversations,
    ConversationNotFound,
    InstanceNotFound,
    InstanceValidationError,
    InvalidStatusTransition,
)
from messaging_channels.lifecycle.transitions import (
    ADMINISTRATIVE_STATUSES,
    can_reconcile,
    can_transition,
)
from messaging_channels.persistence.models import (
    ChannelConversation,
    ChannelInstance,
    ChannelStatus,
    ChannelType,
    ConversationStatus,
)
from messaging_channels.persistence.repo import ChannelRepository
from messaging_channels.providers.base import ConnectionService, ProviderError
from messaging_channels.registry import ChannelRegistry
from messaging_channels.streams.producer import ChannelEventPublisher

if TYPE_CHECKING:
    from messaging_channels.connection.supervisor import ConnectionSupervisor

logger = logging.getLogger(__name__)

T = TypeVar("T")

DISPLAY_NAME_MIN = 3
DISPLAY_NAME_MAX = 50

HEALTHY_RATIO = 0.8


@dataclass
class ConnectionRequest:
    """Result of request_connection."""

    instance_id: UUID
    status: ChannelStatus
    code: str | None = None
    expires_at: datetime | None = None
    pairing_code: str | None = None

    @property
    def pending(self) -> bool:
        """True when the caller has to poll get_code for the linking code."""
        return self.code is None


@dataclass
class CodeStatus:
    """What the connection UI polls: current code, status and expiry."""

    instance_id: UUID
    status: ChannelStatus
    code: str | None = None
    expires_at: datetime | None = None
    stalled: bool = False
    retryable: bool = False
    error_message: str | None = None


@dataclass
class TransitionOutcome:
    """Result of a status write attempt."""

    instance_id: UUID
    previous: ChannelStatus
    current: ChannelStatus
    applied: bool
    status_version: int | None = None


@dataclass
class InstanceSummary:
    """An instance plus its embedded metrics."""

    instance: ChannelInstance
    metrics: dict[str, int] = field(default_factory=dict)


def validate_display_name(display_name: str) -> str:
    """Strip and bound-check a display name."""
    name = (display_name or "").strip()
    if not DISPLAY_NAME_MIN <= len(name) <= DISPLAY_NAME_MAX:
        raise InstanceValidationError(
            f"Display name must be between {DISPLAY_NAME_MIN} and {DISPLAY_NAME_MAX} characters",
            details={"display_name": display_name},
        )
    return name


def validate_config(config: Any) -> InstanceConfig:
    """
    Validate an instance config without changing it.

    Returns:
        Typed view of the config
    """
    if not isinstance(config, dict):
        raise InstanceValidationError("Instance config must be an object")
    try:
        return InstanceConfig.model_validate(config)
    except ValidationError as e:
        raise InstanceValidationError(
            "Invalid instance config",
            details={"errors": e.errors(include_url=False, include_context=False)},
        ) from e


def make_provider_ref(display_name: str, instance_id: UUID) -> str:
    """Upstream instance name: display-name slug plus a short id."""
    slug = re.sub(r"[^a-zA-Z0-9_-]+", "-", display_name).strip("-").lower() or "instance"
    return f"{slug[:40]}-{instance_id.hex[:8]}"


class InstanceLifecycleManager:
    """
    Lifecycle operations for channel instances.

    Operations that take ``tenant_id`` scope every read and write to it; an
    instance owned by another tenant is reported as not found.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        registry: ChannelRegistry,
        supervisor: "ConnectionSupervisor | None" = None,
        events: ChannelEventPublisher | None = None,
        upstream_timeout: float = 10.0,
    ):
        self.session_factory = session_factory
        self.registry = registry
        self.supervisor = supervisor
        self.events = events
        self.upstream_timeout = upstream_timeout

    # =========================================================================
    # Helpers
    # =========================================================================

    def _get(
        self,
        db: Session,
        instance_id: UUID,
        tenant_id: UUID | None = None,
    ) -> ChannelInstance:
        instance = ChannelRepository(db).get_instance(instance_id, tenant_id)
        if instance is None:
            raise InstanceNotFound(instance_id)
        return instance

    def get_instance(self, instance_id: UUID, tenant_id: UUID | None = None) -> ChannelInstance:
        """Read an instance (detached, fully loaded)."""
        with self.session_factory() as db:
            return self._get(db, instance_id, tenant_id)

    def connection_service_for(self, instance: ChannelInstance) -> ConnectionService:
        return self.registry.connection_service(instance.channel_type)

    async def call_upstream(self, awaitable: Awaitable[T], operation: str) -> T:
        """
        Await an upstream call under the per-call timeout.

        A timeout is raised as a retryable ProviderError so it is accounted
        like any other transient failure.
        """
        try:
            return await asyncio.wait_for(awaitable, timeout=self.upstream_timeout)
        except asyncio.TimeoutError as e:
            raise ProviderError(
                f"{operation} timed out after {self.upstream_timeout}s",
                code="TIMEOUT",
                retryable=True,
            ) from e

    def _publish_status(
        self,
        instance: ChannelInstance,
        previous: ChannelStatus | None,
        current: ChannelStatus,
        source: str,
        status_version: int | None = None,
        error_message: str | None = None,
    ) -> None:
        if self.events is None:
            return
        self.events.publish_status_changed(
            tenant_id=instance.tenant_id,
            payload=StatusChangedPayload(
                instance_id=instance.id,
                channel_type=instance.channel_type,
                previous_status=previous.value if previous else None,
                status=current.value,
                status_version=status_version,
                source=source,
                error_message=error_message,
            ),
        )

    # =========================================================================
    # Status writes
    # =========================================================================

    def apply_transition(
        self,
        instance_id: UUID,
        target: ChannelStatus,
        source: str,
        error_message: str | None = None,
        clear_error: bool = False,
        tenant_id: UUID | None = None,
        reconcile: bool = False,
        touch: bool = False,
    ) -> TransitionOutcome:
        """
        Write a status if the transition rules allow it.

        Disallowed transitions are logged and skipped. Re-applying the current
        status is a no-op unless it changes the error message; with ``touch``
        it only bumps updated_at.

        Args:
            instance_id: Instance to update
            target: Desired status
            source: Who is writing (lifecycle, webhook, poller, refresh)
            error_message: Error message to store with the status
            clear_error: Clear any stored error message
            tenant_id: Tenant scope (optional)
            reconcile: Apply upstream-reconciliation rules instead of the table
            touch: On a same-state no-op, still refresh updated_at

        Raises:
            InstanceNotFound: the instance does not exist
        """
        with self.session_factory() as db:
            repo = ChannelRepository(db)
            instance = self._get(db, instance_id, tenant_id)
            previous = ChannelStatus(instance.status)

            allowed = can_reconcile(previous, target) if reconcile else can_transition(previous, target)
            if not allowed:
                logger.info(
                    f"Ignoring {source} transition {previous.value} -> {target.value}",
                    extra={"instance_id": str(instance_id), "source": source},
                )
                return TransitionOutcome(instance_id, previous, previous, applied=False)

            if previous == target:
                error_changes = (error_message is not None and error_message != instance.error_message) or (
                    clear_error and instance.error_message is not None
                )
                if reconcile or not error_changes:
                    if touch:
                        repo.touch_instance(instance_id, tenant_id)
                        db.commit()
                    return TransitionOutcome(
                        instance_id, previous, previous, applied=False,
                        status_version=instance.status_version,
                    )

            rows = repo.update_instance_status(
                instance_id,
                target,
                error_message=error_message,
                clear_error=clear_error,
                tenant_id=tenant_id,
            )
            db.commit()

            if not rows:
                # Deleted between read and write
                raise InstanceNotFound(instance_id)

            db.refresh(instance)
            status_version = instance.status_version

        logger.info(
            f"Instance status {previous.value} -> {target.value}",
            extra={
                "instance_id": str(instance_id),
                "source": source,
                "status_version": status_version,
            },
        )
        if previous != target:
            self._publish_status(instance, previous, target, source, status_version, error_message)

        return TransitionOutcome(instance_id, previous, target, applied=True, status_version=status_version)

    def set_administrative_status(
        self,
        instance_id: UUID,
        target: ChannelStatus,
        actor: str,
        reason: str | None = None,
        tenant_id: UUID | None = None,
    ) -> TransitionOutcome:
        """
        Administrative override. The only way out of suspended/maintenance.

        Bypasses the transition table and writes an audit entry.
        """
        with self.session_factory() as db:
            repo = ChannelRepository(db)
            instance = self._get(db, instance_id, tenant_id)
            previous = ChannelStatus(instance.status)

            repo.update_instance_status(
                instance_id,
                target,
                error_message=reason if target == ChannelStatus.ERROR else None,
                clear_error=target != ChannelStatus.ERROR,
                tenant_id=tenant_id,
            )
            db.commit()
            db.refresh(instance)
            status_version = instance.status_version

            try:
                repo.create_audit_log(
                    instance,
                    action="status_override",
                    actor=actor,
                    details={"previous_status": previous.value, "status": target.value, "reason": reason},
                )
                db.commit()
            except SQLAlchemyError as e:
                db.rollback()
                logger.warning(
                    f"Failed to write audit log for status override: {e}",
                    extra={"instance_id": str(instance_id)},
                )
            db.refresh(instance)

        logger.warning(
            f"Administrative status override {previous.value} -> {target.value}",
            extra={"instance_id": str(instance_id), "actor": actor, "reason": reason},
        )
        if self.supervisor is not None and target != ChannelStatus.CONNECTING:
            self.supervisor.cancel(instance_id)
        self._publish_status(instance, previous, target, "admin", status_version, reason)

        return TransitionOutcome(instance_id, previous, target, applied=True, status_version=status_version)

    # =========================================================================
    # Operations
    # =========================================================================

    async def create_instance(
        self,
        tenant_id: UUID,
        display_name: str,
        channel_type: ChannelType | str,
        initial_config: dict[str, Any] | None = None,
        two_step: bool = True,
    ) -> ChannelInstance:
        """
        Create a channel instance.

        The row starts disconnected (two-step flow). With ``two_step=False``
        it starts connecting; the caller follows up with request_connection
        to obtain the linking code (see create_and_connect).

        Raises:
            InstanceValidationError: bad display name/config or duplicate name
            UnsupportedChannelType: channel type not registered
        """
        name = validate_display_name(display_name)
        config = initial_config if initial_config is not None else {}
        validate_config(config)
        components = self.registry.resolve(channel_type)
        channel = components.channel_type.value

        status = ChannelStatus.DISCONNECTED if two_step else ChannelStatus.CONNECTING
        instance_id = uuid4()

        with self.session_factory() as db:
            repo = ChannelRepository(db)
            if repo.get_instance_by_name(tenant_id, channel, name):
                raise InstanceValidationError(
                    f"An instance named '{name}' already exists for this channel",
                    details={"display_name": name, "channel_type": channel},
                )

            instance = repo.create_instance(
                tenant_id=tenant_id,
                channel_type=channel,
                display_name=name,
                provider_ref=make_provider_ref(name, instance_id),
                config=config,
                status=status,
                instance_id=instance_id,
            )
            try:
                db.commit()
            except IntegrityError as e:
                db.rollback()
                raise InstanceValidationError(
                    f"An instance named '{name}' already exists for this channel",
                    details={"display_name": name, "channel_type": channel},
                ) from e
            db.refresh(instance)

        logger.info(
            f"Created {channel} instance '{name}'",
            extra={
                "instance_id": str(instance.id),
                "tenant_id": str(tenant_id),
                "status": status.value,
            },
        )

        if self.events is not None:
            self.events.publish(
                ChannelEventType.INSTANCE_CREATED,
                tenant_id,
                {
                    "instance_id": str(instance.id),
                    "channel_type": channel,
                    "display_name": name,
                    "status": status.value,
                },
            )

        return instance

    async def create_and_connect(
        self,
        tenant_id: UUID,
        display_name: str,
        channel_type: ChannelType | str,
        initial_config: dict[str, Any] | None = None,
    ) -> tuple[ChannelInstance, ConnectionRequest]:
        """Immediate-connect creation: create as connecting, then request a code."""
        instance = await self.create_instance(
            tenant_id, display_name, channel_type, initial_config, two_step=False
        )
        request = await self.request_connection(instance.id, tenant_id=tenant_id)
        return self.get_instance(instance.id, tenant_id), request

    async def request_connection(
        self,
        instance_id: UUID,
        tenant_id: UUID | None = None,
    ) -> ConnectionRequest:
        """
        Move the instance to connecting and ask upstream for a linking code.

        Allowed from disconnected, error and connecting (re-request). If the
        provider fails or times out the instance is left in error and the
        ProviderError propagates.
        """
        with self.session_factory() as db:
            instance = self._get(db, instance_id, tenant_id)
            current = ChannelStatus(instance.status)

        if current not in (ChannelStatus.DISCONNECTED, ChannelStatus.ERROR, ChannelStatus.CONNECTING):
            raise InvalidStatusTransition(
                current.value, ChannelStatus.CONNECTING.value, operation="request_connection"
            )

        self.apply_transition(
            instance_id, ChannelStatus.CONNECTING, source="lifecycle", clear_error=True, tenant_id=tenant_id
        )

        service = self.connection_service_for(instance)
        try:
            code = await self.call_upstream(service.connect(instance), "connect")
        except ProviderError as e:
            logger.error(
                f"Connection request failed: {e}",
                extra={"instance_id": str(instance_id), "code": e.code},
            )
            self.apply_transition(
                instance_id,
                ChannelStatus.ERROR,
                source="lifecycle",
                error_message=f"Connection request failed: {e}",
                tenant_id=tenant_id,
            )
            raise

        if self.supervisor is not None:
            self.supervisor.start(instance_id, code=code)

        logger.info(
            "Connection requested",
            extra={"instance_id": str(instance_id), "code_returned": code is not None},
        )

        return ConnectionRequest(
            instance_id=instance_id,
            status=ChannelStatus.CONNECTING,
            code=code.code if code else None,
            expires_at=code.expires_at if code else None,
            pairing_code=code.pairing_code if code else None,
        )

    def get_code(self, instance_id: UUID, tenant_id: UUID | None = None) -> CodeStatus:
        """Current code, status and expiry for the connection UI."""
        with self.session_factory() as db:
            instance = self._get(db, instance_id, tenant_id)
            status = ChannelStatus(instance.status)
            error_message = instance.error_message

        result = CodeStatus(instance_id=instance_id, status=status, error_message=error_message)

        if self.supervisor is None:
            return result

        attempt = self.supervisor.get_attempt(instance_id)
        if attempt is not None and status == ChannelStatus.CONNECTING:
            result.code = attempt.code
            result.expires_at = attempt.code_expires_at

        if self.supervisor.is_stalled(instance_id):
            result.stalled = True
            result.retryable = True

        return result

    def cancel_connection(self, instance_id: UUID, tenant_id: UUID | None = None) -> bool:
        """Stop polling for an instance ("connect later"). Status is unchanged."""
        if tenant_id is not None:
            self.get_instance(instance_id, tenant_id)
        if self.supervisor is None:
            return False
        return self.supervisor.cancel(instance_id)

    async def disconnect(
        self,
        instance_id: UUID,
        tenant_id: UUID | None = None,
    ) -> ChannelInstance:
        """
        Terminate the upstream session and mark the instance disconnected.

        The upstream call is best-effort: its failure is logged and the local
        status is still written.
        """
        with self.session_factory() as db:
            instance = self._get(db, instance_id, tenant_id)
            current = ChannelStatus(instance.status)

        if current in ADMINISTRATIVE_STATUSES:
            raise InvalidStatusTransition(
                current.value, ChannelStatus.DISCONNECTED.value, operation="disconnect"
            )

        if self.supervisor is not None:
            self.supervisor.cancel(instance_id)

        service = self.connection_service_for(instance)
        try:
            await self.call_upstream(service.terminate(instance), "terminate")
        except Exception as e:
            logger.warning(
                f"Upstream logout failed, disconnecting locally: {e}",
                extra={"instance_id": str(instance_id)},
            )

        self.apply_transition(
            instance_id,
            ChannelStatus.DISCONNECTED,
            source="lifecycle",
            clear_error=True,
            tenant_id=tenant_id,
        )
        return self.get_instance(instance_id, tenant_id)

    async def delete_instance(
        self,
        instance_id: UUID,
        tenant_id: UUID | None = None,
        force: bool = False,
    ) -> None:
        """
        Delete an instance row.

        Conversations and messages are left to the storage retention policy.

        Raises:
            ConflictActiveConversations: active conversations exist and force is False
        """
        with self.session_factory() as db:
            instance = self._get(db, instance_id, tenant_id)
            active = ChannelRepository(db).count_active_conversations(instance_id)

        if active and not force:
            raise ConflictActiveConversations(instance_id, active)

        if self.supervisor is not None:
            self.supervisor.cancel(instance_id)

        service = self.connection_service_for(instance)
        try:
            await self.call_upstream(service.delete_remote(instance), "delete_remote")
        except Exception as e:
            logger.warning(
                f"Upstream delete failed, removing locally: {e}",
                extra={"instance_id": str(instance_id)},
            )

        with self.session_factory() as db:
            repo = ChannelRepository(db)
            instance = repo.get_instance(instance_id, tenant_id)
            if instance is not None:
                repo.delete_instance(instance)
                db.commit()

        logger.info(
            "Deleted instance",
            extra={"instance_id": str(instance_id), "active_conversations": active},
        )

    def update_instance(
        self,
        instance_id: UUID,
        config_updates: dict[str, Any] | None = None,
        tenant_id: UUID | None = None,
        display_name: str | None = None,
        actor: str = "api",
    ) -> ChannelInstance:
        """
        Update an instance's config and/or display name.

        Top-level config keys in ``config_updates`` replace the stored ones;
        the merged config is validated as a whole and stored exactly as given.

        Raises:
            InstanceValidationError: bad config, bad or duplicate display name
        """
        if config_updates is not None and not isinstance(config_updates, dict):
            raise InstanceValidationError("Instance config must be an object")
        name = validate_display_name(display_name) if display_name is not None else None

        updated_fields = sorted(config_updates or {})
        if name is not None:
            updated_fields.append("display_name")

        with self.session_factory() as db:
            repo = ChannelRepository(db)
            instance = self._get(db, instance_id, tenant_id)

            config = {**(instance.config or {}), **(config_updates or {})}
            validate_config(config)

            if name is not None and name != instance.display_name:
                existing = repo.get_instance_by_name(instance.tenant_id, instance.channel_type, name)
                if existing is not None and existing.id != instance.id:
                    raise InstanceValidationError(
                        f"An instance named '{name}' already exists for this channel",
                        details={"display_name": name, "channel_type": instance.channel_type},
                    )

            repo.update_instance_config(instance, config, display_name=name)
            try:
                db.commit()
            except IntegrityError as e:
                db.rollback()
                raise InstanceValidationError(
                    f"An instance named '{name}' already exists for this channel",
                    details={"display_name": name},
                ) from e

            try:
                repo.create_audit_log(
                    instance,
                    action="instance_updated",
                    actor=actor,
                    details={"updated_fields": updated_fields},
                )
                db.commit()
            except SQLAlchemyError as e:
                db.rollback()
                logger.warning(
                    f"Failed to write audit log for instance update: {e}",
                    extra={"instance_id": str(instance_id)},
                )
            db.refresh(instance)

        logger.info(
            "Updated instance",
            extra={"instance_id": str(instance_id), "updated_fields": updated_fields, "actor": actor},
        )
        return instance

    # =========================================================================
    # Conversations
    # =========================================================================

    def list_conversations(
        self,
        instance_id: UUID,
        tenant_id: UUID | None = None,
        status: ConversationStatus | str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[ChannelConversation]:
        """Conversations on an instance, most recently active first."""
        with self.session_factory() as db:
            self._get(db, instance_id, tenant_id)
            return ChannelRepository(db).list_conversations(
                instance_id,
                ConversationStatus(status) if status is not None else None,
                limit=limit,
                offset=offset,
            )

    def update_conversation_status(
        self,
        conversation_id: UUID,
        status: ConversationStatus | str,
        tenant_id: UUID | None = None,
    ) -> ChannelConversation:
        """
        Move a conversation to active/resolved/escalated/archived.

        Only active conversations block instance deletion.

        Raises:
            ValueError: unknown status
            ConversationNotFound: conversation does not exist for the tenant
        """
        target = ConversationStatus(status)

        with self.session_factory() as db:
            repo = ChannelRepository(db)
            if not repo.update_conversation_status(conversation_id, target, tenant_id):
                raise ConversationNotFound(conversation_id)
            db.commit()
            conversation = repo.get_conversation_by_id(conversation_id)

        logger.info(
            f"Conversation status set to {target.value}",
            extra={"conversation_id": str(conversation_id), "instance_id": str(conversation.instance_id)},
        )
        return conversation

    # =========================================================================
    # Status
    # =========================================================================

    async def refresh_status(
        self,
        instance_id: UUID,
        tenant_id: UUID | None = None,
    ) -> ChannelStatus:
        """
        Reconcile the stored status with the live upstream status.

        Provider errors propagate to the caller.
        """
        with self.session_factory() as db:
            instance = self._get(db, instance_id, tenant_id)

        service = self.connection_service_for(instance)
        upstream = await self.call_upstream(service.fetch_status(instance), "fetch_status")

        outcome = self.apply_transition(
            instance_id, upstream, source="refresh", tenant_id=tenant_id, reconcile=True
        )
        return outcome.current

    def list_instances(
        self,
        tenant_id: UUID,
        channel_type: ChannelType | str | None = None,
    ) -> list[InstanceSummary]:
        """Instances for a tenant with conversation/message metrics."""
        channel = None
        if channel_type is not None:
            channel = ChannelType(channel_type).value

        with self.session_factory() as db:
            repo = ChannelRepository(db)
            return [
                InstanceSummary(instance=instance, metrics=repo.get_instance_metrics(instance.id))
                for instance in repo.list_instances(tenant_id, channel)
            ]

    def channel_health(self, tenant_id: UUID | None = None) -> dict[str, Any]:
        """
        Instance counts per channel type plus an overall verdict.

        Overall is critical when instances exist and none are connected, and
        warning when fewer than 80% are connected.
        """
        with self.session_factory() as db:
            instances = ChannelRepository(db).list_instances(tenant_id)

        channels = []
        for channel_type in sorted(self.registry.supported_types(), key=lambda t: t.value):
            of_type = [i for i in instances if i.channel_type == channel_type.value]
            channels.append(
                {
                    "type": channel_type.value,
                    "total": len(of_type),
                    "connected": sum(1 for i in of_type if i.status == ChannelStatus.CONNECTED.value),
                    "error": sum(1 for i in of_type if i.status == ChannelStatus.ERROR.value),
                }
            )

        total = len(instances)
        connected = sum(1 for i in instances if i.status == ChannelStatus.CONNECTED.value)

        overall = "healthy"
        if total and connected == 0:
            overall = "critical"
        elif connected < total * HEALTHY_RATIO:
            overall = "warning"

        return {
            "overall": overall,
            "total": total,
            "connected": connected,
            "channels": channels,
        }
