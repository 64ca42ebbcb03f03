"""
Recovery Manager

Operator tooling for instances that got stuck:
- list instances sitting in connecting/error
- force-reset an instance to disconnected or error
- maintain the known-problematic flag and bulk-reset flagged instances
- reclaim connection attempts that outlived the threshold
- find instances the upstream provider no longer knows about
"""

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from uuid import UUID

import httpx
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from messaging_channels.contracts.payloads import InstanceResetPayload
from messaging_channels.errors import InstanceNotFound
from messaging_channels.persistence.models import ChannelInstance, ChannelStatus, as_utc, utcnow
from messaging_channels.persistence.repo import ChannelRepository
from messaging_channels.providers.base import ConnectionService, ProviderError
from messaging_channels.streams.producer import ChannelEventPublisher

logger = logging.getLogger(__name__)

RESET_TARGETS = (ChannelStatus.DISCONNECTED, ChannelStatus.ERROR)
STUCK_STATUSES = [ChannelStatus.CONNECTING, ChannelStatus.ERROR]
# Statuses in which the upstream instance is expected to exist
LIVE_STATUSES = [ChannelStatus.CONNECTING, ChannelStatus.CONNECTED, ChannelStatus.ERROR]

DEFAULT_RESET_ERROR = "Reset by recovery"


@dataclass
class StuckInstance:
    instance_id: UUID
    tenant_id: UUID
    display_name: str
    channel_type: str
    status: ChannelStatus
    updated_at: datetime
    stuck_for: timedelta
    overdue: bool
    flagged_problematic: bool = False
    flag_reason: str | None = None
    error_message: str | None = None


@dataclass
class ResetResult:
    instance_id: UUID
    success: bool
    previous_status: ChannelStatus | None = None
    status: ChannelStatus | None = None
    error: str | None = None


@dataclass
class OrphanCheck:
    instance_id: UUID
    provider_ref: str
    status: ChannelStatus
    reset: ResetResult | None = None


class RecoveryManager:
    """
    Recovery operations over the instance store.

    Resets bypass the transition table on purpose: they are the way out of
    states the automatic writers cannot leave.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        stuck_threshold: timedelta = timedelta(hours=1),
        events: ChannelEventPublisher | None = None,
        connection_service_resolver: Callable[[ChannelInstance], ConnectionService] | None = None,
        supervisor=None,
        upstream_timeout: float = 10.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.stuck_threshold = stuck_threshold
        self.events = events
        self.connection_service_resolver = connection_service_resolver
        self.supervisor = supervisor
        self.upstream_timeout = upstream_timeout
        self.clock = clock

    # =========================================================================
    # Inspection
    # =========================================================================

    def list_stuck_instances(self, tenant_id: UUID | None = None) -> list[StuckInstance]:
        """Instances in connecting or error, most recently updated first."""
        now = self.clock()
        with self.session_factory() as db:
            instances = ChannelRepository(db).list_instances_by_status(STUCK_STATUSES, tenant_id)

        stuck = []
        for instance in instances:
            status = ChannelStatus(instance.status)
            updated_at = as_utc(instance.updated_at)
            stuck_for = now - updated_at
            stuck.append(
                StuckInstance(
                    instance_id=instance.id,
                    tenant_id=instance.tenant_id,
                    display_name=instance.display_name,
                    channel_type=instance.channel_type,
                    status=status,
                    updated_at=updated_at,
                    stuck_for=stuck_for,
                    overdue=status == ChannelStatus.CONNECTING and stuck_for > self.stuck_threshold,
                    flagged_problematic=bool(instance.flagged_problematic),
                    flag_reason=instance.flag_reason,
                    error_message=instance.error_message,
                )
            )
        return stuck

    # =========================================================================
    # Resets
    # =========================================================================

    def reset_instance(
        self,
        instance_id: UUID,
        target_status: ChannelStatus | str,
        actor: str = "recovery",
        reason: str | None = None,
        tenant_id: UUID | None = None,
    ) -> ResetResult:
        """
        Force an instance into disconnected or error.

        Raises:
            ValueError: target is not disconnected or error
            InstanceNotFound: instance does not exist
        """
        target = ChannelStatus(target_status)
        if target not in RESET_TARGETS:
            raise ValueError(f"Reset target must be disconnected or error, got {target.value}")

        with self.session_factory() as db:
            repo = ChannelRepository(db)
            instance = repo.get_instance(instance_id, tenant_id)
            if instance is None:
                raise InstanceNotFound(instance_id)
            previous = ChannelStatus(instance.status)

            if target == ChannelStatus.ERROR:
                repo.update_instance_status(
                    instance_id, target, error_message=reason or DEFAULT_RESET_ERROR, tenant_id=tenant_id
                )
            else:
                repo.update_instance_status(instance_id, target, clear_error=True, tenant_id=tenant_id)
            db.commit()

            try:
                repo.create_audit_log(
                    instance,
                    action="reset",
                    actor=actor,
                    details={"previous_status": previous.value, "status": target.value, "reason": reason},
                )
                db.commit()
            except SQLAlchemyError as e:
                db.rollback()
                logger.warning(f"Failed to write audit log for reset: {e}", extra={"instance_id": str(instance_id)})

            tenant = instance.tenant_id

        if self.supervisor is not None:
            self.supervisor.cancel(instance_id)

        logger.warning(
            f"Reset instance {previous.value} -> {target.value}",
            extra={"instance_id": str(instance_id), "actor": actor, "reason": reason},
        )

        if self.events is not None:
            self.events.publish_instance_reset(
                tenant_id=tenant,
                payload=InstanceResetPayload(
                    instance_id=instance_id,
                    previous_status=previous.value,
                    status=target.value,
                    actor=actor,
                    reason=reason,
                ),
            )

        return ResetResult(instance_id=instance_id, success=True, previous_status=previous, status=target)

    def emergency_cleanup(
        self,
        tenant_id: UUID | None = None,
        actor: str = "emergency_cleanup",
    ) -> list[ResetResult]:
        """
        Reset every flagged instance to error.

        Each instance is reset in its own transaction; a failure is recorded
        in its result and the rest are still processed.
        """
        with self.session_factory() as db:
            flagged = [
                (instance.id, instance.flag_reason)
                for instance in ChannelRepository(db).list_flagged_instances(tenant_id)
            ]

        results = []
        for instance_id, flag_reason in flagged:
            try:
                results.append(
                    self.reset_instance(
                        instance_id,
                        ChannelStatus.ERROR,
                        actor=actor,
                        reason=f"Emergency cleanup: {flag_reason or 'flagged problematic'}",
                    )
                )
            except Exception as e:
                logger.error(
                    f"Emergency cleanup failed for instance: {e}",
                    extra={"instance_id": str(instance_id)},
                )
                results.append(ResetResult(instance_id=instance_id, success=False, error=str(e)))

        failed = sum(1 for r in results if not r.success)
        logger.warning(f"Emergency cleanup reset {len(results) - failed} instance(s), {failed} failed")
        return results

    def reclaim_stale_connections(self) -> list[ResetResult]:
        """Move connecting instances older than the threshold to error."""
        cutoff = self.clock() - self.stuck_threshold
        with self.session_factory() as db:
            stale = [i.id for i in ChannelRepository(db).list_stale_instances(ChannelStatus.CONNECTING, cutoff)]

        minutes = int(self.stuck_threshold.total_seconds() // 60)
        results = []
        for instance_id in stale:
            try:
                results.append(
                    self.reset_instance(
                        instance_id,
                        ChannelStatus.ERROR,
                        actor="reclaimer",
                        reason=f"Connection attempt timed out after {minutes} minutes",
                    )
                )
            except InstanceNotFound as e:
                results.append(ResetResult(instance_id=instance_id, success=False, error=str(e)))

        if results:
            logger.info(f"Reclaimed {len(results)} stale connection attempt(s)")
        return results

    # =========================================================================
    # Problematic flag
    # =========================================================================

    def _set_flag(
        self,
        instance_id: UUID,
        flagged: bool,
        reason: str | None,
        actor: str,
        tenant_id: UUID | None,
    ) -> None:
        with self.session_factory() as db:
            repo = ChannelRepository(db)
            instance = repo.get_instance(instance_id, tenant_id)
            if instance is None:
                raise InstanceNotFound(instance_id)
            repo.set_problematic_flag(instance_id, flagged, reason, tenant_id=tenant_id)
            db.commit()

            try:
                repo.create_audit_log(
                    instance,
                    action="flag" if flagged else "unflag",
                    actor=actor,
                    details={"reason": reason},
                )
                db.commit()
            except SQLAlchemyError as e:
                db.rollback()
                logger.warning(f"Failed to write audit log for flag: {e}", extra={"instance_id": str(instance_id)})

    def flag_instance(
        self,
        instance_id: UUID,
        reason: str,
        actor: str = "recovery",
        tenant_id: UUID | None = None,
    ) -> None:
        """Put an instance on the known-problematic list."""
        self._set_flag(instance_id, True, reason, actor, tenant_id)
        logger.warning(f"Flagged instance as problematic: {reason}", extra={"instance_id": str(instance_id)})

    def unflag_instance(
        self,
        instance_id: UUID,
        actor: str = "recovery",
        tenant_id: UUID | None = None,
    ) -> None:
        self._set_flag(instance_id, False, None, actor, tenant_id)
        logger.info("Cleared problematic flag", extra={"instance_id": str(instance_id)})

    # =========================================================================
    # Orphans
    # =========================================================================

    async def find_orphans(self, tenant_id: UUID | None = None) -> list[OrphanCheck]:
        """
        Instances whose upstream counterpart no longer exists.

        Only a definite "not found" counts; network and provider errors are
        logged and the instance is skipped.
        """
        if self.connection_service_resolver is None:
            raise RuntimeError("find_orphans requires a connection service resolver")

        with self.session_factory() as db:
            instances = ChannelRepository(db).list_instances_by_status(LIVE_STATUSES, tenant_id)

        orphans = []
        for instance in instances:
            service = self.connection_service_resolver(instance)
            try:
                exists = await asyncio.wait_for(
                    service.instance_exists(instance), timeout=self.upstream_timeout
                )
            except (ProviderError, httpx.HTTPError, asyncio.TimeoutError) as e:
                logger.warning(
                    f"Could not check upstream instance, skipping: {e}",
                    extra={"instance_id": str(instance.id)},
                )
                continue

            if not exists:
                logger.warning(
                    f"Orphaned instance {instance.provider_ref} (not found upstream)",
                    extra={"instance_id": str(instance.id)},
                )
                orphans.append(
                    OrphanCheck(
                        instance_id=instance.id,
                        provider_ref=instance.provider_ref,
                        status=ChannelStatus(instance.status),
                    )
                )
        return orphans

    async def cleanup_orphans(
        self,
        dry_run: bool = True,
        tenant_id: UUID | None = None,
        actor: str = "orphan_cleanup",
    ) -> list[OrphanCheck]:
        """Find orphans and, unless dry_run, reset them to disconnected."""
        orphans = await self.find_orphans(tenant_id)
        if dry_run:
            return orphans

        for orphan in orphans:
            try:
                orphan.reset = self.reset_instance(
                    orphan.instance_id,
                    ChannelStatus.DISCONNECTED,
                    actor=actor,
                    reason="Instance not found upstream",
                )
            except InstanceNotFound as e:
                orphan.reset = ResetResult(instance_id=orphan.instance_id, success=False, error=str(e))
        return orphans
