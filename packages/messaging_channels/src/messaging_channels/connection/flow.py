"""
Code-Connection Flow

One poll tick for an instance that is waiting for its linking code to be
scanned. Each tick opens fresh sessions (through the lifecycle manager) and is
safe to repeat.
"""

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from uuid import UUID

import httpx

from messaging_channels.connection.circuit_breaker import CircuitBreaker, CooldownPolicy
from messaging_channels.contracts.event_types import ChannelEventType
from messaging_channels.errors import ConnectionStalled, InstanceNotFound
from messaging_channels.lifecycle.manager import InstanceLifecycleManager
from messaging_channels.persistence.models import ChannelStatus
from messaging_channels.providers.base import LinkingCode, ProviderError

logger = logging.getLogger(__name__)

TRANSIENT_ERRORS = (ProviderError, asyncio.TimeoutError, httpx.HTTPError)


class PollOutcome(str, Enum):
    CANCELLED = "cancelled"
    SKIPPED = "skipped"
    DELETED = "deleted"
    CONNECTED = "connected"
    ABANDONED = "abandoned"
    STALLED = "stalled"
    CONTINUE = "continue"


@dataclass
class PollResult:
    outcome: PollOutcome
    status: ChannelStatus | None = None
    error: str | None = None

    @property
    def done(self) -> bool:
        """Whether the poll loop should stop after this tick."""
        return self.outcome not in (PollOutcome.SKIPPED, PollOutcome.CONTINUE)


@dataclass
class ConnectionAttempt:
    """Ephemeral state of one instance's connection attempt."""

    instance_id: UUID
    breaker: CircuitBreaker
    started_at: float
    consecutive_errors: int = 0
    polls: int = 0
    code: str | None = None
    code_expires_at: datetime | None = None
    next_poll_at: float | None = None
    last_result: PollResult | None = None
    stalled_error: ConnectionStalled | None = None
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def cancel(self) -> None:
        self.cancel_event.set()

    def offer_code(self, code: LinkingCode) -> None:
        self.code = code.code
        self.code_expires_at = code.expires_at


class CodeConnectionFlow:
    """Runs poll ticks against the lifecycle manager and the upstream service."""

    def __init__(
        self,
        lifecycle: InstanceLifecycleManager,
        failure_threshold: int = 3,
        cooldown_seconds: float = 60.0,
        cooldown_policy: CooldownPolicy | str = CooldownPolicy.DOUBLE,
        max_cooldown_seconds: float = 240.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.lifecycle = lifecycle
        self.failure_threshold = failure_threshold
        self.cooldown_seconds = cooldown_seconds
        self.cooldown_policy = CooldownPolicy(cooldown_policy)
        self.max_cooldown_seconds = max_cooldown_seconds
        self.clock = clock

    def new_attempt(self, instance_id: UUID) -> ConnectionAttempt:
        return ConnectionAttempt(
            instance_id=instance_id,
            breaker=CircuitBreaker(
                failure_threshold=self.failure_threshold,
                cooldown_seconds=self.cooldown_seconds,
                policy=self.cooldown_policy,
                max_cooldown_seconds=self.max_cooldown_seconds,
                clock=self.clock,
            ),
            started_at=self.clock(),
        )

    async def poll_once(self, attempt: ConnectionAttempt) -> PollResult:
        """
        Run one tick.

        Returns:
            PollResult; ``result.done`` tells the caller to stop polling
        """
        if attempt.cancelled:
            return PollResult(PollOutcome.CANCELLED)

        if not attempt.breaker.allow_request():
            return PollResult(PollOutcome.SKIPPED)

        attempt.polls += 1

        try:
            instance = self.lifecycle.get_instance(attempt.instance_id)
        except InstanceNotFound:
            logger.info(
                "Instance deleted while polling, stopping",
                extra={"instance_id": str(attempt.instance_id)},
            )
            return PollResult(PollOutcome.DELETED)

        status = ChannelStatus(instance.status)
        if status == ChannelStatus.CONNECTED:
            attempt.breaker.record_success()
            return PollResult(PollOutcome.CONNECTED, status=status)
        if status != ChannelStatus.CONNECTING:
            return PollResult(PollOutcome.ABANDONED, status=status)

        try:
            status = await self.lifecycle.refresh_status(attempt.instance_id)
            if status == ChannelStatus.CONNECTING:
                service = self.lifecycle.connection_service_for(instance)
                code = await self.lifecycle.call_upstream(service.fetch_code(instance), "fetch_code")
                if code is not None:
                    attempt.offer_code(code)
        except InstanceNotFound:
            return PollResult(PollOutcome.DELETED)
        except TRANSIENT_ERRORS as e:
            return self._record_failure(attempt, e)

        attempt.breaker.record_success()
        attempt.consecutive_errors = 0

        if status == ChannelStatus.CONNECTED:
            logger.info("Instance connected", extra={"instance_id": str(attempt.instance_id)})
            return PollResult(PollOutcome.CONNECTED, status=status)
        if status != ChannelStatus.CONNECTING:
            return PollResult(PollOutcome.ABANDONED, status=status)
        return PollResult(PollOutcome.CONTINUE, status=status)

    def _record_failure(self, attempt: ConnectionAttempt, error: Exception) -> PollResult:
        attempt.consecutive_errors += 1
        attempt.breaker.record_failure()

        logger.warning(
            f"Poll failed for instance: {error}",
            extra={
                "instance_id": str(attempt.instance_id),
                "consecutive_errors": attempt.consecutive_errors,
                "breaker_state": attempt.breaker.state.value,
            },
        )

        if not attempt.breaker.stalled:
            return PollResult(PollOutcome.CONTINUE, status=ChannelStatus.CONNECTING, error=str(error))

        stalled = ConnectionStalled(attempt.instance_id)
        attempt.stalled_error = stalled

        try:
            instance = self.lifecycle.get_instance(attempt.instance_id)
            self.lifecycle.apply_transition(
                attempt.instance_id,
                ChannelStatus.ERROR,
                source="poller",
                error_message=stalled.message,
            )
        except InstanceNotFound:
            return PollResult(PollOutcome.DELETED)

        logger.error(
            stalled.message,
            extra={
                "instance_id": str(attempt.instance_id),
                "open_cycles": attempt.breaker.open_cycles,
            },
        )

        if self.lifecycle.events is not None:
            self.lifecycle.events.publish(
                ChannelEventType.CONNECTION_STALLED,
                instance.tenant_id,
                {
                    "instance_id": str(attempt.instance_id),
                    "consecutive_errors": attempt.consecutive_errors,
                    "last_error": str(error),
                },
            )

        return PollResult(PollOutcome.STALLED, status=ChannelStatus.ERROR, error=stalled.message)
