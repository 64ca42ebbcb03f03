"""
Connection Supervisor

Owns one asyncio task per connecting instance. Each task waits ``interval``
seconds on the attempt's cancel event, runs a poll tick, and repeats until the
tick reports a terminal outcome.
"""

import asyncio
import logging
from typing import Any
from uuid import UUID

from messaging_channels.connection.flow import (
    CodeConnectionFlow,
    ConnectionAttempt,
    PollOutcome,
    PollResult,
)
from messaging_channels.providers.base import LinkingCode

logger = logging.getLogger(__name__)


class ConnectionSupervisor:
    """Starts, tracks and cancels poll loops."""

    def __init__(self, flow: CodeConnectionFlow, interval: float = 30.0):
        self.flow = flow
        self.interval = interval
        self._attempts: dict[UUID, ConnectionAttempt] = {}
        self._tasks: dict[UUID, asyncio.Task] = {}
        self._last_results: dict[UUID, PollResult] = {}
        self._total_polls = 0

    def start(self, instance_id: UUID, code: LinkingCode | None = None) -> ConnectionAttempt:
        """
        Start polling an instance.

        A second call for an instance that is already polling only records the
        new code. Must be called from a running event loop.
        """
        attempt = self._attempts.get(instance_id)
        if attempt is not None and not attempt.cancelled:
            if code is not None:
                attempt.offer_code(code)
            return attempt

        self._last_results.pop(instance_id, None)

        attempt = self.flow.new_attempt(instance_id)
        if code is not None:
            attempt.offer_code(code)
        self._attempts[instance_id] = attempt
        self._tasks[instance_id] = asyncio.get_running_loop().create_task(
            self._run(attempt), name=f"poll-{instance_id}"
        )

        logger.info(
            "Started connection polling",
            extra={"instance_id": str(instance_id), "interval": self.interval},
        )
        return attempt

    def cancel(self, instance_id: UUID) -> bool:
        """
        Stop polling an instance. Returns False if it was not polling.

        The loop wakes immediately and exits on its next check.
        """
        attempt = self._attempts.get(instance_id)
        if attempt is None:
            return False

        attempt.cancel()
        attempt.breaker.reset()
        logger.info("Cancelled connection polling", extra={"instance_id": str(instance_id)})
        return True

    def offer_code(self, instance_id: UUID, code: LinkingCode) -> bool:
        """Record a code pushed by webhook. Returns False if not polling."""
        attempt = self._attempts.get(instance_id)
        if attempt is None or attempt.cancelled:
            return False
        attempt.offer_code(code)
        return True

    def get_attempt(self, instance_id: UUID) -> ConnectionAttempt | None:
        return self._attempts.get(instance_id)

    def active_instances(self) -> list[UUID]:
        return [i for i, a in self._attempts.items() if not a.cancelled]

    def last_result(self, instance_id: UUID) -> PollResult | None:
        """Result of the latest tick, kept after the loop ends until the next start()."""
        attempt = self._attempts.get(instance_id)
        if attempt is not None and attempt.last_result is not None:
            return attempt.last_result
        return self._last_results.get(instance_id)

    def is_stalled(self, instance_id: UUID) -> bool:
        result = self.last_result(instance_id)
        return result is not None and result.outcome == PollOutcome.STALLED

    def stats(self) -> dict[str, Any]:
        active = [self._attempts[i] for i in self.active_instances()]
        return {
            "active_pollers": len(active),
            "total_polls": self._total_polls,
            "interval": self.interval,
            "circuit_breakers_open": sum(1 for a in active if a.breaker.is_open),
            "stalled": sum(1 for r in self._last_results.values() if r.outcome == PollOutcome.STALLED),
        }

    async def wait(self, instance_id: UUID, timeout: float | None = None) -> PollResult | None:
        """Wait for an instance's loop to finish and return its last result."""
        task = self._tasks.get(instance_id)
        if task is not None:
            await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
        return self.last_result(instance_id)

    async def shutdown(self) -> None:
        """Emergency stop: cancel every loop and wait for the tasks to end."""
        for attempt in self._attempts.values():
            attempt.cancel()

        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        logger.info(f"Stopped {len(tasks)} connection poller(s)")
        self._attempts.clear()
        self._tasks.clear()

    async def _sleep(self, attempt: ConnectionAttempt) -> None:
        try:
            await asyncio.wait_for(attempt.cancel_event.wait(), timeout=self.interval)
        except asyncio.TimeoutError:
            pass

    async def _run(self, attempt: ConnectionAttempt) -> None:
        instance_id = attempt.instance_id
        result: PollResult | None = None

        try:
            while True:
                loop = asyncio.get_running_loop()
                attempt.next_poll_at = loop.time() + self.interval
                await self._sleep(attempt)

                result = await self.flow.poll_once(attempt)
                attempt.last_result = result
                if result.outcome != PollOutcome.SKIPPED:
                    self._total_polls += 1
                if result.done:
                    break
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception(
                "Connection poll loop crashed",
                extra={"instance_id": str(instance_id)},
            )
        finally:
            if result is not None:
                self._last_results[instance_id] = result
            if self._attempts.get(instance_id) is attempt:
                del self._attempts[instance_id]
                self._tasks.pop(instance_id, None)

        logger.info(
            f"Connection polling finished: {result.outcome.value if result else 'none'}",
            extra={"instance_id": str(instance_id), "polls": attempt.polls},
        )
