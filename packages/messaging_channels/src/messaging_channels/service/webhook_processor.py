"""
Webhook Processor

Applies normalized webhook events to the instance store:
1. Resolves the instance from the event's instance reference
2. Stores inbound messages (idempotent on the provider message id)
3. Applies connection status changes through the lifecycle transition table
4. Dispatches text messages to the channel's message processor in a
   background task, so the webhook is answered once the message is stored
5. Sends any reply through the channel's connection service
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from messaging_channels.connection.supervisor import ConnectionSupervisor
from messaging_channels.contracts.event_types import ChannelEventType, WebhookEventType
from messaging_channels.contracts.payloads import MessageReceivedPayload, WebhookEvent
from messaging_channels.errors import InstanceNotFound
from messaging_channels.lifecycle.manager import InstanceLifecycleManager
from messaging_channels.persistence.models import (
    ChannelConversation,
    ChannelInstance,
    ChannelMessage,
    ChannelStatus,
    ContentType,
    MessageDirection,
)
from messaging_channels.persistence.repo import ChannelRepository
from messaging_channels.providers.base import LinkingCode
from messaging_channels.providers.evolution.webhook import (
    NormalizedMessage,
    extract_code,
    extract_connection_state,
    extract_inbound_message,
    map_connection_state,
)
from messaging_channels.registry import ChannelRegistry
from messaging_channels.streams.producer import ChannelEventPublisher

logger = logging.getLogger(__name__)


@dataclass
class StoredInbound:
    instance: ChannelInstance
    conversation: ChannelConversation
    message: ChannelMessage
    is_new_conversation: bool


class WebhookProcessor:
    """
    Processes webhook events for every registered channel type.

    Safe to run concurrently: each event uses its own sessions and message
    inserts are guarded by the (conversation, external id) unique key.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        registry: ChannelRegistry,
        lifecycle: InstanceLifecycleManager,
        supervisor: ConnectionSupervisor | None = None,
        events: ChannelEventPublisher | None = None,
        code_ttl_seconds: int = 45,
        dispatch_in_background: bool = True,
    ):
        self.session_factory = session_factory
        self.registry = registry
        self.lifecycle = lifecycle
        self.supervisor = supervisor
        self.events = events
        self.code_ttl_seconds = code_ttl_seconds
        self.dispatch_in_background = dispatch_in_background
        self._dispatch_tasks: set[asyncio.Task] = set()

    def resolve_instance(self, instance_ref: str) -> ChannelInstance | None:
        with self.session_factory() as db:
            return ChannelRepository(db).resolve_instance_ref(instance_ref)

    async def process(self, event: WebhookEvent) -> dict[str, Any]:
        """
        Process a single webhook event.

        Returns:
            Processing result dict

        Raises:
            MissingRequiredData: the event payload lacks required fields
        """
        instance = self.resolve_instance(event.instance_ref)
        if instance is None:
            logger.warning(
                "Webhook for unknown instance",
                extra={"instance_ref": event.instance_ref, "event_type": event.event_type},
            )
            return {"status": "ignored", "reason": "unknown_instance"}

        try:
            if event.event_type == WebhookEventType.MESSAGE_RECEIVED.value:
                return await self._handle_message(instance, event)
            if event.event_type == WebhookEventType.CONNECTION_STATUS_CHANGED.value:
                return self._handle_connection_update(instance, event)
            if event.event_type == WebhookEventType.CODE_UPDATED.value:
                return self._handle_code_updated(instance, event)
            if event.event_type == WebhookEventType.INSTANCE_CREATED.value:
                return self._handle_instance_created(instance, event)
        except InstanceNotFound:
            # Deleted while the event was in flight
            return {"status": "ignored", "reason": "unknown_instance"}

        return {"status": "ignored", "reason": "unhandled_event", "event_type": event.event_type}

    # =========================================================================
    # Messages
    # =========================================================================

    async def _handle_message(self, instance: ChannelInstance, event: WebhookEvent) -> dict[str, Any]:
        inbound = extract_inbound_message(event.payload, default_timestamp=event.timestamp)

        if inbound.from_me:
            logger.debug(f"Skipping outbound echo {inbound.external_id}")
            return {"status": "skipped", "reason": "outbound_echo", "external_id": inbound.external_id}

        stored = self._store_inbound(instance.id, inbound)
        if stored is None:
            logger.info(
                "Duplicate message ignored",
                extra={"instance_id": str(instance.id), "external_id": inbound.external_id},
            )
            return {"status": "duplicate", "external_id": inbound.external_id}

        logger.info(
            "Stored inbound message",
            extra={
                "instance_id": str(instance.id),
                "conversation_id": str(stored.conversation.id),
                "content_type": inbound.content_type.value,
            },
        )

        if self.events is not None:
            self.events.publish_message_received(
                tenant_id=stored.instance.tenant_id,
                payload=MessageReceivedPayload(
                    instance_id=stored.instance.id,
                    conversation_id=stored.conversation.id,
                    message_id=stored.message.id,
                    contact_ref=stored.conversation.contact_ref,
                    contact_name=stored.conversation.contact_name,
                    content_type=inbound.content_type.value,
                    content_text=inbound.content_text,
                    external_id=inbound.external_id,
                    is_new_conversation=stored.is_new_conversation,
                ),
                correlation_id=inbound.external_id,
            )

        result: dict[str, Any] = {
            "status": "processed",
            "instance_id": str(stored.instance.id),
            "conversation_id": str(stored.conversation.id),
            "message_id": str(stored.message.id),
            "is_new_conversation": stored.is_new_conversation,
        }

        if inbound.content_type == ContentType.TEXT and inbound.content_text.strip():
            if self.dispatch_in_background:
                self._schedule_dispatch(stored)
                result["dispatch"] = "scheduled"
            else:
                result.update(await self._dispatch(stored))

        return result

    def _store_inbound(self, instance_id: UUID, inbound: NormalizedMessage) -> StoredInbound | None:
        """
        Persist an inbound message and update conversation/instance activity.

        Returns None if the message was already stored. A unique-key race with
        a concurrent delivery is retried once, which then sees the duplicate.
        """
        for attempt in range(2):
            with self.session_factory() as db:
                repo = ChannelRepository(db)
                instance = repo.get_instance(instance_id)
                if instance is None:
                    raise InstanceNotFound(instance_id)

                try:
                    conversation, created = repo.get_or_create_conversation(
                        instance, inbound.contact_ref, inbound.contact_name
                    )
                    if repo.get_message_by_external_id(conversation.id, inbound.external_id):
                        return None

                    message = repo.create_message(
                        tenant_id=instance.tenant_id,
                        conversation_id=conversation.id,
                        direction=MessageDirection.INBOUND,
                        content_type=inbound.content_type,
                        content_text=inbound.content_text,
                        external_id=inbound.external_id,
                        raw_payload=inbound.raw_payload,
                        created_at=inbound.timestamp,
                    )
                    repo.update_conversation_activity(conversation, inbound.content_text, at=inbound.timestamp)
                    repo.touch_instance_activity(instance.id, at=inbound.timestamp)
                    db.commit()
                except IntegrityError:
                    db.rollback()
                    if attempt:
                        raise
                    logger.info(
                        "Concurrent insert detected, re-reading",
                        extra={"instance_id": str(instance_id), "external_id": inbound.external_id},
                    )
                    continue

                db.refresh(instance)
                db.refresh(conversation)
                db.refresh(message)
                return StoredInbound(instance, conversation, message, created)

        return None

    def _schedule_dispatch(self, stored: StoredInbound) -> None:
        task = asyncio.get_running_loop().create_task(
            self._dispatch(stored), name=f"dispatch-{stored.message.id}"
        )
        self._dispatch_tasks.add(task)
        task.add_done_callback(self._dispatch_tasks.discard)

    @property
    def pending_dispatches(self) -> int:
        return len(self._dispatch_tasks)

    async def drain(self, timeout: float | None = None) -> list[dict[str, Any]]:
        """
        Wait for scheduled dispatches to finish.

        Returns:
            The dispatch outcomes ({intent, actions, replied}) in scheduling order
        """
        tasks = list(self._dispatch_tasks)
        if not tasks:
            return []
        return list(await asyncio.wait_for(asyncio.gather(*tasks), timeout=timeout))

    async def shutdown(self, timeout: float = 10.0) -> None:
        """Let in-flight dispatches finish; cancel whatever is left after the timeout."""
        try:
            await self.drain(timeout=timeout)
        except asyncio.TimeoutError:
            tasks = list(self._dispatch_tasks)
            logger.warning(f"Cancelling {len(tasks)} unfinished reply dispatch(es)")
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _dispatch(self, stored: StoredInbound) -> dict[str, Any]:
        """Run the message processor and send its reply. Never raises."""
        try:
            processor = self.registry.message_processor(stored.instance.channel_type)
            outcome = await processor.process_message(stored.instance, stored.conversation, stored.message)
        except Exception as e:
            logger.error(
                f"Message processing failed: {e}",
                extra={"message_id": str(stored.message.id)},
                exc_info=True,
            )
            return {"intent": None, "replied": False}

        replied = False
        if outcome.reply_text:
            try:
                replied = await self._send_reply(stored, outcome.reply_text)
            except Exception as e:
                logger.error(
                    f"Failed to send reply: {e}",
                    extra={"conversation_id": str(stored.conversation.id)},
                    exc_info=True,
                )

        return {
            "intent": outcome.intent.value if outcome.intent else None,
            "actions": outcome.actions,
            "replied": replied,
        }

    async def _send_reply(self, stored: StoredInbound, text: str) -> bool:
        service = self.registry.connection_service(stored.instance.channel_type)
        response = await self.lifecycle.call_upstream(
            service.send_text(stored.instance, stored.conversation.contact_ref, text),
            "send_text",
        )
        if not response.success:
            logger.warning(
                f"Provider rejected reply: {response.error_message}",
                extra={"conversation_id": str(stored.conversation.id), "code": response.error_code},
            )
            return False

        with self.session_factory() as db:
            repo = ChannelRepository(db)
            conversation = db.get(ChannelConversation, stored.conversation.id)
            repo.create_message(
                tenant_id=stored.instance.tenant_id,
                conversation_id=stored.conversation.id,
                direction=MessageDirection.OUTBOUND,
                content_type=ContentType.TEXT,
                content_text=text,
                external_id=response.message_id,
                raw_payload=response.raw_response,
            )
            if conversation is not None:
                repo.update_conversation_activity(conversation, text)
            db.commit()

        if self.events is not None:
            self.events.publish(
                ChannelEventType.REPLY_SENT,
                stored.instance.tenant_id,
                {
                    "instance_id": str(stored.instance.id),
                    "conversation_id": str(stored.conversation.id),
                    "external_id": response.message_id,
                },
                correlation_id=response.message_id,
            )

        return True

    # =========================================================================
    # Connection events
    # =========================================================================

    def _handle_connection_update(self, instance: ChannelInstance, event: WebhookEvent) -> dict[str, Any]:
        state = extract_connection_state(event.payload)
        target = map_connection_state(state)

        error_message = None
        if target == ChannelStatus.ERROR:
            error_message = f"Unexpected connection state: {state}"

        outcome = self.lifecycle.apply_transition(
            instance.id,
            target,
            source="webhook",
            error_message=error_message,
            clear_error=target == ChannelStatus.CONNECTED,
        )

        if outcome.current == ChannelStatus.CONNECTED and self.supervisor is not None:
            self.supervisor.cancel(instance.id)

        return {
            "status": "processed",
            "state": state,
            "previous_status": outcome.previous.value,
            "current_status": outcome.current.value,
            "applied": outcome.applied,
        }

    def _handle_code_updated(self, instance: ChannelInstance, event: WebhookEvent) -> dict[str, Any]:
        status = ChannelStatus(instance.status)
        if status != ChannelStatus.CONNECTED:
            outcome = self.lifecycle.apply_transition(
                instance.id, ChannelStatus.CONNECTING, source="webhook", touch=True
            )
            status = outcome.current

        code = extract_code(event.payload)
        offered = False
        if code and status == ChannelStatus.CONNECTING and self.supervisor is not None:
            offered = self.supervisor.offer_code(
                instance.id,
                LinkingCode(
                    code=code,
                    expires_at=datetime.now(timezone.utc) + timedelta(seconds=self.code_ttl_seconds),
                ),
            )

        return {"status": "processed", "current_status": status.value, "code_offered": offered}

    def _handle_instance_created(self, instance: ChannelInstance, event: WebhookEvent) -> dict[str, Any]:
        if ChannelStatus(instance.status) != ChannelStatus.DISCONNECTED:
            return {"status": "ignored", "reason": "not_disconnected"}

        outcome = self.lifecycle.apply_transition(instance.id, ChannelStatus.CONNECTING, source="webhook")
        return {"status": "processed", "current_status": outcome.current.value}
