"""
Channel Webhook Service

FastAPI app for the messaging channels engine.

Responsibilities:
- Receive Evolution API webhooks and hand them to the webhook processor
- Expose the instance lifecycle API (create, update, connect, code, disconnect,
  delete) and conversation status updates
- Report channel health

Webhooks always get a 200 once the body is structurally valid and
authenticated; processing failures are reported in the response body.
"""

import json
import logging
from typing import Any
from uuid import UUID

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from basecore.logging import setup_logging
from basecore.settings import Settings, get_settings

from messaging_channels.contracts.payloads import InstanceConfig
from messaging_channels.engine import ChannelEngine, build_engine, build_event_publisher
from messaging_channels.errors import (
    ChannelError,
    ConflictActiveConversations,
    ConnectionStalled,
    ConversationNotFound,
    InstanceNotFound,
    InstanceValidationError,
    InvalidStatusTransition,
    MissingRequiredData,
    UnsupportedChannelType,
)
from messaging_channels.lifecycle.manager import ConnectionRequest
from messaging_channels.persistence.models import (
    ChannelConversation,
    ChannelInstance,
    ChannelType,
    ConversationStatus,
)
from messaging_channels.providers.base import ProviderError
from messaging_channels.providers.evolution.webhook import parse_evolution_webhook, validate_api_key

logger = logging.getLogger(__name__)

ERROR_STATUS_CODES: dict[type[ChannelError], int] = {
    UnsupportedChannelType: 400,
    MissingRequiredData: 400,
    InstanceValidationError: 422,
    InstanceNotFound: 404,
    ConversationNotFound: 404,
    InvalidStatusTransition: 409,
    ConflictActiveConversations: 409,
    ConnectionStalled: 503,
}


class CreateInstanceRequest(BaseModel):
    display_name: str = Field(..., description="Instance name shown to the tenant (3-50 chars)")
    channel_type: ChannelType | str = Field(ChannelType.WHATSAPP, description="Channel type")
    config: dict[str, Any] = Field(default_factory=dict, description="Instance configuration")
    connect_immediately: bool = Field(False, description="Request the linking code right away")


class UpdateInstanceRequest(BaseModel):
    display_name: str | None = Field(None, description="New display name (3-50 chars)")
    config: dict[str, Any] | None = Field(None, description="Top-level config keys to replace")


class ConversationStatusRequest(BaseModel):
    status: ConversationStatus = Field(..., description="New conversation status")

def instance_to_dict(instance: ChannelInstance, metrics: dict[str, int] | None = None) -> dict[str, Any]:
    data = {
        "id": instance.id,
        "tenant_id": instance.tenant_id,
        "channel_type": instance.channel_type,
        "display_name": instance.display_name,
        "provider_ref": instance.provider_ref,
        "status": instance.status,
        "status_version": instance.status_version,
        "config": instance.config,
        "error_message": instance.error_message,
        "last_activity": instance.last_activity,
        "flagged_problematic": instance.flagged_problematic,
        "created_at": instance.created_at,
        "updated_at": instance.updated_at,
    }
    if metrics is not None:
        data["metrics"] = metrics
    return data


def connection_to_dict(request: ConnectionRequest) -> dict[str, Any]:
    return {
        "instance_id": request.instance_id,
        "status": request.status.value,
        "code": request.code,
        "expires_at": request.expires_at,
        "pairing_code": request.pairing_code,
        "pending": request.pending,
    }


def conversation_to_dict(conversation: ChannelConversation) -> dict[str, Any]:
    return {
        "id": conversation.id,
        "instance_id": conversation.instance_id,
        "contact_ref": conversation.contact_ref,
        "contact_name": conversation.contact_name,
        "status": conversation.status,
        "last_activity": conversation.last_activity,
        "last_message_preview": conversation.last_message_preview,
        "message_count": conversation.message_count,
    }


def get_tenant_id(x_tenant_id: str | None = Header(None)) -> UUID:
    """Tenant from the X-Tenant-ID header."""
    if not x_tenant_id:
        raise HTTPException(status_code=400, detail="Missing X-Tenant-ID header")
    try:
        return UUID(x_tenant_id)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid X-Tenant-ID header")


def get_channel_engine(request: Request) -> ChannelEngine:
    return request.app.state.engine


def _secret_matches(headers: dict[str, str], body: dict[str, Any], secret: str) -> bool:
    lowered = {k.lower(): v for k, v in headers.items()}
    if lowered.get("x-webhook-secret") == secret:
        return True
    return validate_api_key(headers, secret, body)


def create_app(engine: ChannelEngine | None = None, settings: Settings | None = None) -> FastAPI:
    """
    Build the FastAPI app.

    Args:
        engine: Pre-built channel engine (built from settings on startup if None)
        settings: Settings (defaults to get_settings())
    """
    settings = settings or get_settings()

    app = FastAPI(
        title="Channel Webhook",
        description="Messaging channel webhooks and instance lifecycle API",
        version="1.0.0",
    )
    app.state.engine = engine
    app.state.settings = settings

    @app.on_event("startup")
    async def startup():
        setup_logging(settings.LOG_LEVEL, settings.LOG_FORMAT)
        if app.state.engine is None:
            from basecore.db import get_sessionmaker

            app.state.engine = build_engine(
                get_sessionmaker(),
                settings=settings,
                events=build_event_publisher(settings),
            )
        logger.info("Channel webhook service started")

    @app.on_event("shutdown")
    async def shutdown():
        if app.state.engine is not None:
            await app.state.engine.close()
        logger.info("Channel webhook service stopped")

    @app.exception_handler(ChannelError)
    async def channel_error_handler(request: Request, exc: ChannelError):
        status_code = 400
        for error_type, code in ERROR_STATUS_CODES.items():
            if isinstance(exc, error_type):
                status_code = code
                break
        return JSONResponse(
            status_code=status_code,
            content={"detail": exc.message, "code": exc.code, "details": exc.details},
        )

    @app.exception_handler(ProviderError)
    async def provider_error_handler(request: Request, exc: ProviderError):
        logger.warning(f"Provider error: {exc}", extra={"code": exc.code, "path": request.url.path})
        return JSONResponse(
            status_code=502,
            content={"detail": f"Provider error: {exc}", "code": exc.code, "retryable": exc.retryable},
        )

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        return {"status": "healthy", "service": "channel-webhook"}

    # =========================================================================
    # Webhooks
    # =========================================================================

    async def receive(request: Request, instance_ref: str | None = None) -> dict[str, Any]:
        raw = await request.body()
        try:
            payload = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError):
            logger.warning("Invalid JSON payload")
            raise HTTPException(status_code=400, detail="Invalid JSON")

        if not isinstance(payload, dict):
            raise HTTPException(status_code=400, detail="Webhook body must be an object")

        headers = dict(request.headers)
        if settings.EVOLUTION_WEBHOOK_API_KEY and not validate_api_key(
            headers, settings.EVOLUTION_WEBHOOK_API_KEY, payload
        ):
            logger.warning("Invalid webhook API key", extra={"instance_ref": instance_ref})
            raise HTTPException(status_code=403, detail="Invalid API key")

        try:
            event = parse_evolution_webhook(payload, instance_ref)
        except MissingRequiredData as e:
            logger.warning(f"Malformed webhook: {e.message}")
            raise HTTPException(status_code=400, detail=e.message)

        if event is None:
            return {"status": "ignored", "reason": "unhandled_event"}

        engine: ChannelEngine = app.state.engine
        processor = engine.webhook_processor

        try:
            instance = processor.resolve_instance(event.instance_ref)
            if instance is not None:
                secret = InstanceConfig.model_validate(instance.config or {}).webhook.secret
                if secret and not _secret_matches(headers, payload, secret):
                    logger.warning("Invalid webhook secret", extra={"instance_id": str(instance.id)})
                    raise HTTPException(status_code=403, detail="Invalid webhook secret")

            return await processor.process(event)
        except HTTPException:
            raise
        except MissingRequiredData as e:
            logger.warning(f"Malformed webhook data: {e.message}")
            raise HTTPException(status_code=400, detail=e.message)
        except Exception as e:
            logger.error(
                f"Webhook processing failed: {e}",
                extra={"instance_ref": event.instance_ref, "event_type": event.event_type},
                exc_info=True,
            )
            return {"status": "error", "message": "Internal processing error"}

    @app.post("/webhook/{instance_ref}")
    async def receive_instance_webhook(instance_ref: str, request: Request):
        """Receive a webhook addressed by instance id or provider instance name."""
        return await receive(request, instance_ref)

    @app.post("/webhook")
    async def receive_webhook(request: Request):
        """Receive a webhook; the instance comes from the body."""
        return await receive(request)

    # =========================================================================
    # Instance lifecycle
    # =========================================================================

    @app.post("/instances", status_code=201)
    async def create_instance(
        body: CreateInstanceRequest,
        tenant_id: UUID = Depends(get_tenant_id),
        engine: ChannelEngine = Depends(get_channel_engine),
    ):
        if body.connect_immediately:
            instance, connection = await engine.lifecycle.create_and_connect(
                tenant_id, body.display_name, body.channel_type, body.config
            )
            return {"instance": instance_to_dict(instance), "connection": connection_to_dict(connection)}

        instance = await engine.lifecycle.create_instance(
            tenant_id, body.display_name, body.channel_type, body.config
        )
        return {"instance": instance_to_dict(instance), "connection": None}

    @app.get("/instances")
    async def list_instances(
        channel_type: str | None = Query(None),
        tenant_id: UUID = Depends(get_tenant_id),
        engine: ChannelEngine = Depends(get_channel_engine),
    ):
        if channel_type is not None and channel_type not in {t.value for t in ChannelType}:
            raise UnsupportedChannelType(channel_type)
        summaries = engine.lifecycle.list_instances(tenant_id, channel_type)
        return {"instances": [instance_to_dict(s.instance, s.metrics) for s in summaries]}

    @app.get("/instances/health")
    async def channel_health(
        tenant_id: UUID = Depends(get_tenant_id),
        engine: ChannelEngine = Depends(get_channel_engine),
    ):
        return engine.lifecycle.channel_health(tenant_id)

    @app.get("/instances/{instance_id}")
    async def get_instance(
        instance_id: UUID,
        tenant_id: UUID = Depends(get_tenant_id),
        engine: ChannelEngine = Depends(get_channel_engine),
    ):
        return instance_to_dict(engine.lifecycle.get_instance(instance_id, tenant_id))

    @app.patch("/instances/{instance_id}")
    async def update_instance(
        instance_id: UUID,
        body: UpdateInstanceRequest,
        tenant_id: UUID = Depends(get_tenant_id),
        engine: ChannelEngine = Depends(get_channel_engine),
    ):
        instance = engine.lifecycle.update_instance(
            instance_id,
            config_updates=body.config,
            tenant_id=tenant_id,
            display_name=body.display_name,
        )
        return instance_to_dict(instance)

    @app.get("/instances/{instance_id}/conversations")
    async def list_conversations(
        instance_id: UUID,
        status: ConversationStatus | None = Query(None),
        limit: int = Query(50, ge=1, le=200),
        offset: int = Query(0, ge=0),
        tenant_id: UUID = Depends(get_tenant_id),
        engine: ChannelEngine = Depends(get_channel_engine),
    ):
        conversations = engine.lifecycle.list_conversations(
            instance_id, tenant_id, status=status, limit=limit, offset=offset
        )
        return {"conversations": [conversation_to_dict(c) for c in conversations]}

    @app.patch("/conversations/{conversation_id}")
    async def update_conversation_status(
        conversation_id: UUID,
        body: ConversationStatusRequest,
        tenant_id: UUID = Depends(get_tenant_id),
        engine: ChannelEngine = Depends(get_channel_engine),
    ):
        conversation = engine.lifecycle.update_conversation_status(conversation_id, body.status, tenant_id)
        return conversation_to_dict(conversation)

    @app.post("/instances/{instance_id}/connect")
    async def request_connection(
        instance_id: UUID,
        tenant_id: UUID = Depends(get_tenant_id),
        engine: ChannelEngine = Depends(get_channel_engine),
    ):
        connection = await engine.lifecycle.request_connection(instance_id, tenant_id)
        return connection_to_dict(connection)

    @app.get("/instances/{instance_id}/code")
    async def get_code(
        instance_id: UUID,
        tenant_id: UUID = Depends(get_tenant_id),
        engine: ChannelEngine = Depends(get_channel_engine),
    ):
        code = engine.lifecycle.get_code(instance_id, tenant_id)
        if code.stalled:
            return {
                "instance_id": instance_id,
                "status": "stalled",
                "retryable": True,
                "message": code.error_message,
            }
        return {
            "instance_id": instance_id,
            "status": code.status.value,
            "code": code.code,
            "expires_at": code.expires_at,
            "retryable": code.retryable,
            "error_message": code.error_message,
        }

    @app.post("/instances/{instance_id}/cancel")
    async def cancel_connection(
        instance_id: UUID,
        tenant_id: UUID = Depends(get_tenant_id),
        engine: ChannelEngine = Depends(get_channel_engine),
    ):
        return {"cancelled": engine.lifecycle.cancel_connection(instance_id, tenant_id)}

    @app.post("/instances/{instance_id}/refresh")
    async def refresh_status(
        instance_id: UUID,
        tenant_id: UUID = Depends(get_tenant_id),
        engine: ChannelEngine = Depends(get_channel_engine),
    ):
        status = await engine.lifecycle.refresh_status(instance_id, tenant_id)
        return {"instance_id": instance_id, "status": status.value}

    @app.post("/instances/{instance_id}/disconnect")
    async def disconnect(
        instance_id: UUID,
        tenant_id: UUID = Depends(get_tenant_id),
        engine: ChannelEngine = Depends(get_channel_engine),
    ):
        instance = await engine.lifecycle.disconnect(instance_id, tenant_id)
        return instance_to_dict(instance)

    @app.delete("/instances/{instance_id}")
    async def delete_instance(
        instance_id: UUID,
        force: bool = Query(False),
        tenant_id: UUID = Depends(get_tenant_id),
        engine: ChannelEngine = Depends(get_channel_engine),
    ):
        await engine.lifecycle.delete_instance(instance_id, tenant_id, force=force)
        return {"deleted": True, "instance_id": instance_id}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8002)
