"""
Evolution Connection Service

ConnectionService implementation for WhatsApp instances hosted on an
Evolution API server.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from messaging_channels.persistence.models import ChannelInstance, ChannelStatus
from messaging_channels.providers.base import (
    ConnectionService,
    LinkingCode,
    ProviderError,
    ProviderResponse,
)
from messaging_channels.providers.evolution.client import EvolutionApiClient
from messaging_channels.providers.evolution.webhook import map_connection_state

logger = logging.getLogger(__name__)


class EvolutionConnectionService(ConnectionService):
    """
    Connects channel instances through Evolution API.

    The upstream instance name is ChannelInstance.provider_ref. Webhooks are
    registered at ``{webhook_base_url}/webhook/{instance_id}``.
    """

    def __init__(
        self,
        client: EvolutionApiClient,
        webhook_base_url: str = "",
        code_ttl_seconds: int = 45,
    ):
        self.client = client
        self.webhook_base_url = webhook_base_url.rstrip("/")
        self.code_ttl_seconds = code_ttl_seconds

    def _webhook_url(self, instance: ChannelInstance) -> str | None:
        if not self.webhook_base_url:
            return None
        return f"{self.webhook_base_url}/webhook/{instance.id}"

    def _code_from_response(self, response: dict[str, Any]) -> LinkingCode | None:
        qrcode = response.get("qrcode")
        if isinstance(qrcode, dict):
            source = qrcode
        else:
            source = response

        code = source.get("base64") or source.get("code")
        if not code:
            return None

        return LinkingCode(
            code=code,
            expires_at=datetime.now(timezone.utc) + timedelta(seconds=self.code_ttl_seconds),
            pairing_code=source.get("pairingCode"),
        )

    async def connect(self, instance: ChannelInstance) -> LinkingCode | None:
        """Create the upstream instance (or reuse it) and return its linking code."""
        try:
            response = await self.client.create_instance(
                instance.provider_ref,
                webhook_url=self._webhook_url(instance),
            )
        except ProviderError as e:
            if not _already_exists(e):
                raise
            logger.info(
                f"Evolution instance {instance.provider_ref} already exists, reconnecting",
                extra={"instance_id": str(instance.id)},
            )
            webhook_url = self._webhook_url(instance)
            if webhook_url:
                await self.client.set_webhook(instance.provider_ref, webhook_url)
            return await self.fetch_code(instance)

        code = self._code_from_response(response)
        if code is None:
            # Some server versions only issue the QR on /instance/connect
            return await self.fetch_code(instance)
        return code

    async def fetch_code(self, instance: ChannelInstance) -> LinkingCode | None:
        """Request a fresh linking code."""
        response = await self.client.connect_instance(instance.provider_ref)

        state = (response.get("instance") or {}).get("state")
        if state == "open":
            return None

        return self._code_from_response(response)

    async def fetch_status(self, instance: ChannelInstance) -> ChannelStatus:
        """Live status. An instance unknown to the server is disconnected."""
        try:
            response = await self.client.connection_state(instance.provider_ref)
        except ProviderError as e:
            if e.code == "404":
                return ChannelStatus.DISCONNECTED
            raise

        state = (response.get("instance") or {}).get("state") or response.get("state")
        return map_connection_state(state)

    async def terminate(self, instance: ChannelInstance) -> None:
        await self.client.logout_instance(instance.provider_ref)

    async def delete_remote(self, instance: ChannelInstance) -> None:
        try:
            await self.client.delete_instance(instance.provider_ref)
        except ProviderError as e:
            if e.code != "404":
                raise

    async def instance_exists(self, instance: ChannelInstance) -> bool:
        try:
            await self.client.connection_state(instance.provider_ref)
        except ProviderError as e:
            if e.code == "404":
                return False
            raise
        return True

    async def send_text(
        self,
        instance: ChannelInstance,
        to: str,
        text: str,
    ) -> ProviderResponse:
        """Send a text message via Evolution API."""
        number = to.lstrip("+")

        try:
            response = await self.client.send_text(instance.provider_ref, number, text)
        except ProviderError as e:
            logger.error(f"Failed to send text message: {e}")
            return ProviderResponse(
                success=False,
                error_code=e.code,
                error_message=str(e),
                raw_response=e.details,
            )

        message_id = (response.get("key") or {}).get("id") or response.get("id")

        logger.info(
            "Sent text message via Evolution API",
            extra={"to": to, "message_id": message_id, "instance": instance.provider_ref},
        )

        return ProviderResponse(success=True, message_id=message_id, raw_response=response)

    async def close(self) -> None:
        await self.client.close()


def _already_exists(error: ProviderError) -> bool:
    if error.code not in ("403", "409"):
        return False
    return "already in use" in str(error).lower() or "already exists" in str(error).lower()
