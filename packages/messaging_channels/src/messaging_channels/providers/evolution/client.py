"""
Evolution API Client

Thin async client for the Evolution API instance and message endpoints.

Documentation: https://doc.evolution-api.com/
"""

import logging
from typing import Any

import httpx

from messaging_channels.providers.base import ProviderError

logger = logging.getLogger(__name__)

DEFAULT_WEBHOOK_EVENTS = [
    "MESSAGES_UPSERT",
    "MESSAGES_UPDATE",
    "CONNECTION_UPDATE",
    "QRCODE_UPDATED",
]


class EvolutionApiClient:
    """
    Client for one Evolution API server.

    Instances on the server are addressed by name (ChannelInstance.provider_ref).
    Errors are raised as ProviderError; transport failures, timeouts, 429 and
    5xx responses are marked retryable.
    """

    def __init__(
        self,
        api_url: str,
        api_key: str,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """
        Initialize the client.

        Args:
            api_url: Base URL of Evolution API
            api_key: Global API key for authentication
            timeout: Per-request timeout in seconds
            transport: Custom httpx transport (tests)
        """
        self.api_url = api_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                headers={
                    "Content-Type": "application/json",
                    "apikey": self.api_key,
                },
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    async def _make_request(
        self,
        method: str,
        endpoint: str,
        json_data: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Make an authenticated API request."""
        client = await self._get_client()
        url = f"{self.api_url}{endpoint}"

        try:
            response = await client.request(method.upper(), url, json=json_data)
        except httpx.TimeoutException as e:
            logger.warning(f"Evolution API timeout: {method} {endpoint}")
            raise ProviderError(
                message=f"Request timed out: {e}",
                code="TIMEOUT",
                retryable=True,
            ) from e
        except httpx.RequestError as e:
            logger.error(f"HTTP request failed: {e}")
            raise ProviderError(
                message=f"HTTP request failed: {e}",
                code="HTTP_ERROR",
                retryable=True,
            ) from e

        try:
            response_data = response.json()
        except ValueError:
            response_data = {"raw": response.text}

        if not isinstance(response_data, dict):
            response_data = {"data": response_data}

        if response.status_code >= 400:
            error = response_data.get("error") or response_data.get("message")
            nested = response_data.get("response")
            if isinstance(nested, dict) and nested.get("message"):
                error = f"{error}: {nested['message']}" if error else nested["message"]
            raise ProviderError(
                message=str(error or f"HTTP {response.status_code}"),
                code=str(response.status_code),
                details=response_data,
                retryable=response.status_code >= 500 or response.status_code == 429,
            )

        return response_data

    async def create_instance(
        self,
        instance_name: str,
        webhook_url: str | None = None,
        qrcode: bool = True,
        integration: str = "WHATSAPP-BAILEYS",
    ) -> dict[str, Any]:
        """
        Create a new Evolution API instance.

        Args:
            instance_name: Unique name for the instance
            webhook_url: Where Evolution should push events (optional)
            qrcode: Whether to return QR code for connection
            integration: Integration type (WHATSAPP-BAILEYS, etc)

        Returns:
            Instance creation response with QR code if requested
        """
        payload: dict[str, Any] = {
            "instanceName": instance_name,
            "qrcode": qrcode,
            "integration": integration,
        }
        if webhook_url:
            payload["webhook"] = {
                "url": webhook_url,
                "byEvents": False,
                "base64": True,
                "events": DEFAULT_WEBHOOK_EVENTS,
            }

        return await self._make_request("POST", "/instance/create", payload)

    async def connect_instance(self, instance_name: str) -> dict[str, Any]:
        """Connect an instance; the response carries a fresh QR/pairing code."""
        return await self._make_request("GET", f"/instance/connect/{instance_name}")

    async def connection_state(self, instance_name: str) -> dict[str, Any]:
        """Get the live connection state of an instance."""
        return await self._make_request("GET", f"/instance/connectionState/{instance_name}")

    async def set_webhook(
        self,
        instance_name: str,
        webhook_url: str,
        events: list[str] | None = None,
    ) -> dict[str, Any]:
        """Point an instance's webhook at our receiver."""
        payload = {
            "webhook": {
                "enabled": True,
                "url": webhook_url,
                "byEvents": False,
                "base64": True,
                "events": events or DEFAULT_WEBHOOK_EVENTS,
            }
        }
        return await self._make_request("POST", f"/webhook/set/{instance_name}", payload)

    async def send_text(self, instance_name: str, number: str, text: str) -> dict[str, Any]:
        """Send a plain text message."""
        return await self._make_request(
            "POST",
            f"/message/sendText/{instance_name}",
            {"number": number, "text": text},
        )

    async def logout_instance(self, instance_name: str) -> dict[str, Any]:
        """Logout/disconnect an instance."""
        return await self._make_request("DELETE", f"/instance/logout/{instance_name}")

    async def delete_instance(self, instance_name: str) -> dict[str, Any]:
        """Delete an instance from the server."""
        return await self._make_request("DELETE", f"/instance/delete/{instance_name}")

    async def fetch_instances(self) -> list[dict[str, Any]]:
        """List all instances on the server."""
        response = await self._make_request("GET", "/instance/fetchInstances")
        instances = response.get("data", response.get("instance", []))
        return instances if isinstance(instances, list) else []
