"""
Evolution API Instance Manager

REST calls against an Evolution API (Baileys-based) gateway: instance
lifecycle, connection state and message sending.

Documentation: https://doc.evolution-api.com/
"""

import logging
from typing import Any

import httpx

from whatsend.providers.base import ProviderError

logger = logging.getLogger(__name__)

# Baileys DisconnectReason.loggedOut
LOGGED_OUT_STATUS_CODE = 401


class EvolutionInstanceManager:
    """
    Thin async client for the Evolution API.

    Each tenant has one instance identified by instance_name.
    """

    def __init__(
        self,
        api_url: str,
        api_key: str,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """
        Initialize instance manager.

        Args:
            api_url: Base URL of Evolution API (e.g., "https://evolution-api.example.com")
            api_key: API key for authentication
            timeout: HTTP request timeout
            transport: Custom httpx transport (tests)
        """
        self.api_url = api_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.transport = transport
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
                transport=self.transport,
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
    ) -> Any:
        """Make an authenticated API request."""
        client = await self._get_client()
        url = f"{self.api_url}{endpoint}"

        try:
            response = await client.request(method.upper(), url, json=json_data)
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
            response_data = {"message": response.text}

        if response.status_code >= 400:
            details = response_data if isinstance(response_data, dict) else {"response": response_data}
            error = details.get("error") or details.get("message", "Unknown error")
            raise ProviderError(
                message=str(error),
                code=str(response.status_code),
                details=details,
                retryable=response.status_code >= 500,
            )

        return response_data

    async def create_instance(
        self,
        instance_name: str,
        integration: str = "WHATSAPP-BAILEYS",
    ) -> dict[str, Any]:
        """
        Create a new Evolution API instance.

        Returns:
            Creation response; "hash" carries the instance token
        """
        payload = {
            "instanceName": instance_name,
            "qrcode": True,
            "integration": integration,
        }
        return await self._make_request("POST", "/instance/create", payload)

    async def connect_instance(self, instance_name: str) -> dict[str, Any]:
        """
        Start connecting an instance.

        Returns:
            {"pairingCode": ..., "code": ..., "count": ...} while unpaired
        """
        return await self._make_request("GET", f"/instance/connect/{instance_name}")

    async def get_connection_state(self, instance_name: str) -> str:
        """
        Current connection state of an instance.

        Returns:
            "open", "connecting" or "close"
        """
        response = await self._make_request("GET", f"/instance/connectionState/{instance_name}")
        instance = response.get("instance", response)
        return instance.get("state", "close")

    async def get_instance(self, instance_name: str) -> dict[str, Any]:
        """Instance details (owner number, disconnection reason, ...)."""
        response = await self._make_request(
            "GET", f"/instance/fetchInstances?instanceName={instance_name}"
        )
        instances = response.get("instance", []) if isinstance(response, dict) else response
        if isinstance(instances, dict):
            instances = [instances]

        for instance in instances or []:
            name = instance.get("name") or instance.get("instanceName")
            if name == instance_name:
                return instance
        return {}

    async def logout_instance(self, instance_name: str) -> None:
        """Unlink the device from the phone."""
        await self._make_request("DELETE", f"/instance/logout/{instance_name}")

    async def send_text(self, instance_name: str, to: str, text: str) -> dict[str, Any]:
        """Send a text message."""
        payload = {"number": to, "text": text}
        return await self._make_request("POST", f"/message/sendText/{instance_name}", payload)

    async def send_media(
        self,
        instance_name: str,
        to: str,
        media_base64: str,
        caption: str | None = None,
        mimetype: str | None = None,
        mediatype: str = "image",
    ) -> dict[str, Any]:
        """Send a media message from base64 content."""
        payload: dict[str, Any] = {
            "number": to,
            "mediatype": mediatype,
            "media": media_base64,
        }
        if mimetype:
            payload["mimetype"] = mimetype
        if caption:
            payload["caption"] = caption
        return await self._make_request("POST", f"/message/sendMedia/{instance_name}", payload)
