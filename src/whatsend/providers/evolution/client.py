"""
Evolution API WhatsApp Capability

Drives a tenant's session through an Evolution API gateway. The gateway runs
the protocol client; this side creates the instance, polls its connection
state and reports it as session events.
"""

import asyncio
import base64
import logging
import re
from typing import Any

import httpx

from whatsend.providers.base import (
    ConnectionClosed,
    ConnectionOpened,
    CredentialsChanged,
    PairingChallenge,
    ProviderError,
    ProviderResponse,
    SessionHandle,
    SessionListener,
    WhatsAppCapability,
)
from whatsend.providers.evolution.instance_manager import (
    LOGGED_OUT_STATUS_CODE,
    EvolutionInstanceManager,
)

logger = logging.getLogger(__name__)


def instance_name_for(tenant_id: str) -> str:
    """Gateway instance name of a tenant (store domains contain dots)."""
    return "whatsend_" + re.sub(r"[^a-zA-Z0-9_-]", "_", tenant_id)


class EvolutionSessionHandle(SessionHandle):
    """Session of one tenant on the gateway."""

    def __init__(
        self,
        manager: EvolutionInstanceManager,
        tenant_id: str,
        instance_name: str,
        credentials: dict[str, Any],
        listener: SessionListener,
        connect_timeout: float,
        poll_interval: float,
        keepalive_interval: float,
    ):
        self.manager = manager
        self.tenant_id = tenant_id
        self.instance_name = instance_name
        self.credentials = credentials
        self.listener = listener
        self.connect_timeout = connect_timeout
        self.poll_interval = poll_interval
        self.keepalive_interval = keepalive_interval
        self._task: asyncio.Task | None = None
        self._closed = False

    def start(self) -> None:
        self._task = asyncio.create_task(self._watch(), name=f"evolution-watch-{self.tenant_id}")

    async def _watch(self) -> None:
        """Poll the gateway and turn state changes into session events."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.connect_timeout
        last_code: str | None = None
        connected = False

        try:
            while not self._closed:
                state = await self.manager.get_connection_state(self.instance_name)

                if state == "open":
                    if not connected:
                        connected = True
                        instance = await self.manager.get_instance(self.instance_name)
                        self._mark_registered(instance)
                        self.listener(ConnectionOpened(phone_number=_owner_number(instance)))
                    await asyncio.sleep(self.keepalive_interval)
                    continue

                if connected:
                    instance = await self.manager.get_instance(self.instance_name)
                    status_code = instance.get("disconnectionReasonCode")
                    self.listener(ConnectionClosed(
                        reason=f"gateway state {state} ({status_code})",
                        logged_out=status_code == LOGGED_OUT_STATUS_CODE,
                    ))
                    return

                if loop.time() >= deadline:
                    self.listener(ConnectionClosed(reason="connect timeout"))
                    return

                response = await self.manager.connect_instance(self.instance_name)
                code = response.get("pairingCode") or response.get("code")
                if code and code != last_code:
                    last_code = code
                    self.listener(PairingChallenge(code=code))

                await asyncio.sleep(self.poll_interval)

        except ProviderError as e:
            logger.warning(
                f"Lost track of gateway instance: {e}",
                extra={"tenant_id": self.tenant_id, "instance": self.instance_name, "code": e.code},
            )
            if not self._closed:
                self.listener(ConnectionClosed(reason=str(e)))
        except Exception as e:
            logger.error(
                f"Gateway watcher crashed: {e!r}",
                extra={"tenant_id": self.tenant_id, "instance": self.instance_name},
                exc_info=True,
            )
            if not self._closed:
                self.listener(ConnectionClosed(reason=f"watcher error: {e!r}"))

    def _mark_registered(self, instance: dict[str, Any]) -> None:
        creds = self.credentials.setdefault("creds", {})
        if creds.get("registered"):
            return
        creds["registered"] = True
        owner = instance.get("ownerJid") or instance.get("owner")
        if owner:
            creds["me"] = {"id": owner}
        self.listener(CredentialsChanged(credentials=self.credentials))

    async def send_text(self, to: str, text: str) -> ProviderResponse:
        """Send a text message via Evolution API."""
        response = await self.manager.send_text(self.instance_name, to, text)
        return self._to_response(response, to)

    async def send_media(
        self,
        to: str,
        data: bytes,
        caption: str | None = None,
        mimetype: str | None = None,
    ) -> ProviderResponse:
        """Send a media message via Evolution API."""
        response = await self.manager.send_media(
            self.instance_name,
            to,
            base64.b64encode(data).decode("ascii"),
            caption=caption,
            mimetype=mimetype,
        )
        return self._to_response(response, to)

    def _to_response(self, response: dict[str, Any], to: str) -> ProviderResponse:
        message_id = response.get("key", {}).get("id") or response.get("id")

        logger.info(
            "Sent message via Evolution API",
            extra={"to": to, "message_id": message_id, "instance": self.instance_name},
        )

        return ProviderResponse(success=True, message_id=message_id, raw_response=response)

    async def logout(self) -> None:
        await self.manager.logout_instance(self.instance_name)

    async def close(self) -> None:
        self._closed = True
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass


class EvolutionWhatsAppCapability(WhatsAppCapability):
    """
    Evolution API capability.

    The stored credentials hold the gateway instance name and token. The
    instance is created the first time a tenant connects.
    """

    def __init__(
        self,
        api_url: str,
        api_key: str,
        connect_timeout: float = 60.0,
        keepalive_interval: float = 30.0,
        poll_interval: float = 2.0,
        http_timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.manager = EvolutionInstanceManager(api_url, api_key, timeout=http_timeout, transport=transport)
        self.connect_timeout = connect_timeout
        self.keepalive_interval = keepalive_interval
        self.poll_interval = poll_interval

    async def open(
        self,
        tenant_id: str,
        credentials: dict[str, Any],
        listener: SessionListener,
    ) -> EvolutionSessionHandle:
        creds = credentials.setdefault("creds", {})
        instance_name = creds.get("instance_name")

        if not instance_name:
            instance_name = instance_name_for(tenant_id)
            try:
                response = await self.manager.create_instance(instance_name)
            except ProviderError as e:
                # 403 = name taken: the instance survived a lost credential blob
                if e.code != "403":
                    raise
                response = {}
            creds["instance_name"] = instance_name
            creds["instance_token"] = response.get("hash") if isinstance(response.get("hash"), str) else None
            listener(CredentialsChanged(credentials=credentials))

        handle = EvolutionSessionHandle(
            self.manager,
            tenant_id,
            instance_name,
            credentials,
            listener,
            connect_timeout=self.connect_timeout,
            poll_interval=self.poll_interval,
            keepalive_interval=self.keepalive_interval,
        )
        handle.start()

        logger.info(
            "Opened Evolution session",
            extra={"tenant_id": tenant_id, "instance": instance_name},
        )
        return handle

    async def aclose(self) -> None:
        await self.manager.close()


def _owner_number(instance: dict[str, Any]) -> str | None:
    owner = instance.get("ownerJid") or instance.get("owner")
    return owner.split("@")[0].split(":")[0] if owner else None
