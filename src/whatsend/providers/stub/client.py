"""
Stub WhatsApp Capability

Development capability that logs all operations without talking to WhatsApp.
Useful for local development and testing.
"""

import asyncio
import logging
from datetime import datetime
from typing import Any
from uuid import uuid4

from whatsend.credentials.codec import is_registered
from whatsend.providers.base import (
    ConnectionClosed,
    ConnectionOpened,
    CredentialsChanged,
    PairingChallenge,
    ProviderError,
    ProviderResponse,
    SessionEvent,
    SessionHandle,
    SessionListener,
    WhatsAppCapability,
)

logger = logging.getLogger(__name__)


class StubSessionHandle(SessionHandle):
    """In-memory session. Sends are recorded on the owning capability."""

    def __init__(
        self,
        capability: "StubWhatsAppCapability",
        tenant_id: str,
        credentials: dict[str, Any],
        listener: SessionListener,
    ):
        self.capability = capability
        self.tenant_id = tenant_id
        self.credentials = credentials
        self.listener = listener
        self.closed = False
        self.logged_out = False

    def emit(self, event: SessionEvent) -> None:
        if not self.closed:
            self.listener(event)

    async def send_text(self, to: str, text: str) -> ProviderResponse:
        """Log and return success for text message."""
        return self._record({"type": "text", "to": to, "text": text})

    async def send_media(
        self,
        to: str,
        data: bytes,
        caption: str | None = None,
        mimetype: str | None = None,
    ) -> ProviderResponse:
        """Log and return success for media message."""
        return self._record({
            "type": "media",
            "to": to,
            "caption": caption,
            "mimetype": mimetype,
            "size": len(data),
        })

    async def logout(self) -> None:
        logger.info("[STUB] Logging out session", extra={"tenant_id": self.tenant_id})
        self.logged_out = True

    async def close(self) -> None:
        logger.debug("[STUB] Closing session", extra={"tenant_id": self.tenant_id})
        self.closed = True

    def _record(self, message_data: dict[str, Any]) -> ProviderResponse:
        if self.closed:
            raise ProviderError("Session is closed", code="SESSION_CLOSED", retryable=True)

        if self.capability.fail_sends:
            raise ProviderError(
                "Simulated failure for testing",
                code="STUB_SIMULATED_FAILURE",
                retryable=True,
            )

        message_id = f"stub_msg_{uuid4().hex[:16]}"
        message_data.update({
            "tenant_id": self.tenant_id,
            "message_id": message_id,
            "timestamp": datetime.utcnow().isoformat(),
        })
        self.capability.sent_messages.append(message_data)

        logger.info(
            f"[STUB] Sending {message_data['type']} message",
            extra={"tenant_id": self.tenant_id, "to": message_data["to"], "message_id": message_id},
        )

        return ProviderResponse(
            success=True,
            message_id=message_id,
            raw_response={"stub": True, "message_id": message_id},
        )


class StubWhatsAppCapability(WhatsAppCapability):
    """
    Stub capability for development and testing.

    - Paired credentials connect right away
    - Unpaired credentials get a pairing code; call simulate_scan() to pair
    - Records sent messages
    - Can be configured to fail opens or sends
    """

    def __init__(self, auto_pair: bool = False):
        self.auto_pair = auto_pair
        self.fail_open = False
        self.fail_sends = False
        self.sent_messages: list[dict[str, Any]] = []
        self.handles: dict[str, list[StubSessionHandle]] = {}

    async def open(
        self,
        tenant_id: str,
        credentials: dict[str, Any],
        listener: SessionListener,
    ) -> StubSessionHandle:
        if self.fail_open:
            raise ProviderError("Simulated open failure", code="STUB_OPEN_FAILED", retryable=True)

        handle = StubSessionHandle(self, tenant_id, credentials, listener)
        self.handles.setdefault(tenant_id, []).append(handle)

        loop = asyncio.get_running_loop()
        if is_registered(credentials):
            loop.call_soon(handle.emit, ConnectionOpened(phone_number=_phone_of(credentials)))
        else:
            loop.call_soon(handle.emit, PairingChallenge(code=_pairing_code()))
            if self.auto_pair:
                loop.call_soon(self.simulate_scan, tenant_id)

        logger.info(
            "[STUB] Opened session",
            extra={"tenant_id": tenant_id, "registered": is_registered(credentials)},
        )
        return handle

    def current_handle(self, tenant_id: str) -> StubSessionHandle:
        handles = self.handles.get(tenant_id)
        if not handles:
            raise KeyError(f"No session opened for {tenant_id}")
        return handles[-1]

    def open_count(self, tenant_id: str) -> int:
        return len(self.handles.get(tenant_id, []))

    def simulate_scan(self, tenant_id: str, phone_number: str = "5511999999999") -> None:
        """The user scanned the pairing code: rotate credentials, then connect."""
        handle = self.current_handle(tenant_id)
        creds = dict(handle.credentials.get("creds", {}))
        creds["registered"] = True
        creds["me"] = {"id": f"{phone_number}:1@s.whatsapp.net"}
        handle.credentials = {"creds": creds, "keys": handle.credentials.get("keys", {})}
        handle.emit(CredentialsChanged(credentials=handle.credentials))
        handle.emit(ConnectionOpened(phone_number=phone_number))

    def simulate_pairing_code(self, tenant_id: str, code: str | None = None) -> None:
        """Emit a new pairing code (codes expire and get replaced)."""
        self.current_handle(tenant_id).emit(PairingChallenge(code=code or _pairing_code()))

    def simulate_close(self, tenant_id: str, logged_out: bool = False, reason: str = "") -> None:
        """Drop the connection, optionally as a remote logout."""
        reason = reason or ("logged_out" if logged_out else "connection_lost")
        self.current_handle(tenant_id).emit(ConnectionClosed(reason=reason, logged_out=logged_out))

    def get_sent_messages(self) -> list[dict[str, Any]]:
        """Get all sent messages (for testing)."""
        return self.sent_messages.copy()

    def clear_sent_messages(self) -> None:
        """Clear sent messages history (for testing)."""
        self.sent_messages.clear()


def _pairing_code() -> str:
    return f"stub-pair-{uuid4().hex[:8]}"


def _phone_of(credentials: dict[str, Any]) -> str | None:
    me = credentials.get("creds", {}).get("me") or {}
    jid = me.get("id") if isinstance(me, dict) else None
    return jid.split(":")[0].split("@")[0] if jid else None
