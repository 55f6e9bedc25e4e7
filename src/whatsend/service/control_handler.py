"""
Control Command Handler

Applies commands from the control stream to the worker's session manager:
1. CONNECT: request a connection
2. DISCONNECT: tear down, optionally unlinking the device
3. ERASE: unlink, then delete all tenant data
"""

import logging
from typing import Any

from whatsend.contracts.envelope import ControlEnvelope
from whatsend.contracts.event_types import ControlCommand
from whatsend.service.erasure import ErasureService
from whatsend.session.manager import SessionManager

logger = logging.getLogger(__name__)


class ControlHandler:
    """Handles control envelopes for one worker process."""

    def __init__(self, sessions: SessionManager, erasure: ErasureService):
        self.sessions = sessions
        self.erasure = erasure

    async def handle_envelope(self, envelope: ControlEnvelope) -> dict[str, Any]:
        """
        Apply one command.

        Returns:
            Result dict with "status" ("ok" or "ignored") and details
        """
        tenant_id = envelope.tenant_id
        extra = {"tenant_id": tenant_id, "command_id": str(envelope.command_id), "command": envelope.command}

        if envelope.command == ControlCommand.CONNECT.value:
            state = await self.sessions.request_connect(tenant_id)
            logger.info("Handled connect command", extra=extra)
            return {"status": "ok", "state": state.value}

        if envelope.command == ControlCommand.DISCONNECT.value:
            wipe = bool(envelope.payload.get("wipe_credentials", True))
            state = await self.sessions.request_disconnect(tenant_id, wipe_credentials=wipe)
            logger.info("Handled disconnect command", extra={**extra, "wipe_credentials": wipe})
            return {"status": "ok", "state": state.value}

        if envelope.command == ControlCommand.ERASE.value:
            await self.sessions.request_disconnect(tenant_id, wipe_credentials=True)
            counts = self.erasure.erase_tenant_data(tenant_id)
            logger.info("Handled erase command", extra=extra)
            return {"status": "ok", "deleted": counts}

        logger.warning(f"Ignoring unknown command: {envelope.command}", extra=extra)
        return {"status": "ignored"}
