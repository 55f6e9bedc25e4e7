"""
Connection Status Projector

Mirrors session lifecycle transitions into whatsapp_sessions (pollable by the
UI) and appends them to whatsapp_connection_logs.
"""

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.exc import SQLAlchemyError

from notifycore.db import session_scope
from whatsend.persistence.models import ConnectionState
from whatsend.persistence.repo import WhatSendRepository

logger = logging.getLogger(__name__)


@dataclass
class SessionStatus:
    """Read model of a tenant's connection status."""

    tenant_id: str
    connection_state: str = ConnectionState.DISCONNECTED.value
    pairing_code: str | None = None
    last_connected_at: datetime | None = None
    whatsapp_connected: bool = False
    whatsapp_number: str | None = None
    last_error: str | None = None

    def to_dict(self) -> dict:
        return {
            "tenant_id": self.tenant_id,
            "connection_state": self.connection_state,
            "pairing_code": self.pairing_code,
            "last_connected_at": self.last_connected_at.isoformat() if self.last_connected_at else None,
            "whatsapp_connected": self.whatsapp_connected,
            "whatsapp_number": self.whatsapp_number,
            "last_error": self.last_error,
        }


class StatusProjector:
    """Writes and reads the status projection."""

    def __init__(self, session_factory=None):
        self.session_factory = session_factory

    def project(
        self,
        tenant_id: str,
        state: ConnectionState,
        pairing_code: str | None = None,
        error: str | None = None,
        phone_number: str | None = None,
    ) -> None:
        """
        Record a transition. Never raises: failures are logged.

        pairing_code is kept only in awaiting_pairing, last_connected_at only
        moves on connected, and the previously-connected flag is cleared only
        by disconnected.
        """
        state = ConnectionState(state)
        try:
            with session_scope(self.session_factory) as db:
                repo = WhatSendRepository(db)
                record, _created = repo.get_or_create_session(tenant_id)

                record.connection_state = state.value
                record.pairing_code = pairing_code if state == ConnectionState.AWAITING_PAIRING else None

                if state == ConnectionState.CONNECTED:
                    record.last_connected_at = datetime.utcnow()
                    record.whatsapp_connected = True
                    record.last_error = None
                    if phone_number:
                        record.whatsapp_number = phone_number
                elif state == ConnectionState.DISCONNECTED:
                    record.whatsapp_connected = False

                if error:
                    record.last_error = error

                repo.add_connection_log(
                    tenant_id,
                    state.value,
                    {"error": error, "has_pairing_code": pairing_code is not None},
                )
        except SQLAlchemyError as e:
            logger.error(
                f"Failed to project connection status: {e}",
                extra={"tenant_id": tenant_id, "state": state.value},
                exc_info=True,
            )
            return

        logger.info(
            f"Connection status -> {state.value}",
            extra={"tenant_id": tenant_id, "state": state.value, "error": error},
        )

    def get_status(self, tenant_id: str) -> SessionStatus:
        """Point lookup; tenants without a record read as disconnected."""
        with session_scope(self.session_factory) as db:
            record = WhatSendRepository(db).get_session(tenant_id)
            if record is None:
                return SessionStatus(tenant_id=tenant_id)
            return SessionStatus(
                tenant_id=tenant_id,
                connection_state=record.connection_state,
                pairing_code=record.pairing_code,
                last_connected_at=record.last_connected_at,
                whatsapp_connected=record.whatsapp_connected,
                whatsapp_number=record.whatsapp_number,
                last_error=record.last_error,
            )
