"""
Startup Reconciliation

Re-opens the sessions of tenants that were connected when the previous
process stopped. Tenants are handled one at a time with a pause in between
so a restart does not hit the gateway with a burst of connects.
"""

import asyncio
import logging

from notifycore.db import session_scope
from whatsend.persistence.models import ConnectionState
from whatsend.persistence.repo import WhatSendRepository
from whatsend.session.manager import SessionManager
from whatsend.session.status import StatusProjector

logger = logging.getLogger(__name__)


class Reconciler:
    """
    Args:
        sessions: Session manager to drive
        projector: Used to mark tenants whose reconnect blew up
        session_factory: sessionmaker to use (default: notifycore's)
        delay: Seconds between two tenants
    """

    def __init__(
        self,
        sessions: SessionManager,
        projector: StatusProjector,
        session_factory=None,
        delay: float = 3.0,
    ):
        self.sessions = sessions
        self.projector = projector
        self.session_factory = session_factory
        self.delay = delay

    def find_tenants(self) -> list[str]:
        """Tenants flagged as previously connected that still hold credentials."""
        with session_scope(self.session_factory) as db:
            return [s.tenant_id for s in WhatSendRepository(db).list_reconnectable_sessions()]

    async def run(self) -> dict[str, int]:
        """
        Reconnect every eligible tenant sequentially.

        Returns:
            {"attempted": n, "failed": n}
        """
        tenants = self.find_tenants()
        logger.info(f"Reconciling {len(tenants)} previously connected sessions")

        attempted = 0
        failed = 0

        for index, tenant_id in enumerate(tenants):
            if index:
                await asyncio.sleep(self.delay)

            attempted += 1
            try:
                state = await self.sessions.request_connect(tenant_id)
            except Exception as e:
                failed += 1
                logger.error(
                    f"Failed to reconnect session: {e}",
                    extra={"tenant_id": tenant_id},
                    exc_info=True,
                )
                self.projector.project(tenant_id, ConnectionState.ERROR, error=f"Reconnect failed: {e}")
                continue

            if state == ConnectionState.ERROR:
                failed += 1
                logger.warning("Reconnect did not start", extra={"tenant_id": tenant_id})
            else:
                logger.info(f"Reconnect started ({state.value})", extra={"tenant_id": tenant_id})

        logger.info(f"Reconciliation done (attempted={attempted}, failed={failed})")
        return {"attempted": attempted, "failed": failed}
