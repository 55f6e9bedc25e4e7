"""
Erasure and Retention

Tenant erasure (app uninstall / shop redact), customer redaction, and
time-based cleanup of delivery history, connection logs and finished jobs.
"""

import logging
import re
from datetime import datetime, timedelta

from notifycore.db import session_scope
from whatsend.persistence.repo import WhatSendRepository

logger = logging.getLogger(__name__)

# Numbers are matched on their national part so "+55 11 99999-9999" and
# "5511999999999" hit the same rows
PHONE_MATCH_DIGITS = 10


class ErasureService:
    """
    Args:
        session_factory: sessionmaker to use (default: notifycore's)
        history_days: Keep delivery records this long
        connection_log_days: Keep connection logs this long
        queue_days: Keep sent/failed jobs this long
    """

    def __init__(
        self,
        session_factory=None,
        history_days: int = 30,
        connection_log_days: int = 7,
        queue_days: int = 1,
    ):
        self.session_factory = session_factory
        self.history_days = history_days
        self.connection_log_days = connection_log_days
        self.queue_days = queue_days

    def erase_tenant_data(self, tenant_id: str) -> dict[str, int]:
        """Delete everything stored for a tenant, credentials included."""
        with session_scope(self.session_factory) as db:
            counts = WhatSendRepository(db).delete_tenant_data(tenant_id)

        logger.info("Erased tenant data", extra={"tenant_id": tenant_id, **counts})
        return counts

    def redact_customer(
        self,
        tenant_id: str,
        phone: str | None = None,
        order_ids: list[str] | None = None,
    ) -> dict[str, int]:
        """Delete a customer's delivery records and jobs, by phone and/or order."""
        digits = re.sub(r"\D", "", phone or "")
        suffix = digits[-PHONE_MATCH_DIGITS:] if digits else None
        order_ids = [str(o) for o in order_ids or []]

        with session_scope(self.session_factory) as db:
            counts = WhatSendRepository(db).delete_customer_data(tenant_id, suffix, order_ids)

        logger.info("Redacted customer data", extra={"tenant_id": tenant_id, **counts})
        return counts

    def run_retention_cleanup(self, now: datetime | None = None) -> dict[str, int]:
        """Apply all retention periods. Meant to run daily."""
        now = now or datetime.utcnow()
        with session_scope(self.session_factory) as db:
            repo = WhatSendRepository(db)
            counts = {
                "history": repo.delete_records_before(now - timedelta(days=self.history_days)),
                "connection_logs": repo.delete_connection_logs_before(
                    now - timedelta(days=self.connection_log_days)
                ),
                "jobs": repo.delete_finished_jobs_before(now - timedelta(days=self.queue_days)),
            }

        logger.info("Retention cleanup done", extra=counts)
        return counts
