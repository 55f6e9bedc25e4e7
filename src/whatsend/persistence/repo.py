"""
WhatSend Repository

Repository pattern for WhatSend database operations.
Provides CRUD operations and common queries for WhatSend tables.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import or_
from sqlalchemy.orm import Session

from whatsend.persistence.models import (
    ConnectionLog,
    DeliveryJob,
    DeliveryRecord,
    JobStatus,
    TenantPlan,
    WhatsAppSession,
)


class WhatSendRepository:
    """Repository for WhatSend database operations."""

    def __init__(self, db: Session):
        self.db = db

    # =========================================================================
    # Sessions
    # =========================================================================

    def get_session(self, tenant_id: str, for_update: bool = False) -> WhatsAppSession | None:
        """Get the session record of a tenant, optionally locking the row."""
        query = self.db.query(WhatsAppSession).filter(WhatsAppSession.tenant_id == tenant_id)
        if for_update:
            query = query.with_for_update()
        return query.first()

    def get_or_create_session(
        self,
        tenant_id: str,
        for_update: bool = False,
    ) -> tuple[WhatsAppSession, bool]:
        """
        Get existing session record or create a new one.

        Returns:
            Tuple of (session, created) where created is True if new.
        """
        record = self.get_session(tenant_id, for_update=for_update)
        if record:
            return record, False

        record = WhatsAppSession(tenant_id=tenant_id)
        self.db.add(record)
        self.db.flush()
        return record, True

    def list_reconnectable_sessions(self) -> list[WhatsAppSession]:
        """Sessions that were connected before and still hold credentials."""
        return (
            self.db.query(WhatsAppSession)
            .filter(
                WhatsAppSession.whatsapp_connected == True,  # noqa: E712
                WhatsAppSession.credential_blob.isnot(None),
                WhatsAppSession.credential_blob != "",
            )
            .order_by(WhatsAppSession.last_connected_at.asc())
            .all()
        )

    # =========================================================================
    # Delivery jobs
    # =========================================================================

    def add_job(self, **fields: Any) -> DeliveryJob:
        """Create a new delivery job."""
        job = DeliveryJob(**fields)
        self.db.add(job)
        self.db.flush()
        return job

    def get_job(self, job_id: UUID, for_update: bool = False) -> DeliveryJob | None:
        """Get a delivery job by ID."""
        query = self.db.query(DeliveryJob).filter(DeliveryJob.id == job_id)
        if for_update:
            query = query.with_for_update()
        return query.first()

    def claim_due_job(self, now: datetime) -> DeliveryJob | None:
        """
        Lock the most urgent due job.

        Uses FOR UPDATE SKIP LOCKED so concurrent claimers never get the same row.
        """
        return (
            self.db.query(DeliveryJob)
            .filter(
                DeliveryJob.status == JobStatus.PENDING.value,
                DeliveryJob.not_before <= now,
            )
            .order_by(DeliveryJob.priority.asc(), DeliveryJob.not_before.asc())
            .with_for_update(skip_locked=True)
            .first()
        )

    def get_stale_jobs(self, claimed_before: datetime, limit: int = 100) -> list[DeliveryJob]:
        """Jobs stuck in processing since before the cutoff."""
        return (
            self.db.query(DeliveryJob)
            .filter(
                DeliveryJob.status == JobStatus.PROCESSING.value,
                DeliveryJob.claimed_at < claimed_before,
            )
            .limit(limit)
            .with_for_update(skip_locked=True)
            .all()
        )

    def list_jobs(
        self,
        tenant_id: str,
        status: str | None = None,
        limit: int = 50,
    ) -> list[DeliveryJob]:
        """List jobs of a tenant, newest first."""
        query = self.db.query(DeliveryJob).filter(DeliveryJob.tenant_id == tenant_id)
        if status:
            query = query.filter(DeliveryJob.status == status)
        return query.order_by(DeliveryJob.created_at.desc()).limit(limit).all()

    def count_jobs_by_status(self, tenant_id: str) -> dict[str, int]:
        """Count jobs per status for a tenant."""
        counts: dict[str, int] = {}
        for job in self.db.query(DeliveryJob.status).filter(DeliveryJob.tenant_id == tenant_id):
            counts[job.status] = counts.get(job.status, 0) + 1
        return counts

    # =========================================================================
    # Delivery records
    # =========================================================================

    def add_record(self, job: DeliveryJob, attempt: int, status: str, **fields: Any) -> DeliveryRecord:
        """Append the outcome of one attempt of a job."""
        record = DeliveryRecord(
            tenant_id=job.tenant_id,
            job_id=job.id,
            attempt=attempt,
            recipient=job.recipient,
            recipient_name=job.recipient_name,
            body=job.body,
            category=job.category,
            order_id=job.order_id,
            order_number=job.order_number,
            status=status,
            **fields,
        )
        self.db.add(record)
        self.db.flush()
        return record

    def list_records(
        self,
        tenant_id: str,
        status: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[DeliveryRecord]:
        """Delivery history of a tenant, newest first."""
        query = self.db.query(DeliveryRecord).filter(DeliveryRecord.tenant_id == tenant_id)
        if status:
            query = query.filter(DeliveryRecord.status == status)
        return (
            query.order_by(DeliveryRecord.created_at.desc(), DeliveryRecord.attempt.desc())
            .offset(offset)
            .limit(limit)
            .all()
        )

    def get_records_for_job(self, job_id: UUID) -> list[DeliveryRecord]:
        """All attempt records of a job, in attempt order."""
        return (
            self.db.query(DeliveryRecord)
            .filter(DeliveryRecord.job_id == job_id)
            .order_by(DeliveryRecord.attempt.asc())
            .all()
        )

    # =========================================================================
    # Connection logs
    # =========================================================================

    def add_connection_log(
        self,
        tenant_id: str,
        event: str,
        details: dict[str, Any] | None = None,
    ) -> ConnectionLog:
        """Append a connection log entry."""
        entry = ConnectionLog(tenant_id=tenant_id, event=event, details=details or {})
        self.db.add(entry)
        return entry

    def list_connection_logs(self, tenant_id: str, limit: int = 50) -> list[ConnectionLog]:
        """Connection log of a tenant, newest first."""
        return (
            self.db.query(ConnectionLog)
            .filter(ConnectionLog.tenant_id == tenant_id)
            .order_by(ConnectionLog.created_at.desc())
            .limit(limit)
            .all()
        )

    # =========================================================================
    # Plans
    # =========================================================================

    def get_plan(self, tenant_id: str, for_update: bool = False) -> TenantPlan | None:
        """Get the billing plan of a tenant."""
        query = self.db.query(TenantPlan).filter(TenantPlan.tenant_id == tenant_id)
        if for_update:
            query = query.with_for_update()
        return query.first()

    def get_or_create_plan(self, tenant_id: str, for_update: bool = False) -> tuple[TenantPlan, bool]:
        """Get existing plan or create a free one."""
        plan = self.get_plan(tenant_id, for_update=for_update)
        if plan:
            return plan, False

        plan = TenantPlan(tenant_id=tenant_id, plan_type="free", messages_sent=0)
        self.db.add(plan)
        self.db.flush()
        return plan, True

    # =========================================================================
    # Deletion
    # =========================================================================

    def delete_tenant_data(self, tenant_id: str) -> dict[str, int]:
        """Delete every row owned by a tenant. Returns deleted counts per table."""
        counts = {}
        for name, model in (
            ("records", DeliveryRecord),
            ("jobs", DeliveryJob),
            ("connection_logs", ConnectionLog),
            ("plans", TenantPlan),
            ("sessions", WhatsAppSession),
        ):
            counts[name] = (
                self.db.query(model)
                .filter(model.tenant_id == tenant_id)
                .delete(synchronize_session=False)
            )
        return counts

    def delete_customer_data(
        self,
        tenant_id: str,
        phone_suffix: str | None,
        order_ids: list[str],
    ) -> dict[str, int]:
        """Delete records and jobs of one customer, matched by phone or order."""
        counts = {}
        for name, model in (("records", DeliveryRecord), ("jobs", DeliveryJob)):
            conditions = []
            if phone_suffix:
                conditions.append(model.recipient.contains(phone_suffix))
            if order_ids:
                conditions.append(model.order_id.in_(order_ids))
            if not conditions:
                counts[name] = 0
                continue
            counts[name] = (
                self.db.query(model)
                .filter(model.tenant_id == tenant_id, or_(*conditions))
                .delete(synchronize_session=False)
            )
        return counts

    def delete_records_before(self, cutoff: datetime) -> int:
        """Delete delivery records older than the cutoff."""
        return (
            self.db.query(DeliveryRecord)
            .filter(DeliveryRecord.created_at < cutoff)
            .delete(synchronize_session=False)
        )

    def delete_connection_logs_before(self, cutoff: datetime) -> int:
        """Delete connection logs older than the cutoff."""
        return (
            self.db.query(ConnectionLog)
            .filter(ConnectionLog.created_at < cutoff)
            .delete(synchronize_session=False)
        )

    def delete_finished_jobs_before(self, cutoff: datetime) -> int:
        """Delete sent/failed jobs last touched before the cutoff."""
        return (
            self.db.query(DeliveryJob)
            .filter(
                DeliveryJob.status.in_([JobStatus.SENT.value, JobStatus.FAILED.value]),
                DeliveryJob.updated_at < cutoff,
            )
            .delete(synchronize_session=False)
        )
