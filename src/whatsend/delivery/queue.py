"""
Delivery Queue

Durable outbound job queue on whatsapp_delivery_jobs.

Jobs are claimed with FOR UPDATE SKIP LOCKED (most urgent priority first,
then oldest not_before), and every attempt outcome is appended to
whatsapp_delivery_records in the same transaction that moves the job on.
"""

import logging
import re
import secrets
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

from notifycore.db import session_scope
from whatsend.persistence.models import DeliveryJob, DeliveryRecord, JobStatus, MessageCategory, RecordStatus
from whatsend.persistence.repo import WhatSendRepository

logger = logging.getLogger(__name__)

DEFAULT_PRIORITY = 10


def normalize_phone(phone: str) -> str:
    """Digits only, as the protocol addresses numbers."""
    digits = re.sub(r"\D", "", phone or "")
    if not digits:
        raise ValueError(f"Invalid phone number: {phone!r}")
    return digits


def make_job_key(tenant_id: str, recipient: str) -> str:
    return f"{tenant_id}-{recipient}-{int(time.time() * 1000)}-{secrets.token_hex(4)}"


@dataclass(frozen=True)
class JobSnapshot:
    """Detached copy of a job row."""

    id: UUID
    job_key: str
    tenant_id: str
    recipient: str
    recipient_name: str | None
    body: str
    media_url: str | None
    category: str
    priority: int
    not_before: datetime
    status: str
    attempt_count: int
    max_attempts: int
    last_error: str | None
    order_id: str | None
    order_number: str | None
    sent_at: datetime | None

    @classmethod
    def from_model(cls, job: DeliveryJob) -> "JobSnapshot":
        return cls(
            id=job.id,
            job_key=job.job_key,
            tenant_id=job.tenant_id,
            recipient=job.recipient,
            recipient_name=job.recipient_name,
            body=job.body,
            media_url=job.media_url,
            category=job.category,
            priority=job.priority,
            not_before=job.not_before,
            status=job.status,
            attempt_count=job.attempt_count,
            max_attempts=job.max_attempts,
            last_error=job.last_error,
            order_id=job.order_id,
            order_number=job.order_number,
            sent_at=job.sent_at,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "job_key": self.job_key,
            "tenant_id": self.tenant_id,
            "recipient": self.recipient,
            "recipient_name": self.recipient_name,
            "body": self.body,
            "media_url": self.media_url,
            "category": self.category,
            "priority": self.priority,
            "not_before": self.not_before.isoformat() if self.not_before else None,
            "status": self.status,
            "attempt_count": self.attempt_count,
            "max_attempts": self.max_attempts,
            "last_error": self.last_error,
            "order_id": self.order_id,
            "order_number": self.order_number,
            "sent_at": self.sent_at.isoformat() if self.sent_at else None,
        }


def record_to_dict(record: DeliveryRecord) -> dict[str, Any]:
    return {
        "id": str(record.id),
        "job_id": str(record.job_id),
        "attempt": record.attempt,
        "recipient": record.recipient,
        "recipient_name": record.recipient_name,
        "body": record.body,
        "category": record.category,
        "order_id": record.order_id,
        "order_number": record.order_number,
        "status": record.status,
        "error_message": record.error_message,
        "provider_message_id": record.provider_message_id,
        "created_at": record.created_at.isoformat() if record.created_at else None,
    }


class DeliveryQueue:
    """
    Enqueue, claim and settle delivery jobs.

    Args:
        session_factory: sessionmaker to use (default: notifycore's)
        max_attempts: Attempts per job before it is failed for good
        backoff_base: Seconds; a failed attempt waits base * 2^attempt_count
    """

    def __init__(self, session_factory=None, max_attempts: int = 3, backoff_base: float = 5.0):
        self.session_factory = session_factory
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base

    def enqueue(
        self,
        tenant_id: str,
        recipient: str,
        body: str,
        category: str = MessageCategory.MANUAL.value,
        priority: int = DEFAULT_PRIORITY,
        not_before: datetime | None = None,
        media_url: str | None = None,
        recipient_name: str | None = None,
        order_id: str | None = None,
        order_number: str | None = None,
        max_attempts: int | None = None,
    ) -> UUID:
        """
        Add a job to the queue.

        Returns:
            ID of the new job
        """
        if not body or not body.strip():
            raise ValueError("Message body must not be empty")

        recipient = normalize_phone(recipient)

        with session_scope(self.session_factory) as db:
            job = WhatSendRepository(db).add_job(
                job_key=make_job_key(tenant_id, recipient),
                tenant_id=tenant_id,
                recipient=recipient,
                recipient_name=recipient_name,
                body=body,
                media_url=media_url or None,
                category=category,
                priority=priority,
                not_before=not_before or datetime.utcnow(),
                status=JobStatus.PENDING.value,
                attempt_count=0,
                max_attempts=max_attempts or self.max_attempts,
                order_id=order_id,
                order_number=order_number,
            )
            job_id = job.id

        logger.info(
            "Enqueued delivery job",
            extra={"tenant_id": tenant_id, "job_id": str(job_id), "category": category, "priority": priority},
        )
        return job_id

    def claim_next(self, worker_id: str, now: datetime | None = None) -> JobSnapshot | None:
        """Claim the most urgent due job, or None when nothing is due."""
        now = now or datetime.utcnow()
        with session_scope(self.session_factory) as db:
            job = WhatSendRepository(db).claim_due_job(now)
            if job is None:
                return None

            job.status = JobStatus.PROCESSING.value
            job.claimed_at = now
            job.claimed_by = worker_id
            db.flush()
            return JobSnapshot.from_model(job)

    def record_success(self, job_id: UUID, provider_message_id: str | None = None) -> JobSnapshot:
        """Append a sent record and close the job."""
        with session_scope(self.session_factory) as db:
            repo = WhatSendRepository(db)
            job = self._get_for_update(repo, job_id)

            job.attempt_count += 1
            repo.add_record(job, job.attempt_count, RecordStatus.SENT.value, provider_message_id=provider_message_id)
            job.status = JobStatus.SENT.value
            job.sent_at = datetime.utcnow()
            job.claimed_by = None
            db.flush()
            return JobSnapshot.from_model(job)

    def record_failure(self, job_id: UUID, error: str, now: datetime | None = None) -> JobSnapshot:
        """
        Append a failed record and either reschedule the job or fail it.

        The next attempt waits backoff_base * 2^attempt_count seconds, counted
        after this failure.
        """
        now = now or datetime.utcnow()
        with session_scope(self.session_factory) as db:
            repo = WhatSendRepository(db)
            job = self._get_for_update(repo, job_id)

            job.attempt_count += 1
            repo.add_record(job, job.attempt_count, RecordStatus.FAILED.value, error_message=error)
            job.last_error = error
            job.claimed_by = None

            if job.attempt_count < job.max_attempts:
                job.status = JobStatus.PENDING.value
                job.not_before = now + timedelta(seconds=self.backoff_base * (2 ** job.attempt_count))
            else:
                job.status = JobStatus.FAILED.value

            db.flush()
            return JobSnapshot.from_model(job)

    def mark_denied(self, job_id: UUID, reason: str) -> JobSnapshot:
        """Fail a job for good without retry (e.g. quota exhausted)."""
        with session_scope(self.session_factory) as db:
            repo = WhatSendRepository(db)
            job = self._get_for_update(repo, job_id)

            job.attempt_count += 1
            repo.add_record(job, job.attempt_count, RecordStatus.FAILED.value, error_message=reason)
            job.last_error = reason
            job.status = JobStatus.FAILED.value
            job.claimed_by = None
            db.flush()
            return JobSnapshot.from_model(job)

    def reclaim_stale(self, idle_seconds: float, now: datetime | None = None) -> int:
        """Return jobs abandoned in processing (crashed worker) to pending."""
        now = now or datetime.utcnow()
        with session_scope(self.session_factory) as db:
            jobs = WhatSendRepository(db).get_stale_jobs(now - timedelta(seconds=idle_seconds))
            for job in jobs:
                job.status = JobStatus.PENDING.value
                job.claimed_by = None
                job.claimed_at = None

        if jobs:
            logger.warning(f"Reclaimed {len(jobs)} stale delivery jobs")
        return len(jobs)

    def get_job(self, job_id: UUID) -> JobSnapshot | None:
        with session_scope(self.session_factory) as db:
            job = WhatSendRepository(db).get_job(job_id)
            return JobSnapshot.from_model(job) if job else None

    def list_jobs(self, tenant_id: str, status: str | None = None, limit: int = 50) -> list[JobSnapshot]:
        with session_scope(self.session_factory) as db:
            return [JobSnapshot.from_model(j) for j in WhatSendRepository(db).list_jobs(tenant_id, status, limit)]

    def count_by_status(self, tenant_id: str) -> dict[str, int]:
        with session_scope(self.session_factory) as db:
            return WhatSendRepository(db).count_jobs_by_status(tenant_id)

    def history(
        self,
        tenant_id: str,
        status: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        """Delivery records of a tenant, newest first."""
        with session_scope(self.session_factory) as db:
            records = WhatSendRepository(db).list_records(tenant_id, status=status, limit=limit, offset=offset)
            return [record_to_dict(r) for r in records]

    def _get_for_update(self, repo: WhatSendRepository, job_id: UUID) -> DeliveryJob:
        job = repo.get_job(job_id, for_update=True)
        if job is None:
            raise LookupError(f"Delivery job {job_id} not found")
        return job
