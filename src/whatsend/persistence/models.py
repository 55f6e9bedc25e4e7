"""
WhatSend Database Models

Tables owned by the WhatSend engine.

Tables:
- whatsapp_sessions: One protocol session record per tenant (credentials + status)
- whatsapp_delivery_jobs: Durable outbound queue
- whatsapp_delivery_records: Append-only outcome of every send attempt
- whatsapp_connection_logs: Append-only log of connection status transitions
- whatsapp_tenant_plans: Billing plan and usage counter per tenant
"""

from datetime import datetime
from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import declarative_base

WhatSendBase = declarative_base()


class ConnectionState(str, Enum):
    """Lifecycle state of a tenant's WhatsApp session."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    AWAITING_PAIRING = "awaiting_pairing"
    CONNECTED = "connected"
    ERROR = "error"

    def __str__(self) -> str:
        return self.value


class JobStatus(str, Enum):
    """Status of a delivery job."""

    PENDING = "pending"
    PROCESSING = "processing"
    SENT = "sent"
    FAILED = "failed"


class RecordStatus(str, Enum):
    """Outcome of a single send attempt."""

    SENT = "sent"
    FAILED = "failed"


class MessageCategory(str, Enum):
    """What kind of notification a job carries."""

    ORDER_CONFIRMATION = "order_confirmation"
    FULFILLMENT = "fulfillment"
    CANCELLATION = "cancellation"
    ABANDONED_CHECKOUT = "abandoned_checkout"
    CAMPAIGN = "campaign"
    MANUAL = "manual"


class WhatSendModelMixin:
    """Common fields for all WhatSend models."""

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    tenant_id = Column(String(255), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=datetime.utcnow)


class WhatsAppSession(WhatSendBase, WhatSendModelMixin):
    """
    Protocol session record of a tenant.

    credential_blob is the only thing needed to resume a session without
    re-pairing. The status columns are a projection of the session lifecycle.
    """

    __tablename__ = "whatsapp_sessions"

    credential_blob = Column(Text, nullable=True)
    connection_state = Column(String(20), nullable=False, default=ConnectionState.DISCONNECTED.value)
    pairing_code = Column(Text, nullable=True)  # Only while awaiting_pairing
    last_connected_at = Column(DateTime(timezone=True), nullable=True)
    whatsapp_connected = Column(Boolean, nullable=False, default=False)  # Previously connected
    whatsapp_number = Column(String(32), nullable=True)
    last_error = Column(Text, nullable=True)
    updated_at = Column(
        DateTime(timezone=True), nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    __table_args__ = (
        UniqueConstraint("tenant_id", name="uq_whatsapp_sessions_tenant"),
        Index("idx_whatsapp_sessions_connected", "whatsapp_connected"),
    )


class DeliveryJob(WhatSendBase, WhatSendModelMixin):
    """
    One outbound message and its attempt series.

    Claimed by workers with FOR UPDATE SKIP LOCKED, lower priority first.
    """

    __tablename__ = "whatsapp_delivery_jobs"

    job_key = Column(String(255), nullable=False)
    recipient = Column(String(32), nullable=False)
    recipient_name = Column(String(255), nullable=True)
    body = Column(Text, nullable=False)
    media_url = Column(Text, nullable=True)
    category = Column(String(50), nullable=False, default=MessageCategory.MANUAL.value)
    priority = Column(Integer, nullable=False, default=10)
    not_before = Column(DateTime(timezone=True), nullable=False, default=datetime.utcnow)
    status = Column(String(20), nullable=False, default=JobStatus.PENDING.value)
    attempt_count = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    last_error = Column(Text, nullable=True)
    claimed_at = Column(DateTime(timezone=True), nullable=True)
    claimed_by = Column(String(255), nullable=True)
    order_id = Column(String(100), nullable=True)
    order_number = Column(String(100), nullable=True)
    sent_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(
        DateTime(timezone=True), nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    __table_args__ = (
        UniqueConstraint("job_key", name="uq_whatsapp_delivery_jobs_key"),
        Index("idx_whatsapp_delivery_jobs_claim", "status", "priority", "not_before"),
        Index("idx_whatsapp_delivery_jobs_tenant_status", "tenant_id", "status"),
    )


class DeliveryRecord(WhatSendBase, WhatSendModelMixin):
    """
    Append-only outcome of one send attempt.

    (job_id, attempt) is unique so an attempt is recorded exactly once.
    """

    __tablename__ = "whatsapp_delivery_records"

    job_id = Column(Uuid(as_uuid=True), nullable=False, index=True)
    attempt = Column(Integer, nullable=False)
    recipient = Column(String(32), nullable=False)
    recipient_name = Column(String(255), nullable=True)
    body = Column(Text, nullable=False)
    category = Column(String(50), nullable=False)
    order_id = Column(String(100), nullable=True)
    order_number = Column(String(100), nullable=True)
    status = Column(String(20), nullable=False)
    error_message = Column(Text, nullable=True)
    provider_message_id = Column(String(255), nullable=True)

    __table_args__ = (
        UniqueConstraint("job_id", "attempt", name="uq_whatsapp_delivery_records_attempt"),
        Index("idx_whatsapp_delivery_records_tenant_created", "tenant_id", "created_at"),
    )


class ConnectionLog(WhatSendBase, WhatSendModelMixin):
    """Append-only log of connection status transitions."""

    __tablename__ = "whatsapp_connection_logs"

    event = Column(String(50), nullable=False)
    details = Column(JSON, nullable=False, default=dict)

    __table_args__ = (
        Index("idx_whatsapp_connection_logs_tenant_created", "tenant_id", "created_at"),
    )


class TenantPlan(WhatSendBase, WhatSendModelMixin):
    """Billing plan and message usage of a tenant."""

    __tablename__ = "whatsapp_tenant_plans"

    plan_type = Column(String(20), nullable=False, default="free")
    messages_sent = Column(Integer, nullable=False, default=0)
    billing_cycle_start = Column(DateTime(timezone=True), nullable=False, default=datetime.utcnow)
    subscription_id = Column(String(255), nullable=True)
    updated_at = Column(
        DateTime(timezone=True), nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    __table_args__ = (
        UniqueConstraint("tenant_id", name="uq_whatsapp_tenant_plans_tenant"),
    )
