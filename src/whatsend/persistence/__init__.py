"""
WhatSend Persistence

SQLAlchemy models and repository for WhatSend tables.
"""

from whatsend.persistence.models import (
    WhatSendBase,
    WhatsAppSession,
    DeliveryJob,
    DeliveryRecord,
    ConnectionLog,
    TenantPlan,
    ConnectionState,
    JobStatus,
    RecordStatus,
    MessageCategory,
)
from whatsend.persistence.repo import WhatSendRepository

__all__ = [
    "WhatSendBase",
    "WhatsAppSession",
    "DeliveryJob",
    "DeliveryRecord",
    "ConnectionLog",
    "TenantPlan",
    "WhatSendRepository",
    "ConnectionState",
    "JobStatus",
    "RecordStatus",
    "MessageCategory",
]
