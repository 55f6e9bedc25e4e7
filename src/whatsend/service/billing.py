"""
Billing Service

Plan limits, quota checks and message usage counting per tenant.
Subscription state itself lives in the app store; it is synced in through
sync_subscription() / set_plan().
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from notifycore.db import session_scope
from whatsend.persistence.repo import WhatSendRepository

logger = logging.getLogger(__name__)


class PlanType(str, Enum):
    FREE = "free"
    STARTER = "starter"
    GROWTH = "growth"
    PRO = "pro"
    LIFETIME = "lifetime"


# Messages per billing cycle; None = unlimited
PLAN_LIMITS: dict[str, int | None] = {
    PlanType.FREE.value: 0,
    PlanType.STARTER.value: 1500,
    PlanType.GROWTH.value: 3000,
    PlanType.PRO.value: None,
    PlanType.LIFETIME.value: None,
}


class QuotaExceededError(Exception):
    """The tenant may not send (more) messages."""

    def __init__(self, tenant_id: str, reason: str):
        super().__init__(reason)
        self.tenant_id = tenant_id
        self.reason = reason


@dataclass(frozen=True)
class QuotaDecision:
    allowed: bool
    reason: str | None = None


@dataclass(frozen=True)
class BillingStatus:
    tenant_id: str
    plan_type: str
    messages_sent: int
    messages_limit: int | None
    messages_remaining: int | None
    has_active_subscription: bool
    can_send_messages: bool
    subscription_id: str | None = None
    billing_cycle_start: datetime | None = None

    def to_dict(self) -> dict:
        return {
            "tenant_id": self.tenant_id,
            "plan_type": self.plan_type,
            "messages_sent": self.messages_sent,
            "messages_limit": self.messages_limit,
            "messages_remaining": self.messages_remaining,
            "has_active_subscription": self.has_active_subscription,
            "can_send_messages": self.can_send_messages,
            "subscription_id": self.subscription_id,
            "billing_cycle_start": self.billing_cycle_start.isoformat() if self.billing_cycle_start else None,
        }


def plan_from_subscription_name(name: str | None) -> PlanType:
    """Map an app-store subscription name to a plan."""
    name = (name or "").lower()
    if "pro" in name:
        return PlanType.PRO
    if "growth" in name:
        return PlanType.GROWTH
    if "starter" in name:
        return PlanType.STARTER
    return PlanType.FREE


class BillingService:
    """Reads and updates whatsapp_tenant_plans."""

    def __init__(self, session_factory=None):
        self.session_factory = session_factory

    def get_status(self, tenant_id: str) -> BillingStatus:
        with session_scope(self.session_factory) as db:
            plan = WhatSendRepository(db).get_plan(tenant_id)
            plan_type = plan.plan_type if plan else PlanType.FREE.value
            messages_sent = plan.messages_sent if plan else 0
            subscription_id = plan.subscription_id if plan else None
            cycle_start = plan.billing_cycle_start if plan else None

        limit = PLAN_LIMITS.get(plan_type, 0)
        has_active = plan_type != PlanType.FREE.value
        remaining = None if limit is None else max(0, limit - messages_sent)

        return BillingStatus(
            tenant_id=tenant_id,
            plan_type=plan_type,
            messages_sent=messages_sent,
            messages_limit=limit,
            messages_remaining=remaining,
            has_active_subscription=has_active,
            can_send_messages=has_active and (remaining is None or remaining > 0),
            subscription_id=subscription_id,
            billing_cycle_start=cycle_start,
        )

    def can_send(self, tenant_id: str, count: int = 1) -> QuotaDecision:
        """Whether the tenant may send ``count`` more messages this cycle."""
        status = self.get_status(tenant_id)

        if not status.has_active_subscription:
            return QuotaDecision(
                False,
                "No active subscription. Please subscribe to a plan to send messages.",
            )

        if status.messages_remaining is not None and status.messages_remaining < count:
            return QuotaDecision(
                False,
                f"Message limit reached. You have {status.messages_remaining} messages remaining "
                f"this month. Consider upgrading your plan.",
            )

        return QuotaDecision(True)

    def ensure_can_send(self, tenant_id: str, count: int = 1) -> None:
        """
        Raises:
            QuotaExceededError: can_send() said no
        """
        decision = self.can_send(tenant_id, count)
        if not decision.allowed:
            raise QuotaExceededError(tenant_id, decision.reason or "Not allowed to send")

    def increment_usage(self, tenant_id: str, count: int = 1) -> None:
        with session_scope(self.session_factory) as db:
            plan, _created = WhatSendRepository(db).get_or_create_plan(tenant_id, for_update=True)
            plan.messages_sent = (plan.messages_sent or 0) + count

    def reset_cycle(self, tenant_id: str) -> None:
        """Start a new billing cycle (usage back to zero)."""
        with session_scope(self.session_factory) as db:
            plan, _created = WhatSendRepository(db).get_or_create_plan(tenant_id, for_update=True)
            plan.messages_sent = 0
            plan.billing_cycle_start = datetime.utcnow()

        logger.info("Reset billing cycle", extra={"tenant_id": tenant_id})

    def set_plan(self, tenant_id: str, plan_type: str, subscription_id: str | None = None) -> BillingStatus:
        plan_type = PlanType(plan_type).value
        with session_scope(self.session_factory) as db:
            plan, _created = WhatSendRepository(db).get_or_create_plan(tenant_id, for_update=True)
            plan.plan_type = plan_type
            plan.subscription_id = subscription_id

        logger.info("Plan changed", extra={"tenant_id": tenant_id, "plan_type": plan_type})
        return self.get_status(tenant_id)

    def sync_subscription(
        self,
        tenant_id: str,
        subscription_name: str | None,
        subscription_id: str | None,
    ) -> BillingStatus:
        """
        Apply the active app-store subscription (None = no subscription).

        Lifetime plans are never downgraded.
        """
        current = self.get_status(tenant_id)
        if current.plan_type == PlanType.LIFETIME.value:
            return current

        plan_type = plan_from_subscription_name(subscription_name) if subscription_id else PlanType.FREE
        if current.plan_type == plan_type.value and current.subscription_id == subscription_id:
            return current
        return self.set_plan(tenant_id, plan_type.value, subscription_id)
