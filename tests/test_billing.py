"""
Tests for BillingService.
"""

import pytest

from whatsend.service.billing import (
    BillingService,
    PlanType,
    QuotaExceededError,
    plan_from_subscription_name,
)


@pytest.fixture
def billing(session_factory):
    return BillingService(session_factory)


class TestPlans:

    def test_unknown_tenant_is_free(self, billing, sample_tenant_id):
        status = billing.get_status(sample_tenant_id)

        assert status.plan_type == "free"
        assert status.messages_limit == 0
        assert not status.can_send_messages

    def test_free_plan_cannot_send(self, billing, sample_tenant_id):
        decision = billing.can_send(sample_tenant_id)

        assert not decision.allowed
        assert decision.reason == "No active subscription. Please subscribe to a plan to send messages."

    def test_starter_plan_within_limit(self, billing, sample_tenant_id):
        billing.set_plan(sample_tenant_id, "starter", subscription_id="gid://sub/1")

        status = billing.get_status(sample_tenant_id)
        assert status.messages_limit == 1500
        assert status.messages_remaining == 1500
        assert billing.can_send(sample_tenant_id).allowed

    def test_limit_reached(self, billing, sample_tenant_id):
        billing.set_plan(sample_tenant_id, "starter")
        billing.increment_usage(sample_tenant_id, 1499)

        assert billing.can_send(sample_tenant_id).allowed
        decision = billing.can_send(sample_tenant_id, count=2)
        assert not decision.allowed
        assert "You have 1 messages remaining" in decision.reason

        billing.increment_usage(sample_tenant_id)
        with pytest.raises(QuotaExceededError):
            billing.ensure_can_send(sample_tenant_id)

    def test_unlimited_plans(self, billing, sample_tenant_id):
        billing.set_plan(sample_tenant_id, "pro")
        billing.increment_usage(sample_tenant_id, 100000)

        status = billing.get_status(sample_tenant_id)
        assert status.messages_remaining is None
        assert status.can_send_messages

    def test_reset_cycle(self, billing, sample_tenant_id):
        billing.set_plan(sample_tenant_id, "growth")
        billing.increment_usage(sample_tenant_id, 3000)

        billing.reset_cycle(sample_tenant_id)

        assert billing.get_status(sample_tenant_id).messages_sent == 0

    def test_unknown_plan_is_rejected(self, billing, sample_tenant_id):
        with pytest.raises(ValueError):
            billing.set_plan(sample_tenant_id, "enterprise")


class TestSubscriptionSync:

    @pytest.mark.parametrize(
        "name, expected",
        [
            ("WhatSend Pro", PlanType.PRO),
            ("Growth monthly", PlanType.GROWTH),
            ("starter", PlanType.STARTER),
            ("Something else", PlanType.FREE),
            (None, PlanType.FREE),
        ],
    )
    def test_plan_from_subscription_name(self, name, expected):
        assert plan_from_subscription_name(name) == expected

    def test_sync_applies_subscription(self, billing, sample_tenant_id):
        status = billing.sync_subscription(sample_tenant_id, "Growth", "gid://sub/2")

        assert status.plan_type == "growth"
        assert status.subscription_id == "gid://sub/2"

    def test_cancelled_subscription_downgrades(self, billing, sample_tenant_id):
        billing.sync_subscription(sample_tenant_id, "Growth", "gid://sub/2")

        status = billing.sync_subscription(sample_tenant_id, None, None)

        assert status.plan_type == "free"

    def test_lifetime_is_never_downgraded(self, billing, sample_tenant_id):
        billing.set_plan(sample_tenant_id, "lifetime")

        status = billing.sync_subscription(sample_tenant_id, None, None)

        assert status.plan_type == "lifetime"
