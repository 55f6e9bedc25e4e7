"""
Tests for tenant erasure, customer redaction and retention cleanup.
"""

from datetime import datetime, timedelta

import pytest

from whatsend.credentials.codec import fresh_credentials, is_registered
from whatsend.delivery.queue import DeliveryQueue
from whatsend.persistence.models import ConnectionLog, ConnectionState, DeliveryJob, DeliveryRecord
from whatsend.persistence.repo import WhatSendRepository
from whatsend.service.billing import BillingService
from whatsend.service.erasure import ErasureService


@pytest.fixture
def queue(session_factory):
    return DeliveryQueue(session_factory)


@pytest.fixture
def erasure(session_factory):
    return ErasureService(session_factory, history_days=30, connection_log_days=7, queue_days=1)


class TestTenantErasure:

    def test_erased_tenant_reads_empty(self, erasure, queue, credential_store, projector, session_factory):
        creds = fresh_credentials()
        creds["creds"]["registered"] = True
        credential_store.save("shop-b", creds)
        projector.project("shop-b", ConnectionState.CONNECTED, phone_number="5511")
        BillingService(session_factory).set_plan("shop-b", "starter")
        sent = queue.enqueue("shop-b", "5511999999999", "hi")
        queue.record_success(sent)
        queue.enqueue("shop-b", "5511999999999", "pending")

        counts = erasure.erase_tenant_data("shop-b")

        assert counts["records"] == 1
        assert counts["jobs"] == 2
        assert counts["sessions"] == 1
        assert counts["plans"] == 1
        assert counts["connection_logs"] >= 1
        assert not is_registered(credential_store.load("shop-b"))
        assert queue.list_jobs("shop-b") == []
        assert queue.history("shop-b") == []
        assert projector.get_status("shop-b").connection_state == "disconnected"

    def test_other_tenants_are_untouched(self, erasure, queue):
        queue.enqueue("shop-b", "5511999999999", "hi")
        keep = queue.enqueue("shop-c", "5511999999999", "hi")

        erasure.erase_tenant_data("shop-b")

        assert [j.id for j in queue.list_jobs("shop-c")] == [keep]

    def test_erasing_unknown_tenant(self, erasure):
        counts = erasure.erase_tenant_data("ghost")

        assert set(counts.values()) == {0}


class TestCustomerRedaction:

    def test_redact_by_phone_ignores_formatting(self, erasure, queue):
        job = queue.enqueue("shop-b", "5511999999999", "hi")
        queue.record_success(job)
        other = queue.enqueue("shop-b", "5511888888888", "hi")

        counts = erasure.redact_customer("shop-b", phone="+55 (11) 99999-9999")

        assert counts == {"records": 1, "jobs": 1}
        assert [j.id for j in queue.list_jobs("shop-b")] == [other]

    def test_redact_by_order(self, erasure, queue):
        queue.enqueue("shop-b", "5511999999999", "order 1", order_id="1001")
        queue.enqueue("shop-b", "5511999999999", "order 2", order_id="1002")

        counts = erasure.redact_customer("shop-b", order_ids=["1001"])

        assert counts["jobs"] == 1
        assert [j.order_id for j in queue.list_jobs("shop-b")] == ["1002"]

    def test_redact_is_scoped_to_tenant(self, erasure, queue):
        queue.enqueue("shop-c", "5511999999999", "hi")

        counts = erasure.redact_customer("shop-b", phone="5511999999999")

        assert counts == {"records": 0, "jobs": 0}
        assert len(queue.list_jobs("shop-c")) == 1

    def test_redact_without_criteria_deletes_nothing(self, erasure, queue):
        queue.enqueue("shop-b", "5511999999999", "hi")

        assert erasure.redact_customer("shop-b") == {"records": 0, "jobs": 0}


class TestRetention:

    def test_cleanup_respects_retention_periods(self, erasure, queue, projector, session_factory):
        old_sent = queue.enqueue("shop-b", "5511999999999", "old")
        queue.record_success(old_sent)
        fresh_sent = queue.enqueue("shop-b", "5511999999999", "fresh")
        queue.record_success(fresh_sent)
        pending = queue.enqueue("shop-b", "5511999999999", "pending")
        projector.project("shop-b", ConnectionState.CONNECTING)

        db = session_factory()
        try:
            long_ago = datetime.utcnow() - timedelta(days=40)
            db.query(DeliveryRecord).filter(DeliveryRecord.job_id == old_sent).update({"created_at": long_ago})
            db.query(DeliveryJob).filter(DeliveryJob.id.in_([old_sent, pending])).update({"updated_at": long_ago})
            db.query(ConnectionLog).update({"created_at": long_ago})
            db.commit()
        finally:
            db.close()

        counts = erasure.run_retention_cleanup()

        assert counts == {"history": 1, "connection_logs": 1, "jobs": 1}
        assert {j.id for j in queue.list_jobs("shop-b")} == {fresh_sent, pending}
        assert len(queue.history("shop-b")) == 1

        db = session_factory()
        try:
            assert WhatSendRepository(db).list_connection_logs("shop-b") == []
        finally:
            db.close()
