"""
Tests for the per-tenant session manager (with the stub capability).
"""

import asyncio

import pytest

from whatsend.credentials.codec import fresh_credentials, is_registered
from whatsend.persistence.models import ConnectionState
from whatsend.persistence.repo import WhatSendRepository
from whatsend.providers.base import ConnectionOpened
from whatsend.providers.stub import StubWhatsAppCapability
from whatsend.session import SessionManager, SessionNotReadyError


@pytest.fixture
def paired(credential_store, sample_tenant_id):
    """Store registered credentials for the sample tenant."""
    creds = fresh_credentials()
    creds["creds"]["registered"] = True
    creds["creds"]["me"] = {"id": "5511988887777:3@s.whatsapp.net"}
    credential_store.save(sample_tenant_id, creds)
    return creds


def stored_blob(session_factory, tenant_id):
    db = session_factory()
    try:
        record = WhatSendRepository(db).get_session(tenant_id)
        return record.credential_blob if record else None
    finally:
        db.close()


class GatedCapability(StubWhatsAppCapability):
    """Stub whose open() blocks until released."""

    def __init__(self):
        super().__init__()
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def open(self, tenant_id, credentials, listener):
        self.entered.set()
        await self.release.wait()
        return await super().open(tenant_id, credentials, listener)


class TestPairing:

    async def test_connect_without_credentials_shows_pairing_code(self, sessions, projector, sample_tenant_id):
        state = await sessions.request_connect(sample_tenant_id)
        assert state == ConnectionState.CONNECTING

        state = await sessions.wait_for_state(sample_tenant_id, [ConnectionState.AWAITING_PAIRING], 1.0)

        assert state == ConnectionState.AWAITING_PAIRING
        status = projector.get_status(sample_tenant_id)
        assert status.connection_state == "awaiting_pairing"
        assert status.pairing_code

    async def test_scan_connects_and_persists_credentials(
        self, sessions, capability, credential_store, projector, sample_tenant_id
    ):
        await sessions.request_connect(sample_tenant_id)
        await sessions.wait_for_state(sample_tenant_id, [ConnectionState.AWAITING_PAIRING], 1.0)

        capability.simulate_scan(sample_tenant_id, phone_number="5511977776666")
        await sessions.wait_for_state(sample_tenant_id, [ConnectionState.CONNECTED], 1.0)

        assert is_registered(credential_store.load(sample_tenant_id))
        status = projector.get_status(sample_tenant_id)
        assert status.whatsapp_connected is True
        assert status.whatsapp_number == "5511977776666"
        assert status.pairing_code is None
        assert sessions.get_handle(sample_tenant_id) is capability.current_handle(sample_tenant_id)

    async def test_pairing_code_refresh(self, sessions, capability, projector, sample_tenant_id):
        await sessions.request_connect(sample_tenant_id)
        await sessions.wait_for_state(sample_tenant_id, [ConnectionState.AWAITING_PAIRING], 1.0)

        capability.simulate_pairing_code(sample_tenant_id, code="SECOND-CODE")
        await asyncio.sleep(0.01)

        assert projector.get_status(sample_tenant_id).pairing_code == "SECOND-CODE"


class TestSingleSession:

    async def test_second_connect_reuses_live_session(self, sessions, capability, paired, sample_tenant_id):
        await sessions.request_connect(sample_tenant_id)
        await sessions.wait_for_state(sample_tenant_id, [ConnectionState.CONNECTED], 1.0)
        handle = sessions.get_handle(sample_tenant_id)

        state = await sessions.request_connect(sample_tenant_id)

        assert state == ConnectionState.CONNECTED
        assert capability.open_count(sample_tenant_id) == 1
        assert sessions.get_handle(sample_tenant_id) is handle

    async def test_concurrent_connects_open_once(self, sessions, capability, paired, sample_tenant_id):
        await asyncio.gather(*(sessions.request_connect(sample_tenant_id) for _ in range(5)))
        await sessions.wait_for_state(sample_tenant_id, [ConnectionState.CONNECTED], 1.0)

        assert capability.open_count(sample_tenant_id) == 1

    async def test_tenants_are_independent(self, sessions, capability, paired, sample_tenant_id):
        await sessions.request_connect(sample_tenant_id)
        await sessions.request_connect("other-shop")

        await sessions.wait_for_state(sample_tenant_id, [ConnectionState.CONNECTED], 1.0)
        await sessions.wait_for_state("other-shop", [ConnectionState.AWAITING_PAIRING], 1.0)

        assert sessions.get_handle(sample_tenant_id) is not sessions.get_handle("other-shop")


class TestClose:

    async def test_transient_close_reconnects_with_same_credentials(
        self, sessions, capability, credential_store, session_factory, paired, sample_tenant_id
    ):
        await sessions.request_connect(sample_tenant_id)
        await sessions.wait_for_state(sample_tenant_id, [ConnectionState.CONNECTED], 1.0)
        blob = stored_blob(session_factory, sample_tenant_id)

        capability.simulate_close(sample_tenant_id, logged_out=False)
        await sessions.wait_for_state(sample_tenant_id, [ConnectionState.ERROR], 1.0)
        await sessions.wait_for_state(sample_tenant_id, [ConnectionState.CONNECTED], 1.0)

        assert capability.open_count(sample_tenant_id) == 2
        assert capability.handles[sample_tenant_id][0].closed
        assert stored_blob(session_factory, sample_tenant_id) == blob
        assert is_registered(credential_store.load(sample_tenant_id))

    async def test_logged_out_close_wipes_credentials(
        self, sessions, capability, projector, session_factory, paired, sample_tenant_id
    ):
        await sessions.request_connect(sample_tenant_id)
        await sessions.wait_for_state(sample_tenant_id, [ConnectionState.CONNECTED], 1.0)

        capability.simulate_close(sample_tenant_id, logged_out=True)
        await sessions.wait_for_state(sample_tenant_id, [ConnectionState.DISCONNECTED], 1.0)
        await asyncio.sleep(0.1)

        assert sessions.get_state(sample_tenant_id) == ConnectionState.DISCONNECTED
        assert not stored_blob(session_factory, sample_tenant_id)
        assert sessions.get_handle(sample_tenant_id) is None
        assert capability.open_count(sample_tenant_id) == 1
        assert projector.get_status(sample_tenant_id).whatsapp_connected is False

    async def test_events_of_closed_session_are_dropped(self, sessions, capability, paired, sample_tenant_id):
        await sessions.request_connect(sample_tenant_id)
        await sessions.wait_for_state(sample_tenant_id, [ConnectionState.CONNECTED], 1.0)
        old = capability.current_handle(sample_tenant_id)

        await sessions.request_disconnect(sample_tenant_id, wipe_credentials=False)
        old.listener(ConnectionOpened(phone_number="5511"))
        await asyncio.sleep(0.01)

        assert sessions.get_state(sample_tenant_id) == ConnectionState.DISCONNECTED


class TestDisconnect:

    async def test_disconnect_logs_out_and_wipes(
        self, sessions, capability, projector, session_factory, paired, sample_tenant_id
    ):
        await sessions.request_connect(sample_tenant_id)
        await sessions.wait_for_state(sample_tenant_id, [ConnectionState.CONNECTED], 1.0)
        handle = capability.current_handle(sample_tenant_id)

        state = await sessions.request_disconnect(sample_tenant_id)

        assert state == ConnectionState.DISCONNECTED
        assert handle.logged_out and handle.closed
        assert not stored_blob(session_factory, sample_tenant_id)
        assert projector.get_status(sample_tenant_id).connection_state == "disconnected"

    async def test_disconnect_keeping_credentials(self, sessions, capability, session_factory, paired, sample_tenant_id):
        await sessions.request_connect(sample_tenant_id)
        await sessions.wait_for_state(sample_tenant_id, [ConnectionState.CONNECTED], 1.0)
        handle = capability.current_handle(sample_tenant_id)

        await sessions.request_disconnect(sample_tenant_id, wipe_credentials=False)

        assert handle.closed and not handle.logged_out
        assert stored_blob(session_factory, sample_tenant_id)


class TestOpenFailure:

    async def test_open_failure_is_error_state(self, sessions, capability, projector, sample_tenant_id):
        capability.fail_open = True

        state = await sessions.request_connect(sample_tenant_id)

        assert state == ConnectionState.ERROR
        status = projector.get_status(sample_tenant_id)
        assert status.connection_state == "error"
        assert "Simulated open failure" in status.last_error

    async def test_connect_after_failure_retries(self, sessions, capability, paired, sample_tenant_id):
        capability.fail_open = True
        await sessions.request_connect(sample_tenant_id)

        capability.fail_open = False
        await sessions.request_connect(sample_tenant_id)
        state = await sessions.wait_for_state(sample_tenant_id, [ConnectionState.CONNECTED], 1.0)

        assert state == ConnectionState.CONNECTED


class TestEnsureConnected:

    async def test_connects_on_demand(self, sessions, capability, paired, sample_tenant_id):
        handle = await sessions.ensure_connected(sample_tenant_id)

        assert handle is capability.current_handle(sample_tenant_id)
        assert sessions.get_state(sample_tenant_id) == ConnectionState.CONNECTED

    async def test_unpaired_tenant_is_not_ready(self, sessions, sample_tenant_id):
        with pytest.raises(SessionNotReadyError) as exc_info:
            await sessions.ensure_connected(sample_tenant_id)

        assert exc_info.value.state == ConnectionState.AWAITING_PAIRING

    async def test_failed_open_is_not_ready(self, sessions, capability, paired, sample_tenant_id):
        capability.fail_open = True

        with pytest.raises(SessionNotReadyError):
            await sessions.ensure_connected(sample_tenant_id)


class TestShutdown:

    async def test_shutdown_closes_sessions_but_keeps_credentials(
        self, sessions, capability, session_factory, paired, sample_tenant_id
    ):
        await sessions.ensure_connected(sample_tenant_id)
        handle = capability.current_handle(sample_tenant_id)

        await sessions.shutdown()

        assert handle.closed and not handle.logged_out
        assert stored_blob(session_factory, sample_tenant_id)
        with pytest.raises(RuntimeError):
            await sessions.request_connect(sample_tenant_id)

    async def test_shutdown_closes_session_opened_meanwhile(
        self, credential_store, projector, paired, sample_tenant_id
    ):
        capability = GatedCapability()
        manager = SessionManager(capability, credential_store, projector, reconnect_delay=0.05, ready_timeout=1.0)

        connect = asyncio.create_task(manager.request_connect(sample_tenant_id))
        await asyncio.wait_for(capability.entered.wait(), 1.0)

        stopping = asyncio.create_task(manager.shutdown())
        await asyncio.sleep(0.01)
        capability.release.set()
        await asyncio.wait_for(stopping, 1.0)
        await connect

        assert capability.current_handle(sample_tenant_id).closed
        assert manager.get_handle(sample_tenant_id) is None

    async def test_shutdown_gives_up_on_stuck_open(self, credential_store, projector, paired, sample_tenant_id):
        capability = GatedCapability()
        manager = SessionManager(capability, credential_store, projector, shutdown_timeout=0.05)

        connect = asyncio.create_task(manager.request_connect(sample_tenant_id))
        await asyncio.wait_for(capability.entered.wait(), 1.0)

        await asyncio.wait_for(manager.shutdown(), 1.0)

        assert capability.open_count(sample_tenant_id) == 0
        assert await connect == ConnectionState.CONNECTING
