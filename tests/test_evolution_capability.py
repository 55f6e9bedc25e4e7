"""
Tests for the Evolution API capability (gateway mocked with httpx.MockTransport).
"""

import asyncio
import base64
import json

import httpx
import pytest

from whatsend.providers.base import (
    ConnectionClosed,
    ConnectionOpened,
    CredentialsChanged,
    PairingChallenge,
    ProviderError,
)
from whatsend.providers.evolution import EvolutionInstanceManager, EvolutionWhatsAppCapability, instance_name_for


class FakeGateway:
    """Minimal in-memory Evolution API."""

    def __init__(self):
        self.state = "close"
        self.owner = "5511977776666@s.whatsapp.net"
        self.disconnection_code = None
        self.state_body = None
        self.requests: list[tuple[str, str, dict]] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else {}
        path = request.url.path
        self.requests.append((request.method, path, body))

        if request.headers.get("apikey") != "secret":
            return httpx.Response(401, json={"message": "Unauthorized"})
        if path == "/instance/create":
            return httpx.Response(201, json={"instance": {"instanceName": body["instanceName"]}, "hash": "tok-1"})
        if path.startswith("/instance/connectionState/"):
            return httpx.Response(200, json=self.state_body or {"instance": {"state": self.state}})
        if path.startswith("/instance/connect/"):
            return httpx.Response(200, json={"pairingCode": "WZYEH1YY", "code": "2@abc", "count": 1})
        if path == "/instance/fetchInstances":
            return httpx.Response(200, json=[{
                "name": request.url.params["instanceName"],
                "ownerJid": self.owner,
                "disconnectionReasonCode": self.disconnection_code,
            }])
        if path.startswith("/instance/logout/"):
            return httpx.Response(200, json={"status": "SUCCESS"})
        if path.startswith("/message/"):
            return httpx.Response(201, json={"key": {"id": "BAE5F0"}, "status": "PENDING"})
        return httpx.Response(404, json={"message": "Not found"})


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
async def capability(gateway):
    capability = EvolutionWhatsAppCapability(
        "https://evolution.example.com/",
        "secret",
        connect_timeout=2.0,
        keepalive_interval=0.01,
        poll_interval=0.01,
        transport=httpx.MockTransport(gateway),
    )
    yield capability
    await capability.aclose()


async def wait_for_event(events, event_type, timeout=1.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not any(isinstance(e, event_type) for e in events):
        if loop.time() > deadline:
            raise AssertionError(f"no {event_type.__name__} received")
        await asyncio.sleep(0.01)
    return next(e for e in events if isinstance(e, event_type))


class TestInstanceName:

    def test_store_domains_are_sanitized(self):
        assert instance_name_for("shop-a.myshopify.com") == "whatsend_shop-a_myshopify_com"


class TestOpen:

    async def test_creates_instance_and_reports_pairing_code(self, capability, gateway):
        events = []
        creds = {"creds": {}, "keys": {}}

        handle = await capability.open("shop-a.myshopify.com", creds, events.append)
        challenge = await wait_for_event(events, PairingChallenge)
        await handle.close()

        assert challenge.code == "WZYEH1YY"
        assert isinstance(events[0], CredentialsChanged)
        assert creds["creds"]["instance_name"] == "whatsend_shop-a_myshopify_com"
        assert creds["creds"]["instance_token"] == "tok-1"
        assert gateway.requests[0][:2] == ("POST", "/instance/create")

    async def test_existing_instance_is_reused(self, capability, gateway):
        events = []
        creds = {"creds": {"instance_name": "whatsend_x", "registered": True}, "keys": {}}
        gateway.state = "open"

        handle = await capability.open("x", creds, events.append)
        opened = await wait_for_event(events, ConnectionOpened)
        await handle.close()

        assert opened.phone_number == "5511977776666"
        assert not any(path == "/instance/create" for _, path, _ in gateway.requests)
        assert not any(isinstance(e, CredentialsChanged) for e in events)

    async def test_first_open_marks_credentials_registered(self, capability, gateway):
        events = []
        creds = {"creds": {"instance_name": "whatsend_x"}, "keys": {}}
        gateway.state = "open"

        handle = await capability.open("x", creds, events.append)
        await wait_for_event(events, ConnectionOpened)
        await handle.close()

        changed = next(e for e in events if isinstance(e, CredentialsChanged))
        assert changed.credentials["creds"]["registered"] is True
        assert changed.credentials["creds"]["me"] == {"id": gateway.owner}


class TestClose:

    async def test_remote_logout_is_terminal(self, capability, gateway):
        events = []
        gateway.state = "open"
        handle = await capability.open("x", {"creds": {"instance_name": "whatsend_x"}, "keys": {}}, events.append)
        await wait_for_event(events, ConnectionOpened)

        gateway.state = "close"
        gateway.disconnection_code = 401
        closed = await wait_for_event(events, ConnectionClosed)
        await handle.close()

        assert closed.logged_out is True

    async def test_dropped_connection_is_transient(self, capability, gateway):
        events = []
        gateway.state = "open"
        handle = await capability.open("x", {"creds": {"instance_name": "whatsend_x"}, "keys": {}}, events.append)
        await wait_for_event(events, ConnectionOpened)

        gateway.state = "connecting"
        gateway.disconnection_code = 428
        closed = await wait_for_event(events, ConnectionClosed)
        await handle.close()

        assert closed.logged_out is False

    async def test_connect_timeout(self, gateway):
        capability = EvolutionWhatsAppCapability(
            "https://evolution.example.com",
            "secret",
            connect_timeout=0.05,
            poll_interval=0.01,
            transport=httpx.MockTransport(gateway),
        )
        events = []

        handle = await capability.open("x", {"creds": {"instance_name": "whatsend_x"}, "keys": {}}, events.append)
        closed = await wait_for_event(events, ConnectionClosed)
        await handle.close()
        await capability.aclose()

        assert closed.reason == "connect timeout"
        assert not closed.logged_out

    async def test_unexpected_gateway_reply_closes_session(self, capability, gateway):
        events = []
        gateway.state_body = [{"state": "open"}]

        handle = await capability.open("x", {"creds": {"instance_name": "whatsend_x"}, "keys": {}}, events.append)
        closed = await wait_for_event(events, ConnectionClosed)
        await handle.close()

        assert closed.reason.startswith("watcher error")
        assert not closed.logged_out


class TestSend:

    async def test_send_text(self, capability, gateway):
        handle = await capability.open("x", {"creds": {"instance_name": "whatsend_x"}, "keys": {}}, lambda e: None)

        response = await handle.send_text("5511999999999", "Pedido confirmado")
        await handle.close()

        assert response.success
        assert response.message_id == "BAE5F0"
        assert ("POST", "/message/sendText/whatsend_x", {"number": "5511999999999", "text": "Pedido confirmado"}) in gateway.requests

    async def test_send_media_is_base64(self, capability, gateway):
        handle = await capability.open("x", {"creds": {"instance_name": "whatsend_x"}, "keys": {}}, lambda e: None)

        await handle.send_media("5511999999999", b"\xff\xd8", caption="Seu pedido", mimetype="image/jpeg")
        await handle.close()

        body = next(b for m, p, b in gateway.requests if p == "/message/sendMedia/whatsend_x")
        assert base64.b64decode(body["media"]) == b"\xff\xd8"
        assert body["caption"] == "Seu pedido"
        assert body["mediatype"] == "image"

    async def test_logout(self, capability, gateway):
        handle = await capability.open("x", {"creds": {"instance_name": "whatsend_x"}, "keys": {}}, lambda e: None)

        await handle.logout()
        await handle.close()

        assert any(m == "DELETE" and p == "/instance/logout/whatsend_x" for m, p, _ in gateway.requests)


class TestInstanceManager:

    async def test_client_errors_are_not_retryable(self, gateway):
        manager = EvolutionInstanceManager("https://evolution.example.com", "wrong", transport=httpx.MockTransport(gateway))

        with pytest.raises(ProviderError) as exc_info:
            await manager.get_connection_state("whatsend_x")
        await manager.close()

        assert exc_info.value.code == "401"
        assert not exc_info.value.retryable

    async def test_server_errors_are_retryable(self):
        manager = EvolutionInstanceManager(
            "https://evolution.example.com",
            "secret",
            transport=httpx.MockTransport(lambda r: httpx.Response(502, text="Bad Gateway")),
        )

        with pytest.raises(ProviderError) as exc_info:
            await manager.send_text("whatsend_x", "5511", "hi")
        await manager.close()

        assert exc_info.value.code == "502"
        assert exc_info.value.retryable
        assert str(exc_info.value) == "Bad Gateway"

    async def test_network_errors_are_retryable(self):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        manager = EvolutionInstanceManager("https://evolution.example.com", "secret", transport=httpx.MockTransport(refuse))

        with pytest.raises(ProviderError) as exc_info:
            await manager.get_instance("whatsend_x")
        await manager.close()

        assert exc_info.value.code == "HTTP_ERROR"
        assert exc_info.value.retryable
