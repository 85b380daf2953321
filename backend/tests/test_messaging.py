from __future__ import annotations

import asyncio
import json
import os
import sys
from pathlib import Path

import httpx
import pytest


TMP = Path(__file__).resolve().parent / ".tmp_fleet"
TMP.mkdir(parents=True, exist_ok=True)
os.environ["FLEET_DB_PATH"] = str(TMP / "fleet_state.db")
os.environ["OPENAI_API_KEY"] = ""
os.environ["DEFAULT_MESSAGING_PROVIDER"] = "log"
os.environ["WEBHOOK_CLIENT_TOKEN"] = "test-webhook-token"

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from driverchat.core.config import Settings  # noqa: E402
from driverchat.models.fleet import MessagingProviderType, TenantConfig  # noqa: E402
from driverchat.services.fleet_state import FleetStateStore  # noqa: E402
from driverchat.services.messaging import (  # noqa: E402
    LogOnlyProvider,
    MessagingError,
    MessagingGateway,
    SendPulseProvider,
    ZapiProvider,
)


def test_zapi_posts_to_instance_path_with_client_token():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"messageId": "abc"})

    provider = ZapiProvider("inst-1", "tok-1", client_token="ct-1", transport=httpx.MockTransport(handler))
    asyncio.run(provider.send_text("+55 (11) 99999-8888", "hello"))

    request = seen[0]
    assert request.url.path == "/instances/inst-1/token/tok-1/send-text"
    assert request.headers["Client-Token"] == "ct-1"
    assert json.loads(request.content) == {"phone": "5511999998888", "message": "hello"}


def test_zapi_error_status_raises_messaging_error():
    transport = httpx.MockTransport(lambda request: httpx.Response(401, text="bad token"))
    provider = ZapiProvider("inst-1", "tok-1", transport=transport)

    with pytest.raises(MessagingError):
        asyncio.run(provider.send_location("5511999998888", -23.5, -46.6, title="Mercado"))


def test_zapi_requires_credentials():
    with pytest.raises(MessagingError):
        ZapiProvider("", "tok")


def test_sendpulse_caches_token_and_sends_by_contact_id():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append((request.method, request.url.path))
        if request.url.path == "/oauth/access_token":
            return httpx.Response(200, json={"access_token": "tkn", "expires_in": 3600})
        assert request.headers["Authorization"] == "Bearer tkn"
        if request.url.path == "/whatsapp/contacts":
            return httpx.Response(200, json={"data": {"id": "contact-9"}})
        if request.url.path == "/whatsapp/contacts/send":
            body = json.loads(request.content)
            assert body["contact_id"] == "contact-9"
            assert body["bot_id"] == "bot-1"
            return httpx.Response(200, json={"success": True})
        return httpx.Response(404)

    provider = SendPulseProvider("cid", "secret", "bot-1", transport=httpx.MockTransport(handler))

    async def _twice():
        await provider.send_text("11999998888", "first")
        await provider.send_text("11999998888", "second")

    asyncio.run(_twice())

    assert calls.count(("POST", "/oauth/access_token")) == 1
    assert calls.count(("POST", "/whatsapp/contacts/send")) == 2


def test_sendpulse_falls_back_to_lookup_then_phone():
    sent = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/oauth/access_token":
            return httpx.Response(200, json={"access_token": "tkn", "expires_in": 3600})
        if request.url.path == "/whatsapp/contacts":
            return httpx.Response(409, json={"error": "exists"})
        if request.url.path == "/whatsapp/contacts/getByPhone":
            assert request.url.params["phone"] == "5511999998888"
            return httpx.Response(200, json={"data": {}})
        sent.append(json.loads(request.content))
        return httpx.Response(200, json={"success": True})

    provider = SendPulseProvider("cid", "secret", "bot-1", transport=httpx.MockTransport(handler))
    asyncio.run(provider.send_text("11999998888", "hello"))

    assert sent[0]["phone"] == "5511999998888"
    assert "contact_id" not in sent[0]
    assert sent[0]["message"] == {"type": "text", "text": {"body": "hello"}}


def test_gateway_logs_sent_and_failed_messages(tmp_path):
    store = FleetStateStore(db_path=str(tmp_path / "gateway.db"))
    gateway = MessagingGateway(store, Settings(default_messaging_provider="log"))
    tenant = store.get_tenant("acme")

    assert isinstance(gateway.provider_for(tenant), LogOnlyProvider)
    assert asyncio.run(gateway.send_text(tenant, "+55 (11) 99999-8888", "hi")) is True

    failing = ZapiProvider(
        "inst-1",
        "tok-1",
        transport=httpx.MockTransport(lambda request: httpx.Response(500, text="down")),
    )
    gateway.register("acme", failing)
    assert asyncio.run(gateway.send_text(tenant, "5511999998888", "again")) is False

    statuses = [row["status"] for row in store.list_outbound_messages("acme", recipient="5511999998888")]
    assert statuses == ["failed", "sent"]


def test_gateway_builds_provider_from_tenant_config(tmp_path):
    store = FleetStateStore(db_path=str(tmp_path / "gateway.db"))
    gateway = MessagingGateway(store, Settings(default_messaging_provider="log"))
    tenant = store.upsert_tenant(
        "acme",
        "Acme",
        TenantConfig(messaging_provider=MessagingProviderType.ZAPI, zapi_instance_id="i", zapi_token="t"),
    )

    provider = gateway.provider_for(tenant)
    assert isinstance(provider, ZapiProvider)
    assert gateway.provider_for(tenant) is provider

    unconfigured = store.upsert_tenant("beta", "Beta", TenantConfig(messaging_provider=MessagingProviderType.SENDPULSE))
    assert isinstance(gateway.provider_for(unconfigured), LogOnlyProvider)


def test_zapi_plain_text_acknowledgement_is_accepted():
    transport = httpx.MockTransport(lambda request: httpx.Response(200, text="OK"))
    provider = ZapiProvider("inst-1", "tok-1", transport=transport)

    asyncio.run(provider.send_text("5511999998888", "hello"))


@pytest.mark.parametrize(
    "token_response",
    [
        httpx.Response(200, json={"token_type": "Bearer"}),
        httpx.Response(200, text="<html>maintenance</html>"),
    ],
)
def test_sendpulse_unreadable_token_raises_messaging_error(token_response):
    provider = SendPulseProvider("cid", "secret", "bot-1", transport=httpx.MockTransport(lambda request: token_response))

    with pytest.raises(MessagingError):
        asyncio.run(provider.send_text("11999998888", "hello"))


def test_gateway_logs_unexpected_provider_errors_as_failed(tmp_path):
    class ExplodingProvider(LogOnlyProvider):
        name = "exploding"

        async def send_text(self, phone, text):
            raise KeyError("access_token")

    store = FleetStateStore(db_path=str(tmp_path / "gateway.db"))
    gateway = MessagingGateway(store, Settings(default_messaging_provider="log"))
    gateway.register("acme", ExplodingProvider())

    assert asyncio.run(gateway.send_text(store.get_tenant("acme"), "5511999998888", "hi")) is False
    logged = store.list_outbound_messages("acme")
    assert logged[0]["status"] == "failed"
    assert logged[0]["channel"] == "exploding:text"
