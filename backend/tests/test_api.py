"""API-level tests for the driver chat service."""
from __future__ import annotations

import os
import sys
import uuid
from pathlib import Path

from fastapi.testclient import TestClient


TMP = Path(__file__).resolve().parent / ".tmp_fleet"
TMP.mkdir(parents=True, exist_ok=True)
os.environ["FLEET_DB_PATH"] = str(TMP / "fleet_state.db")
os.environ["OPENAI_API_KEY"] = ""
os.environ["DEFAULT_MESSAGING_PROVIDER"] = "log"
os.environ["WEBHOOK_CLIENT_TOKEN"] = "test-webhook-token"

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from driverchat.core.auth import tenant_token_map  # noqa: E402
from driverchat.core.config import get_settings  # noqa: E402
from driverchat.main import app  # noqa: E402
from driverchat.models.messaging import DispatchOutcome  # noqa: E402
from driverchat.routers.webhook import get_dispatcher  # noqa: E402


client = TestClient(app)
WEBHOOK_HEADERS = {"Client-Token": "test-webhook-token"}


def _tenant_headers(role: str = "dispatcher") -> dict:
    return {"X-Tenant-ID": f"api-{uuid.uuid4().hex[:10]}", "X-Actor": "ana", "X-Actor-Role": role}


def _seed_route(headers: dict, invoices=("1020",)) -> dict:
    driver = client.post("/fleet/drivers", json={"name": "Carlos Souza", "phone": "11999998888"}, headers=headers)
    assert driver.status_code == 200
    customer = client.post(
        "/fleet/customers",
        json={"trade_name": "Mercado Central", "tax_id": "12345678000190", "phone": "1133334444"},
        headers=headers,
    )
    assert customer.status_code == 200
    payload = {
        "name": "Zona Sul",
        "route_date": get_settings().local_today().isoformat(),
        "driver_phone": "+55 (11) 99999-8888",
        "deliveries": [{"invoice_number": invoice, "customer_tax_id": "12345678000190"} for invoice in invoices],
    }
    route = client.post("/routes/import", json=payload, headers=headers)
    assert route.status_code == 200
    return route.json()


def _chat(tenant_id: str, text: str):
    return client.post(
        f"/webhook/whatsapp?tenant={tenant_id}",
        json={"phone": "5511999998888", "text": {"message": text}},
        headers=WEBHOOK_HEADERS,
    )


def test_health_and_root():
    assert client.get("/health").json() == {"status": "healthy"}
    assert "webhook" in client.get("/").json()["endpoints"]


def test_webhook_requires_client_token():
    payload = {"phone": "5511999998888", "text": {"message": "hi"}}

    assert client.post("/webhook/whatsapp", json=payload).status_code == 401
    assert client.post("/webhook/whatsapp", json=payload, headers={"Client-Token": "nope"}).status_code == 401


def test_webhook_ignores_unsupported_payloads():
    response = client.post("/webhook/whatsapp?token=test-webhook-token", json={"fromMe": True, "phone": "5511999998888"})

    assert response.status_code == 200
    assert response.json() == {"status": "ignored"}


def test_chat_flow_from_import_to_completion_and_reopen():
    headers = _tenant_headers()
    tenant_id = headers["X-Tenant-ID"]
    route = _seed_route(headers)
    assert route["status"] == "PLANNED"
    assert route["deliveries"][0]["customer"]["trade_name"] == "Mercado Central"

    started = _chat(tenant_id, "start")
    assert started.status_code == 200
    assert started.json()["status"] == "route_started"
    assert started.json()["route_id"] == route["route_id"]

    delivered = _chat(tenant_id, "delivered 1020")
    assert delivered.json()["status"] == "success"

    current = client.get(f"/routes/{route['route_id']}", headers=headers).json()
    assert current["status"] == "COMPLETED"
    assert current["deliveries"][0]["status"] == "DELIVERED"

    timeline = client.get(f"/routes/{route['route_id']}/timeline", headers=headers).json()
    event_types = {event["event_type"] for event in timeline["events"]}
    assert {"route_imported", "route_started", "delivery_delivered", "route_completed"} <= event_types

    delivery_id = route["deliveries"][0]["delivery_id"]
    reopened = client.post(f"/deliveries/{delivery_id}/reopen", json={"reason": "wrong customer"}, headers=headers)
    assert reopened.status_code == 200
    assert reopened.json()["status"] == "IN_TRANSIT"
    assert client.get(f"/routes/{route['route_id']}", headers=headers).json()["status"] == "ACTIVE"

    again = client.post(f"/deliveries/{delivery_id}/reopen", json={"reason": "wrong customer"}, headers=headers)
    assert again.status_code == 409
    missing = client.post("/deliveries/DLV-999999/reopen", json={"reason": "wrong customer"}, headers=headers)
    assert missing.status_code == 404


def test_unknown_phone_is_acknowledged_silently():
    response = client.post(
        "/webhook/messages",
        json={"raw_phone": "5599900000000", "text": "hello", "tenant_id": f"api-{uuid.uuid4().hex[:10]}"},
        headers=WEBHOOK_HEADERS,
    )

    assert response.status_code == 200
    assert response.json()["status"] == "driver_not_found"


def test_webhook_dispatcher_can_be_overridden():
    class StubDispatcher:
        def __init__(self):
            self.messages = []

        async def handle(self, message):
            self.messages.append(message)
            return DispatchOutcome(status="processed")

    stub = StubDispatcher()
    app.dependency_overrides[get_dispatcher] = lambda: stub
    try:
        event = {
            "service": "whatsapp",
            "title": "incoming_message",
            "contact": {"phone": "5511999998888"},
            "info": {"message": {"channel_data": {"message": {"type": "text", "text": {"body": "summary"}}}}},
        }
        response = client.post("/webhook/sendpulse?tenant=acme", json=[event], headers=WEBHOOK_HEADERS)
    finally:
        app.dependency_overrides.pop(get_dispatcher, None)

    assert response.json()["status"] == "processed"
    assert stub.messages[0].tenant_id == "acme"
    assert stub.messages[0].text == "summary"


def test_route_import_validation_and_roles():
    headers = _tenant_headers()
    client.post("/fleet/drivers", json={"name": "Carlos Souza", "phone": "11999998888"}, headers=headers)
    payload = {
        "name": "Centro",
        "route_date": get_settings().local_today().isoformat(),
        "driver_phone": "11999998888",
        "deliveries": [{"invoice_number": "1020", "customer_name": "Nowhere Ltda"}],
    }

    unknown_customer = client.post("/routes/import", json=payload, headers=headers)
    assert unknown_customer.status_code == 400
    assert "1020" in unknown_customer.json()["detail"]
    assert client.get("/routes", headers=headers).json()["routes"] == []

    supervisor = {**headers, "X-Actor-Role": "supervisor"}
    assert client.post("/routes/import", json=payload, headers=supervisor).status_code == 403
    bogus = {**headers, "X-Actor-Role": "driver"}
    assert client.post("/routes/import", json=payload, headers=bogus).status_code == 400

    empty = {**payload, "deliveries": []}
    assert client.post("/routes/import", json=empty, headers=headers).status_code == 422


def test_route_listing_filters():
    headers = _tenant_headers()
    route = _seed_route(headers)
    today = get_settings().local_today().isoformat()

    listed = client.get(f"/routes?date={today}&driver_id={route['driver_id']}&status=PLANNED", headers=headers).json()
    assert [item["route_id"] for item in listed["routes"]] == [route["route_id"]]
    assert client.get("/routes?status=ACTIVE", headers=headers).json()["routes"] == []
    assert client.get("/routes/RTE-99999", headers=headers).status_code == 404
    assert client.get("/routes/RTE-99999/timeline", headers=headers).status_code == 404


def test_journey_endpoints_enforce_transitions():
    headers = _tenant_headers()
    driver = client.post("/fleet/drivers", json={"name": "Carlos Souza", "phone": "11999998888"}, headers=headers).json()

    refused = client.post("/journey/event", json={"driver_id": driver["driver_id"], "type": "MEAL_START"}, headers=headers)
    assert refused.status_code == 409
    assert refused.json()["detail"] == "You need to start your journey first."

    started = client.post(
        "/journey/event",
        json={"driver_id": driver["driver_id"], "type": "JOURNEY_START", "latitude": -23.5, "longitude": -46.6},
        headers=headers,
    )
    assert started.status_code == 200
    assert started.json()["type"] == "JOURNEY_START"

    history = client.get(f"/journey/{driver['driver_id']}/history", headers=headers).json()
    assert len(history["events"]) == 1

    unknown = client.post("/journey/event", json={"driver_id": "DRV-9999", "type": "JOURNEY_START"}, headers=headers)
    assert unknown.status_code == 404


def test_fleet_registration_endpoints():
    headers = _tenant_headers(role="admin")
    name = f"Acme {uuid.uuid4().hex[:6]}"

    tenant = client.post(
        "/fleet/tenants",
        json={"name": name, "config": {"supervisor_phone": "11900001111"}},
        headers=headers,
    )
    assert tenant.status_code == 200
    assert tenant.json()["tenant_id"] == name.lower().replace(" ", "-")

    own = client.get("/fleet/tenant", headers=headers).json()
    assert own["tenant_id"] == headers["X-Tenant-ID"]

    short = client.post("/fleet/drivers", json={"name": "Al", "phone": "11999998888"}, headers=headers)
    assert short.status_code == 422

    client.post("/fleet/drivers", json={"name": "Ana Lima", "phone": "11988887777"}, headers=headers)
    drivers = client.get("/fleet/drivers", headers=headers).json()["drivers"]
    assert [item["name"] for item in drivers] == ["Ana Lima"]

    dispatcher_only = {**headers, "X-Actor-Role": "dispatcher"}
    assert client.post("/fleet/tenants", json={"name": "Nope Inc"}, headers=dispatcher_only).status_code == 403


def test_tenant_token_map_skips_malformed_entries():
    assert tenant_token_map("tok-a:acme, broken, :nobody, tok-b: beta ,") == {"tok-a": "acme", "tok-b": "beta"}
