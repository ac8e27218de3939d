from dataclasses import replace
from unittest.mock import MagicMock, patch

import pytest

from pos_sim.constants import FlowStage
from pos_sim.services.receiptless_client import ReceiptlessClient
from pos_sim.services.session_registry import SessionRegistry
from pos_sim.services.state_machine import Intent, IntentType
from pos_sim_api.app import create_app

POST = "pos_sim.services.receiptless_client.requests.post"
PREFIX = "/api/pos-sim"
TOKEN = "7d1e3c2b-4a5f-4b6c-8d7e-9f0a1b2c3d4e"

TERMINAL = {
    "retailer_id": "retailer-1",
    "store_id": "3f1c2a9e-5b7d-4c1e-9a2b-1d2e3f4a5b6c",
    "terminal_code": "T-001",
}


def backend_answer(status, data):
    response = MagicMock()
    response.status_code = status
    response.json.return_value = data
    return response


@pytest.fixture
def registry(config, store, event_log, channel, scheduler, executor):
    registry = SessionRegistry(
        config,
        store=store,
        event_log=event_log,
        channel=channel,
        client=ReceiptlessClient(config),
        scheduler=scheduler,
        executor=executor,
    )
    yield registry
    registry.shutdown()


@pytest.fixture
def client(config, registry):
    app = create_app(config, registry=registry)
    app.config["TESTING"] = True
    return app.test_client()


def create_session(client, **overrides):
    response = client.post(
        f"{PREFIX}/sessions", json={"mode": "web_pos", "terminal": TERMINAL, **overrides}
    )
    assert response.status_code == 201, response.get_json()
    return response.get_json()["data"]


def send_intent(client, session_id, intent_type, **data):
    response = client.post(
        f"{PREFIX}/sessions/{session_id}/intents", json={"type": intent_type, **data}
    )
    assert response.status_code == 200, response.get_json()
    return response.get_json()["data"]


def test_health_endpoints(client):
    assert client.get("/health").get_json()["status"] == "ok"
    body = client.get(f"{PREFIX}/health").get_json()
    assert body == {"status": "ok", "service": "pos-sim", "enabled": True}


def test_create_session_returns_code_and_customer_url(client):
    created = create_session(client)
    assert len(created["session_code"]) == 6
    assert created["customer_url"] == f"/sim/customer/{created['session_code']}"
    assert created["snapshot"]["flow"]["stage"] == "CART"

    response = client.get(f"{PREFIX}/sessions/{created['session_id']}/snapshot")
    data = response.get_json()["data"]
    assert data["snapshot"]["flow"]["stage"] == "CART"
    assert data["persisted"] is True


def test_create_session_rejects_bad_input(client):
    response = client.post(f"{PREFIX}/sessions", json={"mode": "KIOSK", "terminal": TERMINAL})
    assert response.status_code == 400
    response = client.post(f"{PREFIX}/sessions", json={"mode": "web_pos", "terminal": {}})
    assert response.status_code == 400
    assert response.get_json()["status"] == "error"


def test_create_session_accepts_documented_modes(client):
    for mode in ("web_pos", "android_pos"):
        created = create_session(client, mode=mode)
        assert created["snapshot"]["mode"] == mode


def test_intents_drive_the_sale(client):
    session_id = create_session(client)["session_id"]

    outcome = send_intent(
        client, session_id, "ADD_ITEM", name="Coffee", unit_price=1.2, qty=1, vat_rate=0.23
    )
    assert outcome["accepted"] is True
    assert outcome["snapshot"]["cart"]["total"] == 1.48

    refused = send_intent(client, session_id, "PRINT_FALLBACK")
    assert refused["accepted"] is False
    assert refused["status"]


def test_internal_and_unknown_intents_are_refused(client):
    session_id = create_session(client)["session_id"]
    for intent_type in ("RESOLVE_PAYMENT", "ISSUANCE_SUCCEEDED", "DANCE"):
        response = client.post(
            f"{PREFIX}/sessions/{session_id}/intents", json={"type": intent_type}
        )
        assert response.status_code == 400
        assert response.get_json()["code"] == "VALID_001"


def test_unknown_and_malformed_sessions(client):
    response = client.get(f"{PREFIX}/sessions/8a3e1f52-0000-4000-8000-000000000000/snapshot")
    assert response.status_code == 404
    assert response.get_json()["code"] == "SESSION_001"
    assert client.get(f"{PREFIX}/sessions/not-a-uuid/snapshot").status_code == 400
    assert client.get(f"{PREFIX}/sessions/by-code/QQQ777").status_code == 404


def test_viewer_join_and_scan_through_api(client, scheduler):
    created = create_session(client)
    session_id = created["session_id"]
    code = created["session_code"]

    joined = client.post(f"{PREFIX}/sessions/by-code/{code.lower()}/join")
    assert joined.status_code == 200

    send_intent(client, session_id, "ADD_ITEM", name="Coffee", unit_price=1.2, qty=1)
    send_intent(client, session_id, "START_CHECKOUT")
    send_intent(client, session_id, "PAY")

    answer = {"token_id": TOKEN, "public_url": f"https://receipts.example/r/{TOKEN}"}
    with patch(POST, return_value=backend_answer(200, answer)):
        scheduler.advance(900)

    viewer = client.get(f"{PREFIX}/sessions/by-code/{code}").get_json()["data"]["snapshot"]
    assert viewer["receipt"]["token_id"] == TOKEN
    assert viewer["scan"]["state"] == "PENDING"

    response = client.post(f"{PREFIX}/sessions/{session_id}/scan", json={"outcome": "SUCCESS"})
    assert response.status_code == 202

    snapshot = client.get(f"{PREFIX}/sessions/{session_id}/snapshot").get_json()["data"]
    assert snapshot["snapshot"]["scan"]["state"] == "SUCCESS"

    events = client.get(f"{PREFIX}/sessions/{session_id}/events?limit=0").get_json()["data"]
    assert events["limit"] == 100
    types = [event["event_type"] for event in events["events"]]
    assert types[0] == "SESSION_CREATED"
    assert "CUSTOMER_JOINED" in types
    assert types[-1] == "CUSTOMER_SCANNED"


def test_scan_without_receipt_is_conflict(client):
    session_id = create_session(client)["session_id"]
    response = client.post(f"{PREFIX}/sessions/{session_id}/scan", json={"outcome": "SUCCESS"})
    assert response.status_code == 409
    response = client.post(f"{PREFIX}/sessions/{session_id}/scan", json={"outcome": "NOPE"})
    assert response.status_code == 400


def test_fallback_ticket_pdf(client, scheduler):
    session_id = create_session(client, toggles={"issuance_mode": "fail"})["session_id"]
    assert client.get(f"{PREFIX}/sessions/{session_id}/fallback-ticket.pdf").status_code == 409

    send_intent(client, session_id, "ADD_ITEM", name="Coffee", unit_price=1.2, qty=1)
    send_intent(client, session_id, "START_CHECKOUT")
    send_intent(client, session_id, "PAY")
    scheduler.run_all()

    response = client.get(f"{PREFIX}/sessions/{session_id}/fallback-ticket.pdf")
    assert response.status_code == 200
    assert response.mimetype == "application/pdf"
    assert response.data.startswith(b"%PDF")


def test_feature_gate_hides_everything_but_health(config, registry):
    app = create_app(replace(config, pos_sim_enabled=False), registry=registry)
    client = app.test_client()

    response = client.post(f"{PREFIX}/sessions", json={"mode": "web_pos", "terminal": TERMINAL})
    assert response.status_code == 404
    assert response.get_json()["code"] == "SIM_001"
    assert client.get(f"{PREFIX}/health").get_json()["enabled"] is False


def test_issue_receipt_proxy(client):
    body = {**TERMINAL, "sale_id": "sale-1", "items": [{"name": "Coffee", "qty": 1}]}
    answer = {"token_id": TOKEN, "public_url": f"https://receipts.example/r/{TOKEN}"}
    with patch(POST, return_value=backend_answer(200, answer)):
        response = client.post(f"{PREFIX}/issue-receipt", json=body)
    assert response.status_code == 200
    assert response.get_json()["qr_url"] == answer["public_url"]

    with patch(POST, return_value=backend_answer(503, {"error": "unavailable"})):
        response = client.post(f"{PREFIX}/issue-receipt", json=body)
    assert response.status_code == 502
    data = response.get_json()
    assert data["fallback"] == "PRINT_RECEIPT"
    assert data["upstream_status"] == 503

    response = client.post(f"{PREFIX}/issue-receipt", json={"items": []})
    assert response.status_code == 400


def test_validate_proxy(client):
    response = client.post(f"{PREFIX}/returns/validate", json={"token_id": TOKEN})
    assert response.status_code == 401
    assert response.get_json()["code"] == "AUTH_001"

    answer = {"ok": False, "error": "token_not_found"}
    with patch(POST, return_value=backend_answer(404, answer)):
        response = client.post(
            f"{PREFIX}/returns/validate",
            json={"token_id": TOKEN},
            headers={"x-verifier-key": "verifier"},
        )
    assert response.status_code == 404
    assert response.get_json() == answer


def test_consume_proxy_requires_identity(client):
    response = client.post(f"{PREFIX}/consume-receipt", json={"token_id": TOKEN})
    assert response.status_code == 400

    answer = {"ok": True, "consumed_at": "2026-01-01T00:00:00Z"}
    with patch(POST, return_value=backend_answer(200, answer)):
        response = client.post(
            f"{PREFIX}/consume-receipt", json={**TERMINAL, "token_id": TOKEN}
        )
    assert response.status_code == 200
    assert response.get_json() == answer


def test_idle_sessions_are_evicted_and_rehydrated(registry, channel):
    idle = registry.create_session(mode="web_pos", terminal=TERMINAL)
    paying = registry.create_session(mode="web_pos", terminal=TERMINAL)
    for intent in (
        Intent.of(IntentType.ADD_ITEM, sku="COF-1", name="Coffee", unit_price=1.2, qty=1),
        Intent.of(IntentType.START_CHECKOUT),
        Intent.of(IntentType.PAY),
    ):
        assert registry.dispatch(paying.session_id, intent).accepted

    assert registry.evict_idle(max_idle_seconds=0) == [idle.session_id]
    assert registry.active_sessions() == [paying.session_id]
    assert channel.subscriber_count(idle.session_id) == 0
    assert registry.evict(idle.session_id) is False

    revived = registry.get_actor(idle.session_id)
    assert revived.snapshot.session_code == idle.session_code
    assert revived.snapshot.flow.stage == FlowStage.CART
    assert channel.subscriber_count(idle.session_id) == 1
