import json
from dataclasses import replace
from unittest.mock import MagicMock, patch

import pytest
import requests

from pos_sim.constants import (
    HEADER_BODY_HASH,
    HEADER_NONCE,
    HEADER_SIGNATURE,
    HEADER_TERMINAL_KEY,
    HEADER_TIMESTAMP,
    HEADER_VERIFIER_KEY,
)
from pos_sim.errors import ConfigurationError, MissingVerifierKeyError, UpstreamError
from pos_sim.security import verify_signature
from pos_sim.services.receiptless_client import (
    ReceiptlessClient,
    build_function_url,
    build_issue_body,
    normalize_issue_body,
)
from pos_sim.services.state_machine import Intent, IntentType, SessionStateMachine
from pos_sim.validation import ValidationError

POST = "pos_sim.services.receiptless_client.requests.post"

ISSUE_BODY = {
    "retailer_id": "retailer-1",
    "store_id": "3f1c2a9e-5b7d-4c1e-9a2b-1d2e3f4a5b6c",
    "terminal_code": "T-001",
    "sale_id": "sale-1",
    "items": [{"line_no": 1, "name": "Coffee", "qty": 1, "unit_price": 1.2}],
}


def fake_response(status, data):
    response = MagicMock()
    response.status_code = status
    response.json.return_value = data
    response.text = json.dumps(data)
    return response


@pytest.fixture
def client(config):
    return ReceiptlessClient(config)


def test_function_url_for_project_and_functions_domain():
    assert (
        build_function_url("https://demo.supabase.co/", "receipt-ingest")
        == "https://demo.supabase.co/functions/v1/receipt-ingest"
    )
    assert (
        build_function_url("https://demo.functions.supabase.co", "receipt-ingest")
        == "https://demo.functions.supabase.co/receipt-ingest"
    )


def test_issue_receipt_sends_signed_request(client):
    answer = {"token_id": "tok-1", "public_url": "https://receipts.example/r/tok-1"}
    with patch(POST, return_value=fake_response(200, answer)) as post:
        receipt = client.issue_receipt(ISSUE_BODY)

    assert receipt.token_id == "tok-1"
    assert receipt.qr_url == "https://receipts.example/r/tok-1"

    url = post.call_args.args[0]
    kwargs = post.call_args.kwargs
    headers = kwargs["headers"]
    assert url == "https://demo-project.supabase.co/functions/v1/receipt-ingest"
    assert kwargs["timeout"] == 2.0
    assert headers[HEADER_TERMINAL_KEY] == "terminal-key"
    assert headers["apikey"] == "anon-key"
    assert headers["Authorization"] == "Bearer anon-key"
    for name in (HEADER_TIMESTAMP, HEADER_NONCE, HEADER_BODY_HASH, HEADER_SIGNATURE):
        assert headers[name]
    assert verify_signature("test-secret", "POST", url, headers, kwargs["data"])
    assert json.loads(kwargs["data"]) == ISSUE_BODY


def test_issue_receipt_non_2xx_is_upstream_error(client):
    with patch(POST, return_value=fake_response(500, {"error": "db_down"})):
        with pytest.raises(UpstreamError) as exc_info:
            client.issue_receipt(ISSUE_BODY)
    assert exc_info.value.status == 500
    assert exc_info.value.details == {"error": "db_down"}
    assert exc_info.value.http_code == 502


def test_issue_receipt_incomplete_answer_is_upstream_error(client):
    with patch(POST, return_value=fake_response(200, {"token_id": "tok-1"})):
        with pytest.raises(UpstreamError):
            client.issue_receipt(ISSUE_BODY)


def test_issue_receipt_malformed_field_is_upstream_error(client):
    answer = {"token_id": "tok-1", "public_url": "https://r.example/tok-1", "preview_url": 123}
    with patch(POST, return_value=fake_response(200, answer)):
        with pytest.raises(UpstreamError) as exc_info:
            client.issue_receipt(ISSUE_BODY)
    assert exc_info.value.status == 200
    assert exc_info.value.details == answer


def test_timeout_and_network_errors(client):
    with patch(POST, side_effect=requests.exceptions.Timeout()):
        with pytest.raises(UpstreamError) as exc_info:
            client.issue_receipt(ISSUE_BODY)
    assert exc_info.value.code == "UPSTREAM_002"
    assert exc_info.value.http_code == 504

    with patch(POST, side_effect=requests.exceptions.ConnectionError("refused")):
        with pytest.raises(UpstreamError) as exc_info:
            client.issue_receipt(ISSUE_BODY)
    assert exc_info.value.code == "UPSTREAM_001"


def test_missing_configuration(config):
    with pytest.raises(ConfigurationError):
        ReceiptlessClient(replace(config, supabase_url="")).issue_receipt(ISSUE_BODY)
    with pytest.raises(ConfigurationError):
        ReceiptlessClient(replace(config, terminal_key="")).issue_receipt(ISSUE_BODY)
    with patch(POST) as post:
        with pytest.raises(ConfigurationError) as exc_info:
            ReceiptlessClient(replace(config, rl_signing_secret="")).issue_receipt(ISSUE_BODY)
    assert exc_info.value.code == "CONFIG_001"
    post.assert_not_called()


def test_validate_requires_verifier_key(client):
    with patch(POST) as post:
        with pytest.raises(MissingVerifierKeyError):
            client.validate_receipt({"token_id": "x"}, "  ")
    post.assert_not_called()


def test_validate_passes_backend_status_through(client):
    answer = {"ok": False, "error": "token_not_found", "request_id": "req-1"}
    with patch(POST, return_value=fake_response(404, answer)) as post:
        result = client.validate_receipt(b'{"token_id": "x"}', "verifier")

    assert result.status == 404
    assert result.data == answer
    headers = post.call_args.kwargs["headers"]
    assert headers[HEADER_VERIFIER_KEY] == "verifier"
    assert HEADER_TERMINAL_KEY not in headers
    assert post.call_args.args[0].endswith("/returns-verify")


def test_validate_rejects_malformed_body(client):
    with pytest.raises(ValidationError):
        client.validate_receipt(b"{not json", "verifier")


def test_consume_defaults_reason_and_signs(client):
    answer = {"ok": True, "already_consumed": True, "consumed_at": "2026-01-01T00:00:00Z"}
    with patch(POST, return_value=fake_response(200, answer)) as post:
        result = client.consume_receipt("tok-1", "store-1", "T-001", verifier_key="verifier")

    assert result.data["already_consumed"] is True
    body = json.loads(post.call_args.kwargs["data"])
    assert body == {
        "token_id": "tok-1",
        "store_id": "store-1",
        "terminal_code": "T-001",
        "reason": "return_refund",
    }
    headers = post.call_args.kwargs["headers"]
    assert headers[HEADER_SIGNATURE]
    assert headers[HEADER_VERIFIER_KEY] == "verifier"


def test_normalize_issue_body():
    body = normalize_issue_body({**ISSUE_BODY, "sale_id": "  ", "active_sale_id": "sale-9"})
    assert body["sale_id"] == "sale-9"

    generated = normalize_issue_body({k: v for k, v in ISSUE_BODY.items() if k != "sale_id"})
    assert generated["sale_id"].startswith("SIM-")

    with pytest.raises(ValidationError):
        normalize_issue_body({**ISSUE_BODY, "store_id": ""})
    with pytest.raises(ValidationError):
        normalize_issue_body({**ISSUE_BODY, "items": []})
    with pytest.raises(ValidationError):
        normalize_issue_body(["not", "a", "dict"])


def test_build_issue_body_from_snapshot(make_snapshot):
    machine = SessionStateMachine()
    snapshot = make_snapshot()
    snapshot = machine.apply(snapshot, Intent.of(IntentType.SESSION_READY)).snapshot
    with pytest.raises(ValidationError):
        build_issue_body(snapshot)

    snapshot = machine.apply(
        snapshot,
        Intent.of(IntentType.ADD_ITEM, name="Coffee", unit_price=1.20, qty=2, vat_rate=0.23),
    ).snapshot
    body = build_issue_body(snapshot, issued_at="2026-01-01T00:00:00Z")

    assert body["sale_id"] == snapshot.active_sale_id
    assert body["total"] == snapshot.cart.total
    assert body["items"][0]["line_total"] == 2.4
    assert "receipt_number" not in body
