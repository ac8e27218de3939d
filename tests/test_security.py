"""RL1 request signing."""

import pytest

from pos_sim.constants import HEADER_BODY_HASH, HEADER_NONCE, HEADER_SIGNATURE, HEADER_TIMESTAMP
from pos_sim.errors import ConfigurationError
from pos_sim.security import (
    RequestSigner,
    canonical_path,
    canonical_string,
    new_nonce,
    sha256_hex,
    sign,
    verify_signature,
)

BASE = dict(
    method="POST",
    path="/receipt-ingest",
    ts="1700000000000",
    nonce="abc",
    body_hash=sha256_hex(b"{}"),
)


def _signature(secret="s3cret", **overrides):
    parts = {**BASE, **overrides}
    return sign(secret, canonical_string(**parts))


def test_signature_is_reproducible():
    assert _signature() == _signature()


@pytest.mark.parametrize(
    "override",
    [
        {"method": "PUT"},
        {"path": "/receipt-consume"},
        {"ts": "1700000000001"},
        {"nonce": "abd"},
        {"body_hash": sha256_hex(b"{ }")},
    ],
)
def test_changing_any_input_changes_the_signature(override):
    assert _signature(**override) != _signature()


def test_changing_the_secret_changes_the_signature():
    assert _signature(secret="other") != _signature()


def test_canonical_string_layout():
    canonical = canonical_string("post", "/receipt-ingest", "1", "n", "h")
    assert canonical == "RL1\nPOST\n/receipt-ingest\n1\nn\nh"


@pytest.mark.parametrize(
    "raw",
    [
        "https://demo.supabase.co/functions/v1/receipt-ingest",
        "https://demo.functions.supabase.co/receipt-ingest?x=1",
        "/functions/v1/receipt-ingest",
        "receipt-ingest",
    ],
)
def test_canonical_path_is_the_function_name(raw):
    assert canonical_path(raw) == "/receipt-ingest"


def test_signature_is_base64url_without_padding():
    signature = _signature()
    assert "=" not in signature
    assert "+" not in signature and "/" not in signature


def test_nonce_is_18_random_bytes_base64url():
    nonce = new_nonce()
    assert len(nonce) == 24
    assert nonce != new_nonce()


def test_signer_with_injected_clock_and_nonce():
    signer = RequestSigner("s3cret", nonce_factory=lambda: "fixed", clock=lambda: 42)
    headers = signer.headers("POST", "https://x.supabase.co/functions/v1/receipt-ingest", b"{}")
    assert headers[HEADER_TIMESTAMP] == "42"
    assert headers[HEADER_NONCE] == "fixed"
    assert headers[HEADER_BODY_HASH] == sha256_hex(b"{}")
    assert headers[HEADER_SIGNATURE] == sign(
        "s3cret", canonical_string("POST", "/receipt-ingest", "42", "fixed", sha256_hex(b"{}"))
    )


def test_verify_signature_round_trip_and_tamper():
    signer = RequestSigner("s3cret")
    body = b'{"a":1}'
    headers = signer.headers("POST", "/receipt-ingest", body)
    assert verify_signature("s3cret", "POST", "/receipt-ingest", headers, body)
    assert not verify_signature("s3cret", "POST", "/receipt-ingest", headers, b'{"a":2}')
    assert not verify_signature("wrong", "POST", "/receipt-ingest", headers, body)
    assert not verify_signature("s3cret", "POST", "/receipt-ingest", {}, body)


def test_missing_secret_is_a_configuration_error():
    with pytest.raises(ConfigurationError) as exc_info:
        RequestSigner("").headers("POST", "/receipt-ingest", b"{}")
    assert exc_info.value.code == "CONFIG_001"
