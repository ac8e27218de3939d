"""
Request signing helpers for calls to the trusted receipt backend.

Canonical string (newline-joined, no trailing newline):

    RL1
    <METHOD>
    <PATH>          function name only, leading slash, no host or query
    <TS>            milliseconds since the epoch
    <NONCE>
    <BODYHASH>      sha256 hex of the exact body bytes

The signature is HMAC-SHA256 of that string under the shared secret,
base64url-encoded without padding.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import secrets
import uuid
from dataclasses import dataclass
from urllib.parse import urlparse

from pos_sim.constants import (
    HEADER_BODY_HASH,
    HEADER_NONCE,
    HEADER_SIGNATURE,
    HEADER_TIMESTAMP,
    SIGNATURE_VERSION,
)
from pos_sim.datetime_utils import now_ms
from pos_sim.errors import ConfigurationError


def b64url(raw: bytes) -> str:
    """base64url without '=' padding."""
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def sha256_hex(body: bytes | str) -> str:
    if isinstance(body, str):
        body = body.encode("utf-8")
    return hashlib.sha256(body).hexdigest()


def new_nonce(num_bytes: int = 18) -> str:
    return b64url(secrets.token_bytes(num_bytes))


def new_uuid_nonce() -> str:
    return str(uuid.uuid4())


def canonical_path(url_or_path: str) -> str:
    """
    Reduce a function URL (or path) to `/<function-name>`.

    The backend canonicalizes on the function name only, so
    `https://x.supabase.co/functions/v1/receipt-ingest?a=1` and
    `/functions/v1/receipt-ingest` both become `/receipt-ingest`.
    """
    path = urlparse(url_or_path).path if "://" in url_or_path else url_or_path.split("?", 1)[0]
    segments = [segment for segment in path.split("/") if segment]
    if not segments:
        raise ValueError(f"Cannot derive a function path from '{url_or_path}'")
    return f"/{segments[-1]}"


def canonical_string(method: str, path: str, ts: str, nonce: str, body_hash: str) -> str:
    return "\n".join([SIGNATURE_VERSION, method.upper(), path, str(ts), nonce, body_hash])


def sign(secret: str, canonical: str) -> str:
    if not secret:
        raise ConfigurationError("Missing RL_SIGNING_SECRET", code="CONFIG_001")
    digest = hmac.new(secret.encode("utf-8"), canonical.encode("utf-8"), hashlib.sha256).digest()
    return b64url(digest)


@dataclass(frozen=True)
class SignedHeaders:
    ts: str
    nonce: str
    body_hash: str
    signature: str

    def as_headers(self) -> dict[str, str]:
        return {
            HEADER_TIMESTAMP: self.ts,
            HEADER_NONCE: self.nonce,
            HEADER_BODY_HASH: self.body_hash,
            HEADER_SIGNATURE: self.signature,
        }


class RequestSigner:
    """
    Deterministic signer for outbound backend requests.

    Timestamp and nonce may be injected so that a signature can be reproduced;
    when omitted, the current time and a fresh random nonce are used.
    """

    def __init__(self, secret: str, nonce_factory=new_nonce, clock=now_ms):
        self._secret = secret
        self._nonce_factory = nonce_factory
        self._clock = clock

    def sign_request(
        self,
        method: str,
        path: str,
        body: bytes | str,
        ts: str | int | None = None,
        nonce: str | None = None,
    ) -> SignedHeaders:
        if not self._secret:
            raise ConfigurationError("Missing RL_SIGNING_SECRET", code="CONFIG_001")
        ts_value = str(ts if ts is not None else self._clock())
        nonce_value = nonce or self._nonce_factory()
        body_hash = sha256_hex(body)
        canonical = canonical_string(method, canonical_path(path), ts_value, nonce_value, body_hash)
        return SignedHeaders(
            ts=ts_value,
            nonce=nonce_value,
            body_hash=body_hash,
            signature=sign(self._secret, canonical),
        )

    def headers(self, method: str, path: str, body: bytes | str, **kwargs) -> dict[str, str]:
        return self.sign_request(method, path, body, **kwargs).as_headers()


def verify_signature(
    secret: str, method: str, path: str, headers: dict[str, str], body: bytes
) -> bool:
    """
    Check a signed request against its headers.

    Replay and clock-skew policies belong to the receiving service; this only
    answers whether the four headers match the body under `secret`.
    """
    try:
        ts = headers[HEADER_TIMESTAMP]
        nonce = headers[HEADER_NONCE]
        body_hash = headers[HEADER_BODY_HASH]
        signature = headers[HEADER_SIGNATURE]
    except KeyError:
        return False
    if not hmac.compare_digest(body_hash, sha256_hex(body)):
        return False
    expected = sign(secret, canonical_string(method, canonical_path(path), ts, nonce, body_hash))
    return hmac.compare_digest(expected, signature)
