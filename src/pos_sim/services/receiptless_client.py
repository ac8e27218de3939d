"""
Client for the trusted receipt backend (issue, verify and consume receipts).

Every call is signed with the RL1 request signer and bounded by the configured
timeout. Non-success answers, invalid bodies, network errors and timeouts all
surface as `UpstreamError`, which callers map to a domain outcome (issuance
failure or a print-the-receipt instruction).
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlparse

import requests
from pydantic import ValidationError as PydanticValidationError

from pos_sim.config import AppConfig
from pos_sim.constants import DEFAULT_CONSUME_REASON, HEADER_TERMINAL_KEY, HEADER_VERIFIER_KEY
from pos_sim.datetime_utils import iso_now, now_ms
from pos_sim.errors import ConfigurationError, MissingVerifierKeyError, UpstreamError
from pos_sim.security import RequestSigner, new_nonce, new_uuid_nonce
from pos_sim.snapshot import ReceiptInfo, Snapshot
from pos_sim.validation import ValidationError, require_text

logger = logging.getLogger(__name__)


def build_function_url(base_url: str, function_name: str) -> str:
    """
    URL of a backend function.

    Hosts on the dedicated functions domain take the function name directly;
    project URLs route through `/functions/v1/`.
    """
    base = base_url.rstrip("/")
    hostname = (urlparse(base).hostname or "").lower()
    if hostname.endswith(".functions.supabase.co"):
        return f"{base}/{function_name}"
    return f"{base}/functions/v1/{function_name}"


def encode_body(body: dict[str, Any]) -> bytes:
    """The exact bytes that are hashed, signed and sent."""
    return json.dumps(body, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


@dataclass
class BackendResponse:
    status: int
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


def build_issue_body(
    snapshot: Snapshot, issued_at: str | None = None, receipt_number: str | None = None
) -> dict[str, Any]:
    """Issuance request body for the active sale of a snapshot."""
    if not snapshot.cart.items:
        raise ValidationError("items must not be empty")
    body = {
        "retailer_id": snapshot.terminal.retailer_id,
        "store_id": snapshot.terminal.store_id,
        "terminal_code": snapshot.terminal.terminal_code,
        "sale_id": snapshot.active_sale_id,
        "issued_at": issued_at or iso_now(),
        "currency": snapshot.cart.currency,
        "subtotal": snapshot.cart.subtotal,
        "vat_total": snapshot.cart.vat_total,
        "total": snapshot.cart.total,
        "items": [item.model_dump(mode="json") for item in snapshot.cart.items],
    }
    if receipt_number:
        body["receipt_number"] = receipt_number
    return body


def normalize_issue_body(raw: Any) -> dict[str, Any]:
    """
    Validate an issuance body received from a caller.

    The terminal identity must be complete and the item list non-empty. A body
    without a sale id is tied to the first id it carries, or to a generated
    `SIM-<ms>` id.
    """
    if not isinstance(raw, dict):
        raise ValidationError("Invalid JSON body")
    try:
        retailer_id = require_text(raw.get("retailer_id"), "retailer_id")
        store_id = require_text(raw.get("store_id"), "store_id")
        terminal_code = require_text(raw.get("terminal_code"), "terminal_code")
    except ValidationError:
        raise ValidationError("Missing store_id / terminal_code / retailer_id") from None
    items = raw.get("items")
    if not isinstance(items, list) or not items:
        raise ValidationError("items must not be empty")

    sale_id = next(
        (
            raw[key].strip()
            for key in ("sale_id", "active_sale_id", "session_id")
            if isinstance(raw.get(key), str) and raw[key].strip()
        ),
        f"SIM-{now_ms()}",
    )
    return {
        **raw,
        "retailer_id": retailer_id,
        "store_id": store_id,
        "terminal_code": terminal_code,
        "sale_id": sale_id,
    }


class ReceiptlessClient:
    def __init__(self, config: AppConfig, signer: RequestSigner | None = None):
        self.config = config
        self.signer = signer or RequestSigner(config.rl_signing_secret)
        self.timeout = config.upstream_timeout_seconds

    # --- plumbing ------------------------------------------------------

    def function_url(self, function_name: str) -> str:
        if not self.config.supabase_url:
            raise ConfigurationError("Missing SUPABASE_URL", code="CONFIG_002")
        return build_function_url(self.config.supabase_url, function_name)

    def _backend_headers(self, with_terminal_key: bool) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.config.supabase_anon_key:
            headers["apikey"] = self.config.supabase_anon_key
            headers["Authorization"] = f"Bearer {self.config.supabase_anon_key}"
        if with_terminal_key:
            if not self.config.terminal_key:
                raise ConfigurationError("Missing TERMINAL_KEY", code="CONFIG_003")
            headers[HEADER_TERMINAL_KEY] = self.config.terminal_key
        return headers

    def _post(
        self,
        function_name: str,
        body: dict[str, Any],
        headers: dict[str, str],
        nonce: str | None = None,
    ) -> BackendResponse:
        url = self.function_url(function_name)
        raw_body = encode_body(body)
        signed = self.signer.headers("POST", url, raw_body, nonce=nonce)

        try:
            response = requests.post(
                url,
                data=raw_body,
                headers={**headers, **signed},
                timeout=self.timeout,
            )
        except requests.exceptions.Timeout as exc:
            logger.warning("Receipt backend timeout on %s", function_name)
            raise UpstreamError(
                f"{function_name} timed out after {self.timeout}s", code="UPSTREAM_002"
            ) from exc
        except requests.exceptions.RequestException as exc:
            logger.warning("Receipt backend unreachable on %s: %s", function_name, exc)
            raise UpstreamError(f"{function_name} unreachable: {exc!s}") from exc

        try:
            parsed = response.json()
        except ValueError:
            parsed = {"raw": response.text}
        if not isinstance(parsed, dict):
            parsed = {"value": parsed}
        return BackendResponse(status=response.status_code, data=parsed)

    # --- operations ----------------------------------------------------

    def issue_receipt(self, body: dict[str, Any]) -> ReceiptInfo:
        """
        Ask the backend to ingest a sale and mint a receipt token.

        Raises:
            ConfigurationError: backend URL, terminal key or signing secret missing
            UpstreamError: non-2xx answer, invalid body, network error or timeout
        """
        function_name = self.config.receipt_ingest_function
        result = self._post(
            function_name, body, self._backend_headers(with_terminal_key=True), nonce=new_nonce()
        )
        if not result.ok:
            logger.warning(
                "Receipt issuance rejected",
                extra={"status": result.status, "error": result.data.get("error")},
            )
            raise UpstreamError(
                f"{function_name} returned non-2xx",
                details=result.data,
                status=result.status,
            )

        token_id = result.data.get("token_id")
        public_url = result.data.get("public_url")
        if not token_id or not public_url:
            raise UpstreamError(
                f"{function_name} response is missing token_id or public_url",
                details=result.data,
                status=result.status,
            )
        try:
            return ReceiptInfo(
                token_id=str(token_id),
                public_url=str(public_url),
                qr_url=str(result.data.get("qr_url") or public_url),
                preview_url=result.data.get("preview_url"),
            )
        except PydanticValidationError as exc:
            raise UpstreamError(
                f"{function_name} returned an invalid receipt: {exc.error_count()} field error(s)",
                details=result.data,
                status=result.status,
            ) from exc

    def validate_receipt(
        self, body: dict[str, Any] | bytes | str, verifier_key: str | None
    ) -> BackendResponse:
        """
        Verify a receipt token on behalf of a returns desk.

        The backend's own status is returned unchanged: a token that is unknown
        or belongs to another store is an answer, not an upstream failure.
        """
        if not verifier_key or not verifier_key.strip():
            raise MissingVerifierKeyError("missing_verifier_key")
        if isinstance(body, (bytes, str)):
            try:
                body = json.loads(body or b"{}")
            except ValueError:
                raise ValidationError("Invalid JSON body") from None
        headers = self._backend_headers(with_terminal_key=False)
        headers[HEADER_VERIFIER_KEY] = verifier_key.strip()
        return self._post(
            self.config.returns_verify_function, body, headers, nonce=new_uuid_nonce()
        )

    def consume_receipt(
        self,
        token_id: str,
        store_id: str,
        terminal_code: str,
        retailer_id: str | None = None,
        reason: str | None = None,
        verifier_key: str | None = None,
    ) -> BackendResponse:
        """
        Mark a receipt token as consumed (refund or exchange).

        Consuming twice is not an error: the backend answers with
        `already_consumed: true` and the original `consumed_at`.
        """
        body: dict[str, Any] = {
            "token_id": require_text(token_id, "token_id"),
            "store_id": require_text(store_id, "store_id"),
            "terminal_code": require_text(terminal_code, "terminal_code"),
            "reason": reason or DEFAULT_CONSUME_REASON,
        }
        if retailer_id:
            body["retailer_id"] = retailer_id
        headers = self._backend_headers(with_terminal_key=True)
        if verifier_key:
            headers[HEADER_VERIFIER_KEY] = verifier_key
        function_name = self.config.receipt_consume_function
        result = self._post(function_name, body, headers, nonce=new_nonce())
        if not result.ok:
            raise UpstreamError(
                f"{function_name} returned non-2xx", details=result.data, status=result.status
            )
        return result
