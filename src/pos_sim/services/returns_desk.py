"""
Returns desk: scan a receipt QR, verify the token, consume it for a refund.

The desk is a small view model over the receipt backend's verify and consume
answers. Known "this token is not valid here" answers become INVALID; anything
else that goes wrong is a NETWORK_ERROR the clerk can retry.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable
from urllib.parse import urlparse

from pos_sim.constants import DEFAULT_CONSUME_REASON
from pos_sim.datetime_utils import now_ms
from pos_sim.errors import ConfigurationError, MissingVerifierKeyError, UpstreamError
from pos_sim.services.receiptless_client import ReceiptlessClient
from pos_sim.validation import ValidationError

logger = logging.getLogger(__name__)

UUID_RE = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[1-5][0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$", re.I
)

INVALID_ERRORS = {"token_not_found", "invalid_token_id_uuid", "invalid_store_id_uuid"}

# Repeated scans of the same token inside this window are ignored.
LOOKUP_DEBOUNCE_MS = 1500


class ReturnDeskStatus(str, Enum):
    IDLE = "IDLE"
    LOOKUP_LOADING = "LOOKUP_LOADING"
    ELIGIBLE = "ELIGIBLE"
    CONSUMED = "CONSUMED"
    INVALID = "INVALID"
    NETWORK_ERROR = "NETWORK_ERROR"
    CONSUME_LOADING = "CONSUME_LOADING"


@dataclass
class ReturnDeskView:
    status: ReturnDeskStatus = ReturnDeskStatus.IDLE
    reason: str | None = None
    message: str | None = None
    request_id: str | None = None
    token: dict[str, Any] = field(default_factory=dict)
    receipt: dict[str, Any] = field(default_factory=dict)
    items: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "reason": self.reason,
            "message": self.message,
            "request_id": self.request_id,
            "token": self.token,
            "receipt": self.receipt,
            "items": self.items,
        }


def is_uuid(value: str) -> bool:
    return bool(UUID_RE.match(value))


def extract_token_id(scan: str | None) -> str | None:
    """Token id from a raw scan: a bare UUID or a `/r/<token>` receipt URL."""
    raw = (scan or "").strip()
    if not raw:
        return None
    if is_uuid(raw):
        return raw
    parts = [part for part in urlparse(raw).path.split("/") if part]
    if "r" in parts:
        idx = parts.index("r")
        if idx + 1 < len(parts) and is_uuid(parts[idx + 1]):
            return parts[idx + 1]
    return None


def _is_consumed(token: dict[str, Any], receipt: dict[str, Any]) -> bool:
    return (
        str(receipt.get("status") or "").lower() == "consumed"
        or receipt.get("consumed_at") is not None
        or str(token.get("status") or "").lower() == "consumed"
        or token.get("consumed_at") is not None
    )


class ReturnsDesk:
    def __init__(
        self,
        client: ReceiptlessClient,
        store_id: str,
        terminal_code: str,
        verifier_key: str,
        clock: Callable[[], int] = now_ms,
    ):
        self.client = client
        self.store_id = (store_id or "").strip()
        self.terminal_code = (terminal_code or "").strip()
        self.verifier_key = (verifier_key or "").strip()
        self.clock = clock
        self.view = ReturnDeskView()
        self._last_lookup: tuple[str, int] | None = None
        self._token_id: str | None = None

    def _configured(self) -> bool:
        return is_uuid(self.store_id) and bool(self.terminal_code) and bool(self.verifier_key)

    def _network_error(self, message: str) -> ReturnDeskView:
        self.view = ReturnDeskView(status=ReturnDeskStatus.NETWORK_ERROR, message=message)
        return self.view

    def lookup(self, scan: str) -> ReturnDeskView:
        """Verify the scanned token and show whether it can be refunded."""
        token_id = extract_token_id(scan)
        if token_id is None:
            self.view = ReturnDeskView(status=ReturnDeskStatus.INVALID, reason="MALFORMED")
            return self.view
        if not self._configured():
            return self._network_error("Missing store/terminal/verifier key configuration.")

        now = self.clock()
        if self._last_lookup is not None:
            last_token, last_at = self._last_lookup
            if last_token == token_id and now - last_at < LOOKUP_DEBOUNCE_MS:
                return self.view
        self._last_lookup = (token_id, now)
        return self._verify(token_id)

    def _verify(self, token_id: str) -> ReturnDeskView:
        self._token_id = token_id
        self.view = ReturnDeskView(status=ReturnDeskStatus.LOOKUP_LOADING)
        body = {
            "token_id": token_id,
            "store_id": self.store_id,
            "terminal_code": self.terminal_code,
        }
        try:
            result = self.client.validate_receipt(body, self.verifier_key)
        except (UpstreamError, ConfigurationError, MissingVerifierKeyError) as exc:
            logger.warning("Receipt verify failed: %s", exc)
            return self._network_error(str(exc))

        data = result.data
        request_id = data.get("request_id")
        if not data.get("ok"):
            error = str(data.get("error") or f"http_{result.status}")
            if error in INVALID_ERRORS:
                self.view = ReturnDeskView(
                    status=ReturnDeskStatus.INVALID, reason=error, request_id=request_id
                )
                return self.view
            return self._network_error(f"{error} ({request_id})")

        token = data.get("token") or {}
        receipt = data.get("receipt") or {}
        self.view = ReturnDeskView(
            status=(
                ReturnDeskStatus.CONSUMED
                if _is_consumed(token, receipt)
                else ReturnDeskStatus.ELIGIBLE
            ),
            request_id=request_id,
            token=token,
            receipt=receipt,
            items=data.get("items") or [],
        )
        return self.view

    def consume(self, reason: str = DEFAULT_CONSUME_REASON) -> ReturnDeskView:
        """
        Consume the eligible token, then verify again to show its final state.

        Consuming is irreversible, so it is refused unless the desk currently
        shows an ELIGIBLE receipt.
        """
        if self.view.status != ReturnDeskStatus.ELIGIBLE:
            raise ValidationError("Nothing eligible to consume")
        token_id = self.view.token.get("token_id") or self._token_id
        self.view = ReturnDeskView(
            status=ReturnDeskStatus.CONSUME_LOADING, receipt=self.view.receipt
        )
        try:
            result = self.client.consume_receipt(
                token_id,
                self.store_id,
                self.terminal_code,
                reason=reason,
                verifier_key=self.verifier_key,
            )
        except (UpstreamError, ConfigurationError) as exc:
            logger.warning("Receipt consume failed: %s", exc)
            return self._network_error(str(exc))

        if not result.data.get("ok", True):
            error = result.data.get("error")
            return self._network_error(f"{error} ({result.data.get('request_id')})")

        logger.info(
            "Receipt consumed",
            extra={
                "token_id": token_id,
                "already_consumed": bool(result.data.get("already_consumed")),
            },
        )
        return self._verify(token_id)
