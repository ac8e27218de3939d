"""
Typed payloads of the durable audit events.

Each event type has its own payload model; `build_payload` is the only way a
payload reaches the event log, so every stored payload has been validated
against the schema of its event type.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, ConfigDict

from pos_sim.constants import (
    EventType,
    FlowStage,
    IssuanceMode,
    NetworkMode,
    PaymentOutcome,
    PaymentState,
    PosSimMode,
    PrintReason,
    ScanState,
)
from pos_sim.validation import ValidationError


class _Undefined:
    """Marker for a value that was never set (distinct from an explicit None)."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNDEFINED"

    def __bool__(self) -> bool:
        return False


UNDEFINED = _Undefined()


def strip_undefined(value: Any) -> Any:
    """Drop every UNDEFINED value (recursively) from a JSON-like structure."""
    if isinstance(value, dict):
        return {
            key: strip_undefined(item) for key, item in value.items() if item is not UNDEFINED
        }
    if isinstance(value, (list, tuple)):
        return [strip_undefined(item) for item in value if item is not UNDEFINED]
    return value


class EventPayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    sale_id: str | None = None


class SessionCreatedPayload(EventPayload):
    session_code: str
    customer_url: str
    mode: PosSimMode


class NewSaleStartedPayload(EventPayload):
    previous_sale_id: str | None = None


class ResetRequestedPayload(EventPayload):
    previous_sale_id: str | None = None


class CartUpdatedPayload(EventPayload):
    action: str
    line_no: int | None = None
    sku: str | None = None
    qty: int | None = None
    items_count: int
    total: float


class CartClearedPayload(EventPayload):
    items_removed: int


class CheckoutInitiatedPayload(EventPayload):
    currency: str
    total: float
    items_count: int


class StageChangedPayload(EventPayload):
    from_stage: FlowStage
    to_stage: FlowStage


class PaymentProcessingPayload(EventPayload):
    amount: float
    currency: str
    network_mode: NetworkMode
    delay_ms: int


class PaymentResultPayload(EventPayload):
    payment_state: PaymentState
    outcome: PaymentOutcome
    network_mode: NetworkMode


class ReceiptIssuanceStartedPayload(EventPayload):
    issuance_mode: IssuanceMode
    attempt: int = 1


class ReceiptTokenReadyPayload(EventPayload):
    token_id: str
    public_url: str


class ReceiptIssuanceFailedPayload(EventPayload):
    message: str
    code: str | None = None


class CustomerJoinedPayload(EventPayload):
    session_code: str


class CustomerScannedPayload(EventPayload):
    outcome: ScanState
    token_id: str | None = None
    message: str | None = None


class FallbackPrintedPayload(EventPayload):
    reason: PrintReason


PAYLOAD_TYPES: dict[EventType, type[EventPayload]] = {
    EventType.SESSION_CREATED: SessionCreatedPayload,
    EventType.NEW_SALE_STARTED: NewSaleStartedPayload,
    EventType.RESET_REQUESTED: ResetRequestedPayload,
    EventType.CART_UPDATED: CartUpdatedPayload,
    EventType.CART_CLEARED: CartClearedPayload,
    EventType.CHECKOUT_INITIATED: CheckoutInitiatedPayload,
    EventType.STAGE_CHANGED: StageChangedPayload,
    EventType.PAYMENT_PROCESSING: PaymentProcessingPayload,
    EventType.PAYMENT_RESULT: PaymentResultPayload,
    EventType.RECEIPT_ISSUANCE_STARTED: ReceiptIssuanceStartedPayload,
    EventType.RECEIPT_TOKEN_READY: ReceiptTokenReadyPayload,
    EventType.RECEIPT_ISSUANCE_FAILED: ReceiptIssuanceFailedPayload,
    EventType.CUSTOMER_JOINED: CustomerJoinedPayload,
    EventType.CUSTOMER_SCANNED: CustomerScannedPayload,
    EventType.FALLBACK_PRINTED: FallbackPrintedPayload,
}


def build_payload(event_type: EventType | str, data: dict[str, Any] | EventPayload) -> dict:
    """
    Validate `data` against the payload model of `event_type` and return the
    JSON-ready dict. UNDEFINED values are dropped first, never rejected.
    """
    try:
        event_type = EventType(event_type)
    except ValueError:
        raise ValidationError(f"Unknown event type: {event_type}") from None

    model = PAYLOAD_TYPES[event_type]
    if isinstance(data, EventPayload):
        if not isinstance(data, model):
            raise ValidationError(
                f"{type(data).__name__} is not a payload of {event_type.value}"
            )
        return data.model_dump(mode="json")

    cleaned = strip_undefined(dict(data or {}))
    try:
        return model.model_validate(cleaned).model_dump(mode="json")
    except ValueError as exc:
        raise ValidationError(f"Invalid payload for {event_type.value}: {exc}") from exc


def parse_payload(event_type: EventType | str, payload: dict[str, Any]) -> EventPayload | None:
    """Typed view of a stored payload; None when it does not match its schema."""
    try:
        model = PAYLOAD_TYPES[EventType(event_type)]
        return model.model_validate(payload or {})
    except ValueError:
        return None


@dataclass(frozen=True)
class PendingEvent:
    """An event decided by the state machine, not yet appended to the log."""

    event_type: EventType
    payload: EventPayload

    def as_payload_dict(self) -> dict:
        return build_payload(self.event_type, self.payload)
