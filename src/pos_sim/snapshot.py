"""
Pydantic models of the canonical session snapshot.

The snapshot is the single whole-state document of a session. It is replaced
wholesale on every mutation; nothing here patches a stored document in place.
"""

from __future__ import annotations

import uuid

from pydantic import BaseModel, ConfigDict, Field, model_validator

from pos_sim import money
from pos_sim.constants import (
    DEFAULT_CURRENCY,
    CustomerScanSim,
    FlowStage,
    IssuanceMode,
    IssuanceState,
    NetworkMode,
    PaymentOutcome,
    PaymentState,
    PosSimMode,
    PrintFallback,
    PrintReason,
    ScanState,
)
from pos_sim.datetime_utils import iso_now


class SnapshotModel(BaseModel):
    model_config = ConfigDict(extra="ignore", validate_assignment=False)


class TerminalInfo(SnapshotModel):
    retailer_id: str = Field(..., min_length=1)
    store_id: str = Field(..., min_length=1)
    terminal_code: str = Field(..., min_length=1)


class Toggles(SnapshotModel):
    payment_outcome: PaymentOutcome = PaymentOutcome.SUCCESS
    network_mode: NetworkMode = NetworkMode.NORMAL
    issuance_mode: IssuanceMode = IssuanceMode.NORMAL
    print_fallback: PrintFallback = PrintFallback.ENABLED
    customer_scan_sim: CustomerScanSim = CustomerScanSim.NONE


class CartItem(SnapshotModel):
    line_no: int = Field(..., ge=1)
    sku: str | None = None
    name: str = Field(..., min_length=1)
    qty: int = Field(..., ge=1)
    unit_price: float = Field(..., ge=0)
    line_total: float = 0.0
    vat_rate: float | None = None
    vat_amount: float | None = None

    def priced(self) -> CartItem:
        """Copy with line_total and vat_amount recomputed from price and qty."""
        line_total, vat_amount = money.line_amounts(self.unit_price, self.qty, self.vat_rate)
        return self.model_copy(update={"line_total": line_total, "vat_amount": vat_amount})


class Cart(SnapshotModel):
    currency: str = DEFAULT_CURRENCY
    items: list[CartItem] = Field(default_factory=list)
    subtotal: float = 0.0
    vat_total: float = 0.0
    total: float = 0.0

    @model_validator(mode="after")
    def _unique_line_numbers(self) -> Cart:
        line_numbers = [item.line_no for item in self.items]
        if len(line_numbers) != len(set(line_numbers)):
            raise ValueError("cart line numbers must be unique")
        return self

    @property
    def is_empty(self) -> bool:
        return not self.items or self.total <= 0

    def next_line_no(self) -> int:
        return max((item.line_no for item in self.items), default=0) + 1

    def find_line(self, line_no: int | None = None, sku: str | None = None) -> CartItem | None:
        for item in self.items:
            if line_no is not None and item.line_no == line_no:
                return item
            if line_no is None and sku is not None and item.sku == sku:
                return item
        return None

    def with_items(self, items: list[CartItem]) -> Cart:
        """Return a cart holding `items` with every derived amount recomputed."""
        priced = [item.priced() for item in items]
        subtotal, vat_total, total = money.cart_totals(
            (item.line_total, item.vat_amount or 0.0) for item in priced
        )
        return Cart(
            currency=self.currency,
            items=priced,
            subtotal=subtotal,
            vat_total=vat_total,
            total=total,
        )


class Flow(SnapshotModel):
    stage: FlowStage = FlowStage.BOOT
    payment_state: PaymentState = PaymentState.IDLE
    issuance_state: IssuanceState = IssuanceState.IDLE


class ReceiptInfo(SnapshotModel):
    token_id: str
    public_url: str
    qr_url: str
    preview_url: str | None = None


class ScanInfo(SnapshotModel):
    state: ScanState = ScanState.NONE
    scanned_at: str | None = None
    message: str | None = None


class FallbackInfo(SnapshotModel):
    printed: bool = False
    print_reason: PrintReason | None = None


class Snapshot(SnapshotModel):
    session_id: str | None = None
    session_code: str
    mode: PosSimMode = PosSimMode.WEB_POS
    created_at: str = Field(default_factory=iso_now)

    terminal: TerminalInfo
    toggles: Toggles = Field(default_factory=Toggles)

    active_sale_id: str | None = None

    cart: Cart = Field(default_factory=Cart)
    flow: Flow = Field(default_factory=Flow)
    receipt: ReceiptInfo | None = None
    scan: ScanInfo = Field(default_factory=ScanInfo)
    fallback: FallbackInfo = Field(default_factory=FallbackInfo)

    def to_json(self) -> dict:
        return self.model_dump(mode="json")

    def clone(self, **update) -> Snapshot:
        """Deep copy with top-level fields replaced."""
        copied = self.model_copy(deep=True)
        for key, value in update.items():
            setattr(copied, key, value)
        return copied

    def awaiting_issuance(self) -> bool:
        """True when the sale is paid and no receipt work has started yet."""
        return (
            self.flow.stage == FlowStage.RESULT
            and self.flow.payment_state == PaymentState.APPROVED
            and self.flow.issuance_state == IssuanceState.IDLE
            and self.receipt is None
        )

    def can_print_fallback(self) -> bool:
        return (
            self.toggles.print_fallback == PrintFallback.ENABLED
            and self.flow.payment_state == PaymentState.APPROVED
            and not self.fallback.printed
        )


def new_sale_id() -> str:
    return str(uuid.uuid4())


def initial_snapshot(
    session_id: str,
    session_code: str,
    mode: PosSimMode | str,
    terminal: TerminalInfo,
    toggles: Toggles | None = None,
    currency: str = DEFAULT_CURRENCY,
) -> Snapshot:
    """The snapshot a freshly created session starts from (stage BOOT)."""
    return Snapshot(
        session_id=session_id,
        session_code=session_code,
        mode=PosSimMode(mode),
        terminal=terminal,
        toggles=toggles or Toggles(),
        active_sale_id=new_sale_id(),
        cart=Cart(currency=currency),
    )
