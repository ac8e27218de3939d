"""
Session State Machine.

Given the current snapshot and one intent, computes the next snapshot and at
most one audit event. The machine does no I/O: timers, backend calls, storage
and publishing belong to the session actor, which reads the follow-ups and
timers a transition asks for.

Three nested machines make up the flow:

- stage:     BOOT -> CART <-> CHECKOUT -> PROCESSING -> RESULT, RESULT -> CART (new sale)
- payment:   IDLE -> INITIATED -> PROCESSING -> APPROVED | DECLINED | TIMEOUT | NETWORK_ERROR
- issuance:  IDLE -> INGESTING -> TOKEN_READY | FAILED, plus the FALLBACK_PRINTED marker
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from pos_sim.config import PaymentTimings
from pos_sim.constants import (
    FALLBACK_REPLACEABLE_ISSUANCE,
    PAYABLE_STAGES,
    STAGE_TRANSITIONS,
    ChannelMessageType,
    CustomerScanSim,
    EventType,
    FlowStage,
    IssuanceState,
    PaymentOutcome,
    PaymentState,
    PrintReason,
    ScanState,
)
from pos_sim.datetime_utils import iso_now
from pos_sim.errors import IntentRejected
from pos_sim.events import (
    CartClearedPayload,
    CartUpdatedPayload,
    CheckoutInitiatedPayload,
    CustomerScannedPayload,
    FallbackPrintedPayload,
    NewSaleStartedPayload,
    PaymentProcessingPayload,
    PaymentResultPayload,
    PendingEvent,
    ReceiptIssuanceFailedPayload,
    ReceiptIssuanceStartedPayload,
    ReceiptTokenReadyPayload,
    ResetRequestedPayload,
    StageChangedPayload,
)
from pos_sim.services import payment_simulator
from pos_sim.snapshot import (
    Cart,
    CartItem,
    FallbackInfo,
    Flow,
    ReceiptInfo,
    ScanInfo,
    Snapshot,
    Toggles,
    new_sale_id,
)


class IntentType(str, Enum):
    SESSION_READY = "SESSION_READY"
    ADD_ITEM = "ADD_ITEM"
    INCREMENT_ITEM = "INCREMENT_ITEM"
    DECREMENT_ITEM = "DECREMENT_ITEM"
    REMOVE_ITEM = "REMOVE_ITEM"
    CLEAR_CART = "CLEAR_CART"
    START_CHECKOUT = "START_CHECKOUT"
    BACK_TO_CART = "BACK_TO_CART"
    PAY = "PAY"
    RESOLVE_PAYMENT = "RESOLVE_PAYMENT"
    BEGIN_ISSUANCE = "BEGIN_ISSUANCE"
    RETRY_ISSUANCE = "RETRY_ISSUANCE"
    ISSUANCE_SUCCEEDED = "ISSUANCE_SUCCEEDED"
    ISSUANCE_FAILED = "ISSUANCE_FAILED"
    PRINT_FALLBACK = "PRINT_FALLBACK"
    CUSTOMER_SCANNED = "CUSTOMER_SCANNED"
    CUSTOMER_JOINED = "CUSTOMER_JOINED"
    NEW_SALE = "NEW_SALE"
    RESET = "RESET"
    UPDATE_TOGGLES = "UPDATE_TOGGLES"


# Intents that only the host's own timers and backend calls produce.
INTERNAL_INTENTS = {
    IntentType.RESOLVE_PAYMENT,
    IntentType.ISSUANCE_SUCCEEDED,
    IntentType.ISSUANCE_FAILED,
}

CART_INTENTS = {
    IntentType.ADD_ITEM,
    IntentType.INCREMENT_ITEM,
    IntentType.DECREMENT_ITEM,
    IntentType.REMOVE_ITEM,
    IntentType.CLEAR_CART,
}

# Stages in which the cart may be edited. RESULT needs a new sale first.
CART_EDITABLE_STAGES = {FlowStage.BOOT, FlowStage.CART, FlowStage.CHECKOUT}


@dataclass(frozen=True)
class Intent:
    type: IntentType
    data: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def of(cls, intent_type: IntentType | str, **data: Any) -> Intent:
        return cls(type=IntentType(intent_type), data=data)


@dataclass(frozen=True)
class ScheduledIntent:
    """An intent the actor must dispatch after `delay_ms`."""

    delay_ms: int
    intent: Intent


@dataclass
class TransitionResult:
    snapshot: Snapshot
    accepted: bool
    status: str
    event: PendingEvent | None = None
    channel_types: tuple[ChannelMessageType, ...] = ()
    followups: list[Intent] = field(default_factory=list)
    timers: list[ScheduledIntent] = field(default_factory=list)


class SessionStateMachine:
    """
    Pure transition function over snapshots.

    Handlers are registered per intent type. A handler either returns the
    accepted transition or raises `IntentRejected`; `apply` turns a rejection
    into an unchanged snapshot with `accepted=False` and the reason as status.
    """

    def __init__(self, timings: PaymentTimings | None = None):
        self.timings = timings or PaymentTimings()
        self._handlers: dict[IntentType, Callable[[Snapshot, Intent], TransitionResult]] = {}
        self._register_handlers()

    def _register_handlers(self) -> None:
        self._handlers[IntentType.SESSION_READY] = self._handle_session_ready
        self._handlers[IntentType.ADD_ITEM] = self._handle_add_item
        self._handlers[IntentType.INCREMENT_ITEM] = self._handle_increment_item
        self._handlers[IntentType.DECREMENT_ITEM] = self._handle_decrement_item
        self._handlers[IntentType.REMOVE_ITEM] = self._handle_remove_item
        self._handlers[IntentType.CLEAR_CART] = self._handle_clear_cart
        self._handlers[IntentType.START_CHECKOUT] = self._handle_start_checkout
        self._handlers[IntentType.BACK_TO_CART] = self._handle_back_to_cart
        self._handlers[IntentType.PAY] = self._handle_pay
        self._handlers[IntentType.RESOLVE_PAYMENT] = self._handle_resolve_payment
        self._handlers[IntentType.BEGIN_ISSUANCE] = self._handle_begin_issuance
        self._handlers[IntentType.RETRY_ISSUANCE] = self._handle_retry_issuance
        self._handlers[IntentType.ISSUANCE_SUCCEEDED] = self._handle_issuance_succeeded
        self._handlers[IntentType.ISSUANCE_FAILED] = self._handle_issuance_failed
        self._handlers[IntentType.PRINT_FALLBACK] = self._handle_print_fallback
        self._handlers[IntentType.CUSTOMER_SCANNED] = self._handle_customer_scanned
        self._handlers[IntentType.CUSTOMER_JOINED] = self._handle_customer_joined
        self._handlers[IntentType.NEW_SALE] = self._handle_new_sale
        self._handlers[IntentType.RESET] = self._handle_reset
        self._handlers[IntentType.UPDATE_TOGGLES] = self._handle_update_toggles

    def apply(self, snapshot: Snapshot, intent: Intent) -> TransitionResult:
        handler = self._handlers.get(intent.type)
        if handler is None:
            return self._rejected(snapshot, f"Unsupported intent: {intent.type}")
        try:
            return handler(snapshot, intent)
        except IntentRejected as exc:
            return self._rejected(snapshot, str(exc))
        except (PydanticValidationError, ValueError, TypeError, KeyError) as exc:
            return self._rejected(snapshot, f"Invalid {intent.type.value} data: {exc}")

    @staticmethod
    def _rejected(snapshot: Snapshot, status: str) -> TransitionResult:
        return TransitionResult(snapshot=snapshot, accepted=False, status=status)

    # --- helpers -------------------------------------------------------

    @staticmethod
    def _event(snapshot: Snapshot, event_type: EventType, payload) -> PendingEvent:
        payload.sale_id = snapshot.active_sale_id
        return PendingEvent(event_type=event_type, payload=payload)

    @staticmethod
    def _require_sale(snapshot: Snapshot, intent: Intent) -> None:
        """Timer and backend intents must still belong to the active sale."""
        sale_id = intent.data.get("sale_id")
        if sale_id is not None and sale_id != snapshot.active_sale_id:
            raise IntentRejected(f"Stale {intent.type.value} for sale {sale_id}")

    @staticmethod
    def _with_flow(snapshot: Snapshot, **changes: Any) -> Flow:
        return snapshot.flow.model_copy(update=changes)

    @staticmethod
    def _stage_action(from_stage: FlowStage, to_stage: FlowStage) -> str:
        transition = STAGE_TRANSITIONS.get((from_stage, to_stage))
        if transition is None:
            raise IntentRejected(
                f"Stage change {from_stage.value} -> {to_stage.value} not allowed"
            )
        return transition["action"]

    def _fallback_followup(self, snapshot: Snapshot, reason: PrintReason) -> list[Intent]:
        if snapshot.can_print_fallback():
            return [Intent.of(IntentType.PRINT_FALLBACK, reason=reason.value)]
        return []

    # --- stage ---------------------------------------------------------

    def _handle_session_ready(self, snapshot: Snapshot, intent: Intent) -> TransitionResult:
        if snapshot.flow.stage != FlowStage.BOOT:
            raise IntentRejected("Session already started")
        self._stage_action(FlowStage.BOOT, FlowStage.CART)
        next_snapshot = snapshot.clone(flow=self._with_flow(snapshot, stage=FlowStage.CART))
        return TransitionResult(
            snapshot=next_snapshot,
            accepted=True,
            status="Ready",
            event=self._event(
                next_snapshot,
                EventType.STAGE_CHANGED,
                StageChangedPayload(from_stage=FlowStage.BOOT, to_stage=FlowStage.CART),
            ),
            channel_types=(ChannelMessageType.SNAPSHOT_SYNC,),
        )

    # --- cart ----------------------------------------------------------

    def _cart_result(
        self,
        snapshot: Snapshot,
        items: list[CartItem],
        action: str,
        line: CartItem | None,
        status: str,
    ) -> TransitionResult:
        cart = snapshot.cart.with_items(items)
        stage = snapshot.flow.stage
        if stage == FlowStage.BOOT:
            stage = FlowStage.CART
        elif stage == FlowStage.CHECKOUT and cart.is_empty:
            stage = FlowStage.CART

        flow = self._with_flow(snapshot, stage=stage)
        if stage == FlowStage.CART:
            flow.payment_state = PaymentState.IDLE
        next_snapshot = snapshot.clone(cart=cart, flow=flow)

        payload = CartUpdatedPayload(
            action=action,
            line_no=line.line_no if line else None,
            sku=line.sku if line else None,
            qty=line.qty if line else None,
            items_count=len(cart.items),
            total=cart.total,
        )
        return TransitionResult(
            snapshot=next_snapshot,
            accepted=True,
            status=status,
            event=self._event(next_snapshot, EventType.CART_UPDATED, payload),
            channel_types=(ChannelMessageType.CART_UPDATED,),
        )

    @staticmethod
    def _require_cart_editable(snapshot: Snapshot) -> None:
        if snapshot.flow.stage not in CART_EDITABLE_STAGES:
            raise IntentRejected(f"Cart is locked while {snapshot.flow.stage.value}")

    @staticmethod
    def _find_line(snapshot: Snapshot, intent: Intent) -> CartItem:
        line_no = intent.data.get("line_no")
        sku = intent.data.get("sku")
        line = snapshot.cart.find_line(
            line_no=int(line_no) if line_no is not None else None, sku=sku
        )
        if line is None:
            raise IntentRejected("Cart line not found")
        return line

    def _handle_add_item(self, snapshot: Snapshot, intent: Intent) -> TransitionResult:
        self._require_cart_editable(snapshot)
        data = intent.data
        qty = int(data.get("qty", 1))
        if qty < 1:
            raise IntentRejected("Quantity must be at least 1")
        sku = data.get("sku")
        unit_price = float(data.get("unit_price", 0))

        items = [item.model_copy() for item in snapshot.cart.items]
        existing = snapshot.cart.find_line(sku=sku) if sku else None
        if existing is not None and existing.unit_price == unit_price:
            line = existing.model_copy(update={"qty": existing.qty + qty})
            items = [line if item.line_no == line.line_no else item for item in items]
        else:
            line = CartItem(
                line_no=snapshot.cart.next_line_no(),
                sku=sku,
                name=data.get("name"),
                qty=qty,
                unit_price=unit_price,
                vat_rate=data.get("vat_rate"),
            )
            items.append(line)
        return self._cart_result(snapshot, items, "add", line, f"Added {line.name}")

    def _handle_increment_item(self, snapshot: Snapshot, intent: Intent) -> TransitionResult:
        self._require_cart_editable(snapshot)
        target = self._find_line(snapshot, intent)
        line = target.model_copy(update={"qty": target.qty + 1})
        items = [line if item.line_no == target.line_no else item for item in snapshot.cart.items]
        return self._cart_result(snapshot, items, "increment", line, f"{line.name} x{line.qty}")

    def _handle_decrement_item(self, snapshot: Snapshot, intent: Intent) -> TransitionResult:
        self._require_cart_editable(snapshot)
        target = self._find_line(snapshot, intent)
        if target.qty <= 1:
            items = [item for item in snapshot.cart.items if item.line_no != target.line_no]
            line = target.model_copy(update={"qty": 0})
            return self._cart_result(snapshot, items, "remove", line, f"Removed {target.name}")
        line = target.model_copy(update={"qty": target.qty - 1})
        items = [line if item.line_no == target.line_no else item for item in snapshot.cart.items]
        return self._cart_result(snapshot, items, "decrement", line, f"{line.name} x{line.qty}")

    def _handle_remove_item(self, snapshot: Snapshot, intent: Intent) -> TransitionResult:
        self._require_cart_editable(snapshot)
        target = self._find_line(snapshot, intent)
        items = [item for item in snapshot.cart.items if item.line_no != target.line_no]
        line = target.model_copy(update={"qty": 0})
        return self._cart_result(snapshot, items, "remove", line, f"Removed {target.name}")

    def _handle_clear_cart(self, snapshot: Snapshot, intent: Intent) -> TransitionResult:
        self._require_cart_editable(snapshot)
        removed = len(snapshot.cart.items)
        self._stage_action(snapshot.flow.stage, FlowStage.CART)
        next_snapshot = snapshot.clone(
            cart=snapshot.cart.with_items([]),
            flow=self._with_flow(
                snapshot, stage=FlowStage.CART, payment_state=PaymentState.IDLE
            ),
        )
        return TransitionResult(
            snapshot=next_snapshot,
            accepted=True,
            status="Cart cleared",
            event=self._event(
                next_snapshot, EventType.CART_CLEARED, CartClearedPayload(items_removed=removed)
            ),
            channel_types=(ChannelMessageType.CART_UPDATED,),
        )

    # --- checkout and payment -----------------------------------------

    def _handle_start_checkout(self, snapshot: Snapshot, intent: Intent) -> TransitionResult:
        if snapshot.flow.stage != FlowStage.CART:
            raise IntentRejected(f"Cannot check out from {snapshot.flow.stage.value}")
        if snapshot.cart.is_empty:
            raise IntentRejected("Cart is empty")
        self._stage_action(FlowStage.CART, FlowStage.CHECKOUT)
        next_snapshot = snapshot.clone(
            flow=self._with_flow(
                snapshot, stage=FlowStage.CHECKOUT, payment_state=PaymentState.INITIATED
            )
        )
        return TransitionResult(
            snapshot=next_snapshot,
            accepted=True,
            status="Checkout",
            event=self._event(
                next_snapshot,
                EventType.CHECKOUT_INITIATED,
                CheckoutInitiatedPayload(
                    currency=snapshot.cart.currency,
                    total=snapshot.cart.total,
                    items_count=len(snapshot.cart.items),
                ),
            ),
            channel_types=(ChannelMessageType.SNAPSHOT_SYNC,),
        )

    def _handle_back_to_cart(self, snapshot: Snapshot, intent: Intent) -> TransitionResult:
        if snapshot.flow.stage != FlowStage.CHECKOUT:
            raise IntentRejected(f"Cannot go back to cart from {snapshot.flow.stage.value}")
        self._stage_action(FlowStage.CHECKOUT, FlowStage.CART)
        next_snapshot = snapshot.clone(
            flow=self._with_flow(snapshot, stage=FlowStage.CART, payment_state=PaymentState.IDLE)
        )
        return TransitionResult(
            snapshot=next_snapshot,
            accepted=True,
            status="Back to cart",
            event=self._event(
                next_snapshot,
                EventType.STAGE_CHANGED,
                StageChangedPayload(from_stage=FlowStage.CHECKOUT, to_stage=FlowStage.CART),
            ),
            channel_types=(ChannelMessageType.SNAPSHOT_SYNC,),
        )

    def _handle_pay(self, snapshot: Snapshot, intent: Intent) -> TransitionResult:
        stage = snapshot.flow.stage
        if stage not in PAYABLE_STAGES:
            raise IntentRejected(f"Cannot pay while {stage.value}")
        if snapshot.cart.is_empty:
            raise IntentRejected("Cart is empty")
        toggles = snapshot.toggles

        if payment_simulator.network_is_down(toggles):
            self._stage_action(stage, FlowStage.RESULT)
            next_snapshot = snapshot.clone(
                flow=self._with_flow(
                    snapshot, stage=FlowStage.RESULT, payment_state=PaymentState.NETWORK_ERROR
                )
            )
            return TransitionResult(
                snapshot=next_snapshot,
                accepted=True,
                status="Network error: payment not sent",
                event=self._event(
                    next_snapshot,
                    EventType.PAYMENT_RESULT,
                    PaymentResultPayload(
                        payment_state=PaymentState.NETWORK_ERROR,
                        outcome=toggles.payment_outcome,
                        network_mode=toggles.network_mode,
                    ),
                ),
                channel_types=(ChannelMessageType.SNAPSHOT_SYNC,),
            )

        self._stage_action(stage, FlowStage.PROCESSING)
        delay_ms = payment_simulator.payment_delay_ms(toggles, self.timings)
        next_snapshot = snapshot.clone(
            flow=self._with_flow(
                snapshot, stage=FlowStage.PROCESSING, payment_state=PaymentState.PROCESSING
            )
        )
        resolution = Intent.of(
            IntentType.RESOLVE_PAYMENT,
            sale_id=snapshot.active_sale_id,
            outcome=toggles.payment_outcome.value,
        )
        return TransitionResult(
            snapshot=next_snapshot,
            accepted=True,
            status="Processing payment",
            event=self._event(
                next_snapshot,
                EventType.PAYMENT_PROCESSING,
                PaymentProcessingPayload(
                    amount=snapshot.cart.total,
                    currency=snapshot.cart.currency,
                    network_mode=toggles.network_mode,
                    delay_ms=delay_ms,
                ),
            ),
            channel_types=(ChannelMessageType.SNAPSHOT_SYNC,),
            timers=[ScheduledIntent(delay_ms=delay_ms, intent=resolution)],
        )

    def _handle_resolve_payment(self, snapshot: Snapshot, intent: Intent) -> TransitionResult:
        self._require_sale(snapshot, intent)
        if snapshot.flow.stage != FlowStage.PROCESSING:
            raise IntentRejected("Stale payment resolution: sale is no longer processing")
        self._stage_action(FlowStage.PROCESSING, FlowStage.RESULT)

        outcome = PaymentOutcome(intent.data.get("outcome") or snapshot.toggles.payment_outcome)
        payment_state = payment_simulator.resolve_outcome(outcome)
        next_snapshot = snapshot.clone(
            flow=self._with_flow(snapshot, stage=FlowStage.RESULT, payment_state=payment_state)
        )
        return TransitionResult(
            snapshot=next_snapshot,
            accepted=True,
            status=f"Payment {payment_state.value.lower()}",
            event=self._event(
                next_snapshot,
                EventType.PAYMENT_RESULT,
                PaymentResultPayload(
                    payment_state=payment_state,
                    outcome=outcome,
                    network_mode=snapshot.toggles.network_mode,
                ),
            ),
            channel_types=(ChannelMessageType.SNAPSHOT_SYNC,),
        )

    # --- issuance ------------------------------------------------------

    def _handle_begin_issuance(self, snapshot: Snapshot, intent: Intent) -> TransitionResult:
        self._require_sale(snapshot, intent)
        if snapshot.flow.payment_state != PaymentState.APPROVED:
            raise IntentRejected("Receipt issuance needs an approved payment")
        issuance = snapshot.flow.issuance_state
        if issuance in {IssuanceState.INGESTING, IssuanceState.TOKEN_READY}:
            raise IntentRejected(f"Issuance already {issuance.value.lower()}")

        attempt = int(intent.data.get("attempt", 1))
        next_snapshot = snapshot.clone(
            flow=self._with_flow(snapshot, issuance_state=IssuanceState.INGESTING),
            receipt=None,
            scan=ScanInfo(),
        )
        return TransitionResult(
            snapshot=next_snapshot,
            accepted=True,
            status="Issuing digital receipt",
            event=self._event(
                next_snapshot,
                EventType.RECEIPT_ISSUANCE_STARTED,
                ReceiptIssuanceStartedPayload(
                    issuance_mode=snapshot.toggles.issuance_mode, attempt=attempt
                ),
            ),
            channel_types=(ChannelMessageType.SNAPSHOT_SYNC,),
        )

    def _handle_retry_issuance(self, snapshot: Snapshot, intent: Intent) -> TransitionResult:
        if snapshot.flow.issuance_state != IssuanceState.FAILED:
            raise IntentRejected("Only a failed issuance can be retried")
        return self._handle_begin_issuance(snapshot, intent)

    def _handle_issuance_succeeded(self, snapshot: Snapshot, intent: Intent) -> TransitionResult:
        self._require_sale(snapshot, intent)
        if snapshot.flow.issuance_state != IssuanceState.INGESTING:
            raise IntentRejected("Stale issuance result: no issuance in progress")

        data = intent.data
        receipt = ReceiptInfo(
            token_id=data["token_id"],
            public_url=data["public_url"],
            qr_url=data.get("qr_url") or data["public_url"],
            preview_url=data.get("preview_url"),
        )
        next_snapshot = snapshot.clone(
            flow=self._with_flow(snapshot, issuance_state=IssuanceState.TOKEN_READY),
            receipt=receipt,
            scan=ScanInfo(state=ScanState.PENDING),
        )

        timers = []
        scan_sim = snapshot.toggles.customer_scan_sim
        if scan_sim != CustomerScanSim.NONE:
            outcome = (
                ScanState.SUCCESS if scan_sim == CustomerScanSim.AUTO_SUCCESS else ScanState.FAIL
            )
            timers.append(
                ScheduledIntent(
                    delay_ms=self.timings.scan_delay_ms,
                    intent=Intent.of(
                        IntentType.CUSTOMER_SCANNED,
                        sale_id=snapshot.active_sale_id,
                        token_id=receipt.token_id,
                        outcome=outcome.value,
                        simulated=True,
                    ),
                )
            )

        return TransitionResult(
            snapshot=next_snapshot,
            accepted=True,
            status="Digital receipt ready",
            event=self._event(
                next_snapshot,
                EventType.RECEIPT_TOKEN_READY,
                ReceiptTokenReadyPayload(token_id=receipt.token_id, public_url=receipt.public_url),
            ),
            channel_types=(ChannelMessageType.SNAPSHOT_SYNC,),
            timers=timers,
        )

    def _handle_issuance_failed(self, snapshot: Snapshot, intent: Intent) -> TransitionResult:
        self._require_sale(snapshot, intent)
        if snapshot.flow.issuance_state != IssuanceState.INGESTING:
            raise IntentRejected("Stale issuance result: no issuance in progress")

        message = intent.data.get("message") or "Receipt issuance failed"
        next_snapshot = snapshot.clone(
            flow=self._with_flow(snapshot, issuance_state=IssuanceState.FAILED)
        )
        return TransitionResult(
            snapshot=next_snapshot,
            accepted=True,
            status=f"Issuance failed: {message}",
            event=self._event(
                next_snapshot,
                EventType.RECEIPT_ISSUANCE_FAILED,
                ReceiptIssuanceFailedPayload(
                    message=message, code=intent.data.get("code")
                ),
            ),
            channel_types=(ChannelMessageType.SNAPSHOT_SYNC,),
            followups=self._fallback_followup(next_snapshot, PrintReason.ISSUANCE_FAIL),
        )

    # --- fallback print ------------------------------------------------

    def _handle_print_fallback(self, snapshot: Snapshot, intent: Intent) -> TransitionResult:
        self._require_sale(snapshot, intent)
        reason = PrintReason(intent.data.get("reason") or PrintReason.CUSTOMER_REQUEST)
        if not snapshot.can_print_fallback():
            if snapshot.fallback.printed:
                raise IntentRejected("Fallback receipt already printed for this sale")
            raise IntentRejected(
                "Fallback print not allowed (needs approved payment and printing enabled)"
            )

        flow = snapshot.flow
        if flow.issuance_state in FALLBACK_REPLACEABLE_ISSUANCE:
            flow = self._with_flow(snapshot, issuance_state=IssuanceState.FALLBACK_PRINTED)
        next_snapshot = snapshot.clone(
            flow=flow, fallback=FallbackInfo(printed=True, print_reason=reason)
        )
        return TransitionResult(
            snapshot=next_snapshot,
            accepted=True,
            status=f"Paper receipt printed ({reason.value})",
            event=self._event(
                next_snapshot, EventType.FALLBACK_PRINTED, FallbackPrintedPayload(reason=reason)
            ),
            channel_types=(ChannelMessageType.SNAPSHOT_SYNC,),
        )

    # --- customer ------------------------------------------------------

    def _handle_customer_scanned(self, snapshot: Snapshot, intent: Intent) -> TransitionResult:
        self._require_sale(snapshot, intent)
        data = intent.data
        outcome = ScanState(data.get("outcome"))
        if outcome not in {ScanState.SUCCESS, ScanState.FAIL}:
            raise IntentRejected(f"Invalid scan outcome: {outcome.value}")
        if snapshot.scan.state != ScanState.PENDING or snapshot.receipt is None:
            raise IntentRejected("No receipt is waiting to be scanned")
        token_id = data.get("token_id")
        if token_id and token_id != snapshot.receipt.token_id:
            raise IntentRejected("Scanned token does not belong to this sale")

        message = data.get("message")
        next_snapshot = snapshot.clone(
            scan=ScanInfo(state=outcome, scanned_at=iso_now(), message=message)
        )

        # A real viewer logs its own scan; a simulated one has no viewer to do it.
        event = None
        if data.get("simulated"):
            event = self._event(
                next_snapshot,
                EventType.CUSTOMER_SCANNED,
                CustomerScannedPayload(
                    outcome=outcome, token_id=snapshot.receipt.token_id, message=message
                ),
            )

        followups = []
        if outcome == ScanState.FAIL:
            followups = self._fallback_followup(next_snapshot, PrintReason.SCAN_FAIL)

        return TransitionResult(
            snapshot=next_snapshot,
            accepted=True,
            status=(
                "Customer scanned receipt"
                if outcome == ScanState.SUCCESS
                else "Customer scan failed"
            ),
            event=event,
            channel_types=(ChannelMessageType.SNAPSHOT_SYNC,),
            followups=followups,
        )

    def _handle_customer_joined(self, snapshot: Snapshot, intent: Intent) -> TransitionResult:
        return TransitionResult(
            snapshot=snapshot,
            accepted=True,
            status="Customer joined",
            channel_types=(ChannelMessageType.SNAPSHOT_SYNC,),
        )

    # --- sale lifecycle ------------------------------------------------

    @staticmethod
    def _fresh_sale(snapshot: Snapshot, toggles: Toggles | None = None) -> Snapshot:
        return snapshot.clone(
            active_sale_id=new_sale_id(),
            toggles=toggles or snapshot.toggles,
            cart=Cart(currency=snapshot.cart.currency),
            flow=Flow(stage=FlowStage.CART),
            receipt=None,
            scan=ScanInfo(),
            fallback=FallbackInfo(),
        )

    def _handle_new_sale(self, snapshot: Snapshot, intent: Intent) -> TransitionResult:
        next_snapshot = self._fresh_sale(snapshot)
        return TransitionResult(
            snapshot=next_snapshot,
            accepted=True,
            status="New sale",
            event=self._event(
                next_snapshot,
                EventType.NEW_SALE_STARTED,
                NewSaleStartedPayload(previous_sale_id=snapshot.active_sale_id),
            ),
            channel_types=(ChannelMessageType.SNAPSHOT_SYNC,),
        )

    def _handle_reset(self, snapshot: Snapshot, intent: Intent) -> TransitionResult:
        next_snapshot = self._fresh_sale(snapshot, toggles=Toggles())
        return TransitionResult(
            snapshot=next_snapshot,
            accepted=True,
            status="Session reset",
            event=self._event(
                next_snapshot,
                EventType.RESET_REQUESTED,
                ResetRequestedPayload(previous_sale_id=snapshot.active_sale_id),
            ),
            channel_types=(ChannelMessageType.RESET_REQUESTED, ChannelMessageType.SNAPSHOT_SYNC),
        )

    def _handle_update_toggles(self, snapshot: Snapshot, intent: Intent) -> TransitionResult:
        merged = {**snapshot.toggles.model_dump(mode="json"), **intent.data}
        toggles = Toggles.model_validate(merged)
        next_snapshot = snapshot.clone(toggles=toggles)
        return TransitionResult(
            snapshot=next_snapshot,
            accepted=True,
            status="Simulation settings updated",
            channel_types=(ChannelMessageType.SNAPSHOT_SYNC,),
        )
