"""
Session actor: the single writer of one session.

The actor owns the authoritative in-memory snapshot. Intents arrive in a
mailbox and are applied strictly one after another; whichever thread finds the
mailbox idle drains it, so an HTTP request, a payment timer and a backend
callback never run a transition concurrently.

Each accepted transition is written behind in a fixed order:

    snapshot put -> event append -> channel publish

A failed write never undoes the transition. It is logged and exposed through
`health()` (`persisted=False`) so the operator can see that viewers may be
showing state that storage does not hold.
"""

from __future__ import annotations

import queue
import threading
import time
from collections.abc import Callable
from concurrent.futures import Executor, Future
from typing import Any, Protocol

from pos_sim.config import PaymentTimings
from pos_sim.constants import ChannelMessageType, FlowStage, IssuanceMode, IssuanceState
from pos_sim.datetime_utils import iso_now
from pos_sim.errors import ConfigurationError, PosSimError, UpstreamError
from pos_sim.logging_config import session_logger
from pos_sim.realtime.channel import (
    ChannelMessage,
    MessageRouter,
    SessionChannel,
    Subscription,
    make_message,
    snapshot_message,
)
from pos_sim.services import payment_simulator
from pos_sim.services.event_log import EventLog
from pos_sim.services.snapshot_store import SnapshotStore
from pos_sim.services.state_machine import (
    INTERNAL_INTENTS,
    Intent,
    IntentType,
    ScheduledIntent,
    SessionStateMachine,
    TransitionResult,
)
from pos_sim.snapshot import ReceiptInfo, Snapshot
from pos_sim.validation import ValidationError

Issuer = Callable[[Snapshot], ReceiptInfo]


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Scheduler(Protocol):
    def schedule(self, delay_ms: int, callback: Callable[[], None]) -> TimerHandle: ...


class ThreadingScheduler:
    """Runs callbacks on daemon `threading.Timer` threads."""

    def schedule(self, delay_ms: int, callback: Callable[[], None]) -> TimerHandle:
        timer = threading.Timer(max(delay_ms, 0) / 1000.0, callback)
        timer.daemon = True
        timer.start()
        return timer


SALE_RESET_INTENTS = {IntentType.NEW_SALE, IntentType.RESET}
ISSUANCE_START_INTENTS = {IntentType.BEGIN_ISSUANCE, IntentType.RETRY_ISSUANCE}


class SessionActor:
    def __init__(
        self,
        snapshot: Snapshot,
        store: SnapshotStore,
        event_log: EventLog,
        channel: SessionChannel,
        issuer: Issuer | None = None,
        scheduler: Scheduler | None = None,
        executor: Executor | None = None,
        timings: PaymentTimings | None = None,
    ):
        self.session_id = snapshot.session_id
        self._snapshot = snapshot
        self.store = store
        self.event_log = event_log
        self.channel = channel
        self.issuer = issuer
        self.scheduler = scheduler or ThreadingScheduler()
        self.executor = executor
        self.timings = timings or PaymentTimings()
        self.machine = SessionStateMachine(self.timings)

        self._mailbox: queue.Queue[tuple[Intent, Future]] = queue.Queue()
        self._drain_lock = threading.Lock()
        self._draining = False

        self._timers: dict[object, TimerHandle] = {}
        self._timers_lock = threading.Lock()
        self.last_activity = time.monotonic()
        self._auto_issued_sale: str | None = None
        self._issuance_attempts = 0

        self.persisted = True
        self.last_persist_error: str | None = None
        self.updated_at: str | None = None
        self.event_failures = 0
        self.channel_echoes = 0

        self.router = MessageRouter(self.session_id)
        self._subscription: Subscription | None = None
        self.log = session_logger(__name__, self.session_id)

    # --- lifecycle -----------------------------------------------------

    @property
    def snapshot(self) -> Snapshot:
        return self._snapshot

    def start(self) -> SessionActor:
        """Listen on the session channel and move a booting session to CART."""
        self.router.on(ChannelMessageType.CUSTOMER_JOINED, self._on_customer_joined)
        self.router.on(ChannelMessageType.CUSTOMER_SCANNED, self._on_customer_scanned)
        for echo_type in (
            ChannelMessageType.SNAPSHOT_SYNC,
            ChannelMessageType.CART_UPDATED,
            ChannelMessageType.SESSION_CREATED,
            ChannelMessageType.RESET_REQUESTED,
        ):
            self.router.on(echo_type, self._on_echo)
        self._subscription = self.channel.subscribe(
            self.session_id, self.router.dispatch, on_subscribed=self._announce
        )
        snapshot = self._snapshot
        if snapshot.flow.stage == FlowStage.BOOT:
            self.submit(Intent.of(IntentType.SESSION_READY))
        elif snapshot.flow.stage == FlowStage.PROCESSING:
            # Rehydrated mid-payment: the previous process took its timer with it.
            self._schedule(
                ScheduledIntent(
                    delay_ms=payment_simulator.payment_delay_ms(snapshot.toggles, self.timings),
                    intent=Intent.of(
                        IntentType.RESOLVE_PAYMENT,
                        sale_id=snapshot.active_sale_id,
                        outcome=snapshot.toggles.payment_outcome.value,
                    ),
                )
            )
        return self

    def _announce(self) -> None:
        """Once subscribed, tell the channel the session exists and what it looks like."""
        snapshot = self._snapshot
        self.channel.publish(
            self.session_id,
            make_message(
                ChannelMessageType.SESSION_CREATED,
                self.session_id,
                payload={"session_code": snapshot.session_code},
                sale_id=snapshot.active_sale_id,
            ),
        )
        self.publish_snapshot()

    def stop(self) -> None:
        self._cancel_timers()
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None

    def health(self) -> dict[str, Any]:
        return {
            "persisted": self.persisted,
            "last_persist_error": self.last_persist_error,
            "updated_at": self.updated_at,
            "event_failures": self.event_failures,
            "dropped_messages": self.router.dropped,
            "channel_connected": (
                self._subscription.connected if self._subscription is not None else False
            ),
            "pending_timers": self.pending_timers,
        }

    @property
    def busy(self) -> bool:
        """True while work for the active sale is still scheduled or running."""
        snapshot = self._snapshot
        return bool(
            self.pending_timers
            or snapshot.flow.stage == FlowStage.PROCESSING
            or snapshot.flow.issuance_state == IssuanceState.INGESTING
        )

    def idle_for(self, now: float | None = None) -> float:
        """Seconds since the actor last processed an intent."""
        return max((now if now is not None else time.monotonic()) - self.last_activity, 0.0)

    # --- mailbox -------------------------------------------------------

    def submit(self, intent: Intent) -> Future:
        """Queue an intent; the returned future resolves to its TransitionResult."""
        future: Future = Future()
        self._mailbox.put((intent, future))
        self._drain()
        return future

    def dispatch(self, intent: Intent, timeout: float | None = 10.0) -> TransitionResult:
        return self.submit(intent).result(timeout=timeout)

    def _drain(self) -> None:
        while True:
            with self._drain_lock:
                if self._draining or self._mailbox.empty():
                    return
                self._draining = True
            try:
                while True:
                    try:
                        intent, future = self._mailbox.get_nowait()
                    except queue.Empty:
                        break
                    self.last_activity = time.monotonic()
                    try:
                        future.set_result(self._process(intent))
                    except Exception as exc:
                        self.log.exception("Intent %s crashed", intent.type.value)
                        future.set_exception(exc)
            finally:
                with self._drain_lock:
                    self._draining = False

    # --- transitions ---------------------------------------------------

    def _process(self, intent: Intent) -> TransitionResult:
        previous_sale = self._snapshot.active_sale_id
        result = self.machine.apply(self._snapshot, intent)

        if not result.accepted:
            if intent.type in INTERNAL_INTENTS:
                self.log.debug(
                    "Dropped stale %s: %s",
                    intent.type.value,
                    result.status,
                    extra={"sale_id": previous_sale},
                )
            else:
                self.log.info(
                    "Intent %s refused: %s",
                    intent.type.value,
                    result.status,
                    extra={"sale_id": previous_sale},
                )
            return result

        self._snapshot = result.snapshot
        self.log.info(
            "Intent %s applied: %s",
            intent.type.value,
            result.status,
            extra={"sale_id": self._snapshot.active_sale_id},
        )

        if intent.type in SALE_RESET_INTENTS:
            self._cancel_timers()
            self._auto_issued_sale = None
            self._issuance_attempts = 0

        self._write_behind(result, previous_sale)

        for scheduled in result.timers:
            self._schedule(scheduled)

        if intent.type in ISSUANCE_START_INTENTS:
            self._launch_issuance(self._snapshot)

        for followup in result.followups:
            self._process(followup)

        self._maybe_auto_issue()
        return result

    def _write_behind(self, result: TransitionResult, previous_sale: str | None) -> None:
        snapshot = result.snapshot
        try:
            self.store.put(self.session_id, snapshot)
            self.persisted = True
            self.last_persist_error = None
            self.updated_at = iso_now()
        except PosSimError as exc:
            self.persisted = False
            self.last_persist_error = str(exc)
            self.log.error(
                "Snapshot write failed; continuing with in-memory state",
                extra={"sale_id": snapshot.active_sale_id, "persisted": False},
            )

        if result.event is not None:
            try:
                self.event_log.append(
                    self.session_id, result.event.event_type, result.event.payload
                )
            except (PosSimError, ValidationError) as exc:
                self.event_failures += 1
                self.log.error(
                    "Event append failed: %s",
                    exc,
                    extra={
                        "sale_id": snapshot.active_sale_id,
                        "event_type": result.event.event_type.value,
                    },
                )

        for channel_type in result.channel_types:
            if channel_type == ChannelMessageType.RESET_REQUESTED:
                message = make_message(
                    channel_type,
                    self.session_id,
                    payload={"previous_sale_id": previous_sale},
                    sale_id=snapshot.active_sale_id,
                )
            else:
                message = snapshot_message(snapshot, channel_type)
            self.channel.publish(self.session_id, message)

    def publish_snapshot(self) -> None:
        self.channel.publish(self.session_id, snapshot_message(self._snapshot))

    # --- timers --------------------------------------------------------

    def _schedule(self, scheduled: ScheduledIntent) -> None:
        self._start_timer(scheduled.delay_ms, lambda: self.submit(scheduled.intent))

    def _start_timer(self, delay_ms: int, callback: Callable[[], None]) -> None:
        """Schedule `callback`; its handle is held only until it fires or is cancelled."""
        key = object()
        fired = False

        def _fire() -> None:
            nonlocal fired
            with self._timers_lock:
                self._timers.pop(key, None)
                fired = True
            callback()

        handle = self.scheduler.schedule(delay_ms, _fire)
        with self._timers_lock:
            if not fired:
                self._timers[key] = handle

    @property
    def pending_timers(self) -> int:
        with self._timers_lock:
            return len(self._timers)

    def _cancel_timers(self) -> None:
        with self._timers_lock:
            timers, self._timers = list(self._timers.values()), {}
        for handle in timers:
            handle.cancel()

    # --- issuance ------------------------------------------------------

    def _maybe_auto_issue(self) -> None:
        snapshot = self._snapshot
        if not snapshot.awaiting_issuance():
            return
        if self._auto_issued_sale == snapshot.active_sale_id:
            return
        self._auto_issued_sale = snapshot.active_sale_id
        self._process(Intent.of(IntentType.BEGIN_ISSUANCE, sale_id=snapshot.active_sale_id))

    def _launch_issuance(self, snapshot: Snapshot) -> None:
        self._issuance_attempts += 1
        mode = snapshot.toggles.issuance_mode
        sale_id = snapshot.active_sale_id

        if mode == IssuanceMode.FAIL:
            self._mailbox_failure(sale_id, "Simulated issuance outage", "SIMULATED_FAIL")
            return

        def _call() -> None:
            self._run_in_executor(lambda: self._issue(snapshot))

        if mode == IssuanceMode.DELAY:
            self._start_timer(self.timings.issuance_delay_ms, _call)
        else:
            _call()

    def _run_in_executor(self, fn: Callable[[], None]) -> None:
        if self.executor is None:
            threading.Thread(target=fn, daemon=True).start()
        else:
            self.executor.submit(fn)

    def _issue(self, snapshot: Snapshot) -> None:
        sale_id = snapshot.active_sale_id
        if self.issuer is None:
            self._mailbox_failure(sale_id, "Receipt backend not configured", "CONFIG_002")
            return
        try:
            receipt = self.issuer(snapshot)
        except (UpstreamError, ConfigurationError, ValidationError) as exc:
            self.log.warning(
                "Receipt issuance failed: %s",
                exc,
                extra={"sale_id": sale_id, "code": getattr(exc, "code", None)},
            )
            self._mailbox_failure(sale_id, str(exc), getattr(exc, "code", None))
            return
        except Exception as exc:
            self.log.exception("Receipt issuance crashed", extra={"sale_id": sale_id})
            self._mailbox_failure(sale_id, str(exc) or type(exc).__name__, "SYSTEM_001")
            return
        self.submit(
            Intent.of(
                IntentType.ISSUANCE_SUCCEEDED,
                sale_id=sale_id,
                token_id=receipt.token_id,
                public_url=receipt.public_url,
                qr_url=receipt.qr_url,
                preview_url=receipt.preview_url,
            )
        )

    def _mailbox_failure(self, sale_id: str | None, message: str, code: str | None) -> None:
        self.submit(
            Intent.of(IntentType.ISSUANCE_FAILED, sale_id=sale_id, message=message, code=code)
        )

    @property
    def issuance_attempts(self) -> int:
        return self._issuance_attempts

    # --- channel input -------------------------------------------------

    def _on_customer_joined(self, message: ChannelMessage) -> None:
        self.submit(Intent.of(IntentType.CUSTOMER_JOINED))

    def _on_customer_scanned(self, message: ChannelMessage) -> None:
        payload = message.typed_payload()
        self.submit(
            Intent.of(
                IntentType.CUSTOMER_SCANNED,
                sale_id=message.sale_id,
                outcome=payload.outcome.value,
                token_id=payload.token_id,
                message=payload.message,
            )
        )

    def _on_echo(self, message: ChannelMessage) -> None:
        self.channel_echoes += 1

