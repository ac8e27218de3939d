"""
Customer Viewer: the read-only screen the customer opens with a session code.

A viewer never writes the Snapshot Store. It follows the host through channel
messages, re-reads the canonical snapshot whenever its subscription becomes
live, and records the two facts only it can witness: that a customer joined,
and how scanning the receipt QR went.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable

from pos_sim.constants import ChannelMessageType, EventType, ScanState
from pos_sim.errors import IntentRejected, PersistenceError
from pos_sim.events import CustomerJoinedPayload, CustomerScannedPayload
from pos_sim.realtime.channel import (
    ChannelMessage,
    MessageRouter,
    SessionChannel,
    Subscription,
    make_message,
)
from pos_sim.services.event_log import EventLog
from pos_sim.services.snapshot_store import SnapshotStore
from pos_sim.snapshot import Snapshot
from pos_sim.validation import ValidationError, normalize_session_code

logger = logging.getLogger(__name__)

SCAN_OUTCOMES = {ScanState.SUCCESS, ScanState.FAIL}


def report_join(
    snapshot: Snapshot, event_log: EventLog, channel: SessionChannel
) -> None:
    """Log and announce that a customer opened the session."""
    try:
        event_log.append(
            snapshot.session_id,
            EventType.CUSTOMER_JOINED,
            CustomerJoinedPayload(
                sale_id=snapshot.active_sale_id, session_code=snapshot.session_code
            ),
        )
    except PersistenceError:
        logger.exception(
            "CUSTOMER_JOINED append failed", extra={"session_id": snapshot.session_id}
        )
    channel.publish(
        snapshot.session_id,
        make_message(
            ChannelMessageType.CUSTOMER_JOINED,
            snapshot.session_id,
            payload={"session_code": snapshot.session_code},
            sale_id=snapshot.active_sale_id,
        ),
    )


def report_scan(
    snapshot: Snapshot,
    outcome: ScanState | str,
    event_log: EventLog,
    channel: SessionChannel,
    message: str | None = None,
) -> None:
    """
    Log and announce the outcome of a receipt QR scan.

    The host folds the announced outcome into the next snapshot.

    Raises:
        ValidationError: outcome is not SUCCESS or FAIL
        IntentRejected: no receipt is waiting to be scanned
    """
    try:
        outcome = ScanState(outcome)
    except ValueError:
        raise ValidationError(f"Invalid scan outcome: {outcome}") from None
    if outcome not in SCAN_OUTCOMES:
        raise ValidationError(f"Invalid scan outcome: {outcome.value}")
    if snapshot.receipt is None or snapshot.scan.state != ScanState.PENDING:
        raise IntentRejected("No receipt is waiting to be scanned")

    token_id = snapshot.receipt.token_id
    try:
        event_log.append(
            snapshot.session_id,
            EventType.CUSTOMER_SCANNED,
            CustomerScannedPayload(
                sale_id=snapshot.active_sale_id,
                outcome=outcome,
                token_id=token_id,
                message=message,
            ),
        )
    except PersistenceError:
        logger.exception(
            "CUSTOMER_SCANNED append failed", extra={"session_id": snapshot.session_id}
        )
    channel.publish(
        snapshot.session_id,
        make_message(
            ChannelMessageType.CUSTOMER_SCANNED,
            snapshot.session_id,
            payload={"outcome": outcome.value, "token_id": token_id, "message": message},
            sale_id=snapshot.active_sale_id,
        ),
    )


class CustomerViewer:
    def __init__(
        self,
        session_code: str,
        store: SnapshotStore,
        event_log: EventLog,
        channel: SessionChannel,
    ):
        self.session_code = normalize_session_code(session_code)
        self.store = store
        self.event_log = event_log
        self.channel = channel
        self.router: MessageRouter | None = None
        self._snapshot: Snapshot | None = None
        self._subscription: Subscription | None = None
        self._listeners: list[Callable[[Snapshot], None]] = []
        self._lock = threading.Lock()
        self._joined = False

    @property
    def snapshot(self) -> Snapshot | None:
        return self._snapshot

    @property
    def session_id(self) -> str | None:
        return self._snapshot.session_id if self._snapshot else None

    def on_change(self, listener: Callable[[Snapshot], None]) -> None:
        self._listeners.append(listener)

    def _set_snapshot(self, snapshot: Snapshot) -> None:
        with self._lock:
            self._snapshot = snapshot
        for listener in self._listeners:
            listener(snapshot)

    def open(self) -> Snapshot:
        """
        Load the session by code and follow it.

        Raises:
            ValidationError: malformed code
            SessionNotFoundError: unknown or expired code
        """
        snapshot = self.store.get_by_code(self.session_code)
        self._set_snapshot(snapshot)

        self.router = MessageRouter(snapshot.session_id)
        self.router.on(ChannelMessageType.SNAPSHOT_SYNC, self._on_snapshot)
        self.router.on(ChannelMessageType.CART_UPDATED, self._on_snapshot)
        self.router.on(ChannelMessageType.RESET_REQUESTED, self._on_reset)
        self._subscription = self.channel.subscribe(
            snapshot.session_id, self.router.dispatch, on_subscribed=self._on_subscribed
        )
        return self._snapshot

    def _on_subscribed(self) -> None:
        # Anything published before the subscription went live was missed.
        self.resync()
        if not self._joined:
            self._joined = True
            report_join(self._snapshot, self.event_log, self.channel)

    def resync(self) -> Snapshot:
        snapshot = self.store.get_by_code(self.session_code)
        self._set_snapshot(snapshot)
        return snapshot

    def _on_snapshot(self, message: ChannelMessage) -> None:
        snapshot = message.snapshot
        if snapshot is not None:
            self._set_snapshot(snapshot)

    def _on_reset(self, message: ChannelMessage) -> None:
        self.resync()

    def scan(self, outcome: ScanState | str, message: str | None = None) -> None:
        if self._snapshot is None:
            raise IntentRejected("Viewer is not open")
        report_scan(self._snapshot, outcome, self.event_log, self.channel, message=message)

    def close(self) -> None:
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None
