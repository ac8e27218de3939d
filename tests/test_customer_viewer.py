import pytest

from pos_sim.constants import ChannelMessageType, EventType, FlowStage, PrintReason, ScanState
from pos_sim.errors import IntentRejected, SessionNotFoundError
from pos_sim.services.customer_viewer import CustomerViewer, report_scan
from pos_sim.services.state_machine import Intent, IntentType
from pos_sim.validation import ValidationError

COFFEE = dict(sku="COF-1", name="Coffee", unit_price=1.20, qty=1, vat_rate=0.23)


def open_viewer(actor, store, event_log, channel):
    viewer = CustomerViewer(actor.snapshot.session_code.lower(), store, event_log, channel)
    viewer.open()
    return viewer


def pay_and_issue(actor, scheduler):
    for intent_type in (IntentType.START_CHECKOUT, IntentType.PAY):
        assert actor.dispatch(Intent.of(intent_type)).accepted
    scheduler.advance(900)


def test_open_loads_snapshot_and_reports_join(make_actor, store, event_log, channel):
    actor = make_actor()
    viewer = open_viewer(actor, store, event_log, channel)

    assert viewer.session_id == actor.session_id
    assert viewer.snapshot.flow.stage == FlowStage.CART
    joined = [
        record
        for record in event_log.list(actor.session_id)
        if record.event_type == EventType.CUSTOMER_JOINED
    ]
    assert len(joined) == 1
    assert joined[0].payload["session_code"] == actor.snapshot.session_code


def test_join_makes_host_resend_its_snapshot(make_actor, store, event_log, channel):
    actor = make_actor()
    actor.dispatch(Intent.of(IntentType.ADD_ITEM, **COFFEE))
    channel.published.clear()

    viewer = open_viewer(actor, store, event_log, channel)

    types = [message.type for message in channel.published]
    joined_at = types.index(ChannelMessageType.CUSTOMER_JOINED)
    syncs = [
        message
        for message in channel.published[joined_at + 1 :]
        if message.type == ChannelMessageType.SNAPSHOT_SYNC
    ]
    assert len(syncs) == 1
    assert syncs[0].session_id == actor.session_id
    assert syncs[0].snapshot.to_json() == actor.snapshot.to_json()
    assert viewer.snapshot.cart.total == 1.48


def test_unknown_or_malformed_code(store, event_log, channel, database):
    with pytest.raises(ValidationError):
        CustomerViewer("no", store, event_log, channel)
    with pytest.raises(SessionNotFoundError):
        CustomerViewer("ZZZ999", store, event_log, channel).open()


def test_viewer_follows_host_updates(make_actor, store, event_log, channel):
    actor = make_actor()
    viewer = open_viewer(actor, store, event_log, channel)
    seen = []
    viewer.on_change(seen.append)

    actor.dispatch(Intent.of(IntentType.ADD_ITEM, **COFFEE))

    assert viewer.snapshot.cart.total == 1.48
    assert seen[-1].cart.total == 1.48
    assert viewer.router.dropped == 0


def test_scan_success_reaches_host(make_actor, store, event_log, channel, scheduler):
    actor = make_actor()
    actor.dispatch(Intent.of(IntentType.ADD_ITEM, **COFFEE))
    viewer = open_viewer(actor, store, event_log, channel)
    pay_and_issue(actor, scheduler)
    assert viewer.snapshot.scan.state == ScanState.PENDING

    viewer.scan("SUCCESS")

    assert actor.snapshot.scan.state == ScanState.SUCCESS
    assert viewer.snapshot.scan.state == ScanState.SUCCESS
    scanned = [
        record
        for record in event_log.list(actor.session_id)
        if record.event_type == EventType.CUSTOMER_SCANNED
    ]
    assert len(scanned) == 1
    assert scanned[0].payload["token_id"] == actor.snapshot.receipt.token_id


def test_scan_failure_prints_fallback(make_actor, store, event_log, channel, scheduler):
    actor = make_actor()
    actor.dispatch(Intent.of(IntentType.ADD_ITEM, **COFFEE))
    viewer = open_viewer(actor, store, event_log, channel)
    pay_and_issue(actor, scheduler)

    viewer.scan(ScanState.FAIL, message="camera could not focus")

    assert actor.snapshot.scan.message == "camera could not focus"
    assert actor.snapshot.fallback.print_reason == PrintReason.SCAN_FAIL


def test_scan_is_refused_without_receipt(make_actor, store, event_log, channel):
    actor = make_actor()
    viewer = open_viewer(actor, store, event_log, channel)
    with pytest.raises(IntentRejected):
        viewer.scan("SUCCESS")
    with pytest.raises(ValidationError):
        report_scan(actor.snapshot, "PENDING", event_log, channel)
    with pytest.raises(ValidationError):
        report_scan(actor.snapshot, "MAYBE", event_log, channel)


def test_closed_viewer_stops_following(make_actor, store, event_log, channel):
    actor = make_actor()
    viewer = open_viewer(actor, store, event_log, channel)
    viewer.close()

    actor.dispatch(Intent.of(IntentType.ADD_ITEM, **COFFEE))
    assert viewer.snapshot.cart.items == []
