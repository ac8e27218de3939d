from datetime import datetime, timedelta, timezone

import pytest

from pos_sim.constants import EventType
from pos_sim.events import CustomerJoinedPayload, ReceiptTokenReadyPayload
from pos_sim.services import event_log as event_log_module
from pos_sim.services.event_log import EventRecord, merge_events
from pos_sim.validation import ValidationError

SESSION = "5b1d6c0e-6a3f-4b8e-9d2c-7f0a1b2c3d4e"


def test_append_returns_record_with_clean_payload(event_log):
    record = event_log.append(
        SESSION,
        EventType.CART_CLEARED,
        {"sale_id": "sale-1", "items_removed": 2},
    )
    assert record.id > 0
    assert record.event_type == EventType.CART_CLEARED
    assert record.payload == {"sale_id": "sale-1", "items_removed": 2}
    assert record.sale_id == "sale-1"
    assert record.created_at.tzinfo is not None


def test_append_accepts_typed_payload(event_log):
    record = event_log.append(
        SESSION,
        "CUSTOMER_JOINED",
        CustomerJoinedPayload(sale_id="sale-1", session_code="ABC234"),
    )
    assert record.typed_payload() == CustomerJoinedPayload(
        sale_id="sale-1", session_code="ABC234"
    )


def test_append_rejects_payload_of_another_type(event_log):
    with pytest.raises(ValidationError):
        event_log.append(
            SESSION,
            EventType.CUSTOMER_JOINED,
            ReceiptTokenReadyPayload(token_id="t", public_url="https://r.example/t"),
        )


def test_append_rejects_unknown_type_and_bad_payload(event_log):
    with pytest.raises(ValidationError):
        event_log.append(SESSION, "SOMETHING_ELSE", {})
    with pytest.raises(ValidationError):
        event_log.append(SESSION, EventType.CART_CLEARED, {"unexpected": True})
    assert event_log.list(SESSION) == []


def test_list_is_oldest_first_and_scoped_to_session(event_log):
    for removed in (1, 2, 3):
        event_log.append(SESSION, EventType.CART_CLEARED, {"items_removed": removed})
    event_log.append("other-session", EventType.CART_CLEARED, {"items_removed": 9})

    records = event_log.list(SESSION)
    assert [r.payload["items_removed"] for r in records] == [1, 2, 3]
    assert [r.payload["items_removed"] for r in event_log.list(SESSION, limit=2)] == [1, 2]


def test_created_at_never_goes_backwards(event_log, monkeypatch):
    later = datetime(2030, 1, 1, tzinfo=timezone.utc)
    monkeypatch.setattr(event_log_module, "utcnow", lambda: later)
    first = event_log.append(SESSION, EventType.CART_CLEARED, {"items_removed": 1})

    monkeypatch.setattr(event_log_module, "utcnow", lambda: later - timedelta(minutes=5))
    second = event_log.append(SESSION, EventType.CART_CLEARED, {"items_removed": 2})

    assert second.created_at == first.created_at
    assert [r.id for r in event_log.list(SESSION)] == [first.id, second.id]


def test_to_dict_is_json_ready(event_log):
    record = event_log.append(SESSION, EventType.CART_CLEARED, {"items_removed": 1})
    data = record.to_dict()
    assert data["event_type"] == "CART_CLEARED"
    assert data["created_at"].startswith(record.created_at.date().isoformat())


def test_merge_events_deduplicates_by_id():
    ts = datetime(2026, 1, 1, tzinfo=timezone.utc)
    first = EventRecord(1, SESSION, EventType.CART_CLEARED, {}, ts)
    second = EventRecord(2, SESSION, EventType.CART_CLEARED, {}, ts + timedelta(seconds=1))
    third = EventRecord(3, SESSION, EventType.CART_CLEARED, {}, ts + timedelta(seconds=2))

    merged = merge_events([first, second], [third, second])
    assert [record.id for record in merged] == [1, 2, 3]
