"""
Event Log: durable, append-only, per-session timeline of audit events.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError

from pos_sim.constants import EventType
from pos_sim.datetime_utils import utcnow
from pos_sim.db import get_session
from pos_sim.errors import PersistenceError
from pos_sim.events import EventPayload, build_payload, parse_payload
from pos_sim.models import PosSimEventRecord
from pos_sim.validation import validate_event_limit

logger = logging.getLogger(__name__)

_EPOCH = datetime.fromtimestamp(0, tz=timezone.utc)


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes even for timezone-aware columns.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class EventRecord:
    id: int
    session_id: str
    event_type: EventType
    payload: dict[str, Any] = field(default_factory=dict)
    created_at: datetime | None = None

    @classmethod
    def from_row(cls, row: PosSimEventRecord) -> EventRecord:
        return cls(
            id=row.id,
            session_id=row.session_id,
            event_type=EventType(row.event_type),
            payload=dict(row.payload or {}),
            created_at=_as_utc(row.created_at),
        )

    @property
    def sale_id(self) -> str | None:
        return self.payload.get("sale_id")

    def typed_payload(self) -> EventPayload | None:
        return parse_payload(self.event_type, self.payload)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "event_type": self.event_type.value,
            "payload": self.payload,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class EventLog:
    def append(
        self,
        session_id: str,
        event_type: EventType | str,
        payload: dict[str, Any] | EventPayload,
    ) -> EventRecord:
        """
        Validate and append one event.

        The stored `created_at` never goes backwards within a session, even if
        the wall clock does.

        Raises:
            ValidationError: unknown event type or payload not matching its schema
            PersistenceError: the insert failed
        """
        clean_payload = build_payload(event_type, payload)
        event_type = EventType(event_type)

        try:
            with get_session() as db_session:
                last_created = db_session.execute(
                    select(func.max(PosSimEventRecord.created_at)).where(
                        PosSimEventRecord.session_id == session_id
                    )
                ).scalar()
                created_at = utcnow()
                if last_created is not None and _as_utc(last_created) > created_at:
                    created_at = _as_utc(last_created)

                row = PosSimEventRecord(
                    session_id=session_id,
                    event_type=event_type.value,
                    payload=clean_payload,
                    created_at=created_at,
                )
                db_session.add(row)
                db_session.flush()
                record = EventRecord.from_row(row)
        except SQLAlchemyError as exc:
            raise PersistenceError(
                f"Event append failed ({event_type.value}): {exc}", code="PERSIST_002"
            ) from exc

        logger.debug(
            "Event appended",
            extra={"session_id": session_id, "event_type": record.event_type.value},
        )
        return record

    def list(self, session_id: str, limit: int | None = None) -> list[EventRecord]:
        """Oldest first, at most `limit` records (clamped to the page window)."""
        page_size = validate_event_limit(limit)
        with get_session() as db_session:
            rows = (
                db_session.execute(
                    select(PosSimEventRecord)
                    .where(PosSimEventRecord.session_id == session_id)
                    .order_by(PosSimEventRecord.created_at.asc(), PosSimEventRecord.id.asc())
                    .limit(page_size)
                )
                .scalars()
                .all()
            )
            return [EventRecord.from_row(row) for row in rows]


def merge_events(
    known: Iterable[EventRecord], incoming: Iterable[EventRecord]
) -> list[EventRecord]:
    """
    Merge a history read with live notifications into one timeline.

    Events are keyed by id, so an event seen through both paths appears once.
    """
    by_id: dict[int, EventRecord] = {}
    for record in list(known) + list(incoming):
        by_id.setdefault(record.id, record)
    return sorted(
        by_id.values(),
        key=lambda record: (record.created_at or _EPOCH, record.id),
    )
