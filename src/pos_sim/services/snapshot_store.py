"""
Snapshot Store: keyed storage of the canonical snapshot of each session.

Every write replaces the whole document. Reads validate the stored JSON back
into a `Snapshot`, so a viewer never sees a half-shaped document.
"""

from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from pos_sim.datetime_utils import utcnow
from pos_sim.db import get_session
from pos_sim.errors import PersistenceError, SessionNotFoundError
from pos_sim.models import PosSimSession
from pos_sim.snapshot import Snapshot

logger = logging.getLogger(__name__)


class SnapshotStore:
    def create(self, snapshot: Snapshot) -> Snapshot:
        """Insert the row of a new session together with its first snapshot."""
        try:
            with get_session() as db_session:
                db_session.add(
                    PosSimSession(
                        session_id=snapshot.session_id,
                        session_code=snapshot.session_code,
                        mode=snapshot.mode.value,
                        snapshot_json=snapshot.to_json(),
                        snapshot_updated_at=utcnow(),
                    )
                )
        except IntegrityError as exc:
            raise PersistenceError(
                f"Session {snapshot.session_id} or code {snapshot.session_code} already exists"
            ) from exc
        except SQLAlchemyError as exc:
            logger.error("Failed to create session %s: %s", snapshot.session_id, exc)
            raise PersistenceError(f"Failed to create session: {exc}") from exc
        return snapshot

    def get(self, session_id: str) -> Snapshot:
        with get_session() as db_session:
            row = db_session.get(PosSimSession, session_id)
            if row is None:
                raise SessionNotFoundError(f"Session not found: {session_id}")
            return Snapshot.model_validate(row.snapshot_json)

    def get_by_code(self, session_code: str) -> Snapshot:
        with get_session() as db_session:
            row = db_session.execute(
                select(PosSimSession).where(PosSimSession.session_code == session_code)
            ).scalar_one_or_none()
            if row is None:
                raise SessionNotFoundError(f"Session not found for code: {session_code}")
            return Snapshot.model_validate(row.snapshot_json)

    def code_exists(self, session_code: str) -> bool:
        with get_session() as db_session:
            return (
                db_session.execute(
                    select(PosSimSession.session_id).where(
                        PosSimSession.session_code == session_code
                    )
                ).first()
                is not None
            )

    def put(self, session_id: str, snapshot: Snapshot) -> None:
        """
        Replace the stored snapshot.

        Raises:
            SessionNotFoundError: the session row does not exist
            PersistenceError: the write failed
        """
        try:
            with get_session() as db_session:
                row = db_session.get(PosSimSession, session_id)
                if row is None:
                    raise SessionNotFoundError(f"Session not found: {session_id}")
                row.snapshot_json = snapshot.to_json()
                row.snapshot_updated_at = utcnow()
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Snapshot write failed: {exc}", code="PERSIST_001") from exc
