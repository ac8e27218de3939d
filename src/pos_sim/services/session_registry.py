"""
Arena of session actors keyed by session id.

Creates sessions behind the feature gate, hands out the one actor that owns
each session, and rehydrates an actor from the Snapshot Store when a session
outlives the process that created it.
"""

from __future__ import annotations

import logging
import secrets
import threading
import uuid
from concurrent.futures import Executor, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from pos_sim.config import AppConfig
from pos_sim.constants import (
    DEFAULT_CURRENCY,
    SESSION_CODE_ALPHABET,
    SESSION_CODE_LENGTH,
    EventType,
    PosSimMode,
)
from pos_sim.errors import FeatureDisabledError, PersistenceError
from pos_sim.events import SessionCreatedPayload
from pos_sim.realtime.channel import SessionChannel, get_channel
from pos_sim.services.event_log import EventLog
from pos_sim.services.receiptless_client import ReceiptlessClient, build_issue_body
from pos_sim.services.session_actor import Scheduler, SessionActor
from pos_sim.services.snapshot_store import SnapshotStore
from pos_sim.services.state_machine import Intent, TransitionResult
from pos_sim.snapshot import ReceiptInfo, Snapshot, TerminalInfo, Toggles, initial_snapshot
from pos_sim.validation import ValidationError, normalize_session_code, validate_session_id

logger = logging.getLogger(__name__)

MAX_CODE_ATTEMPTS = 10


def generate_session_code() -> str:
    return "".join(secrets.choice(SESSION_CODE_ALPHABET) for _ in range(SESSION_CODE_LENGTH))


@dataclass
class CreatedSession:
    session_id: str
    session_code: str
    customer_url: str
    snapshot: Snapshot

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "session_code": self.session_code,
            "customer_url": self.customer_url,
            "snapshot": self.snapshot.to_json(),
        }


class SessionRegistry:
    def __init__(
        self,
        config: AppConfig,
        store: SnapshotStore | None = None,
        event_log: EventLog | None = None,
        channel: SessionChannel | None = None,
        client: ReceiptlessClient | None = None,
        scheduler: Scheduler | None = None,
        executor: Executor | None = None,
    ):
        self.config = config
        self.store = store or SnapshotStore()
        self.event_log = event_log or EventLog()
        self.channel = channel or get_channel(config)
        self.client = client or ReceiptlessClient(config)
        self.scheduler = scheduler
        self._owns_executor = executor is None
        self.executor = executor or ThreadPoolExecutor(
            max_workers=4, thread_name_prefix="pos-sim-issuance"
        )
        self._actors: dict[str, SessionActor] = {}
        self._lock = threading.Lock()

    def _issue(self, snapshot: Snapshot) -> ReceiptInfo:
        return self.client.issue_receipt(build_issue_body(snapshot))

    def customer_url(self, session_code: str) -> str:
        return f"{self.config.customer_base_path.rstrip('/')}/{session_code}"

    def _new_actor(self, snapshot: Snapshot) -> SessionActor:
        return SessionActor(
            snapshot,
            store=self.store,
            event_log=self.event_log,
            channel=self.channel,
            issuer=self._issue,
            scheduler=self.scheduler,
            executor=self.executor,
            timings=self.config.timings,
        )

    def _unique_code(self) -> str:
        for _ in range(MAX_CODE_ATTEMPTS):
            code = generate_session_code()
            if not self.store.code_exists(code):
                return code
        raise PersistenceError("Could not allocate a unique session code")

    def create_session(
        self,
        mode: PosSimMode | str,
        terminal: TerminalInfo | dict[str, Any],
        toggles: Toggles | dict[str, Any] | None = None,
        currency: str = DEFAULT_CURRENCY,
    ) -> CreatedSession:
        """
        Create a session, persist its first snapshot and start its actor.

        Raises:
            FeatureDisabledError: the simulator feature gate is off
            ValidationError: unknown mode or incomplete terminal identity
            PersistenceError: the session row could not be stored
        """
        if not self.config.pos_sim_enabled:
            raise FeatureDisabledError("POS simulator not enabled")
        self.evict_idle()

        try:
            mode = PosSimMode(mode)
        except ValueError:
            raise ValidationError(f"Unknown mode: {mode}") from None
        try:
            terminal = TerminalInfo.model_validate(terminal)
            toggles = Toggles.model_validate(toggles or {})
        except PydanticValidationError as exc:
            raise ValidationError(f"Invalid session data: {exc}") from exc

        session_id = str(uuid.uuid4())
        snapshot = initial_snapshot(
            session_id, self._unique_code(), mode, terminal, toggles, currency=currency
        )
        self.store.create(snapshot)
        customer_url = self.customer_url(snapshot.session_code)

        try:
            self.event_log.append(
                session_id,
                EventType.SESSION_CREATED,
                SessionCreatedPayload(
                    sale_id=snapshot.active_sale_id,
                    session_code=snapshot.session_code,
                    customer_url=customer_url,
                    mode=mode,
                ),
            )
        except PersistenceError:
            logger.exception("SESSION_CREATED append failed", extra={"session_id": session_id})

        actor = self._new_actor(snapshot)
        with self._lock:
            self._actors[session_id] = actor
        actor.start()

        logger.info(
            "Session created",
            extra={
                "session_id": session_id,
                "session_code": snapshot.session_code,
                "mode": mode.value,
            },
        )
        return CreatedSession(
            session_id=session_id,
            session_code=snapshot.session_code,
            customer_url=customer_url,
            snapshot=actor.snapshot,
        )

    def get_actor(self, session_id: str) -> SessionActor:
        """
        The actor owning `session_id`, rehydrated from storage if needed.

        Raises:
            ValidationError: malformed session id
            SessionNotFoundError: no such session
        """
        session_id = validate_session_id(session_id)
        with self._lock:
            actor = self._actors.get(session_id)
            if actor is not None:
                return actor

        snapshot = self.store.get(session_id)
        with self._lock:
            actor = self._actors.get(session_id)
            if actor is None:
                actor = self._new_actor(snapshot)
                self._actors[session_id] = actor
                created = True
            else:
                created = False
        if created:
            logger.info("Session actor rehydrated", extra={"session_id": session_id})
            actor.start()
        return actor

    def dispatch(self, session_id: str, intent: Intent) -> TransitionResult:
        return self.get_actor(session_id).dispatch(intent)

    def find_by_code(self, session_code: str) -> Snapshot:
        return self.store.get_by_code(normalize_session_code(session_code))

    def active_sessions(self) -> list[str]:
        with self._lock:
            return list(self._actors)

    def evict(self, session_id: str) -> bool:
        """Stop and forget the actor of `session_id`; its snapshot stays in storage."""
        with self._lock:
            actor = self._actors.pop(session_id, None)
        if actor is None:
            return False
        actor.stop()
        logger.info("Session actor evicted", extra={"session_id": session_id})
        return True

    def evict_idle(
        self, max_idle_seconds: float | None = None, now: float | None = None
    ) -> list[str]:
        """
        Evict every actor idle for at least `max_idle_seconds`.

        Busy actors are skipped. An evicted session is rehydrated on its next
        request.
        """
        if max_idle_seconds is None:
            max_idle_seconds = self.config.session_idle_seconds
        with self._lock:
            idle = [
                session_id
                for session_id, actor in self._actors.items()
                if not actor.busy and actor.idle_for(now) >= max_idle_seconds
            ]
        return [session_id for session_id in idle if self.evict(session_id)]

    def shutdown(self) -> None:
        with self._lock:
            actors, self._actors = list(self._actors.values()), {}
        for actor in actors:
            actor.stop()
        if self._owns_executor:
            self.executor.shutdown(wait=False)
        self.channel.close()
