"""Shared fixtures: in-memory database, channel, manual timers and inline executor."""

import uuid
from concurrent.futures import Executor, Future

import pytest

from pos_sim.config import load_config
from pos_sim.constants import PosSimMode
from pos_sim.db import dispose_engine, init_db, init_engine
from pos_sim.models import Base
from pos_sim.realtime.channel import InMemorySessionChannel
from pos_sim.services.event_log import EventLog
from pos_sim.services.session_actor import SessionActor
from pos_sim.services.session_registry import generate_session_code
from pos_sim.services.snapshot_store import SnapshotStore
from pos_sim.snapshot import ReceiptInfo, TerminalInfo, Toggles, initial_snapshot

TEST_ENV = {
    "POS_SIM_ENABLED": "true",
    "DATABASE_URL": "sqlite://",
    "SUPABASE_URL": "https://demo-project.supabase.co",
    "SUPABASE_ANON_KEY": "anon-key",
    "TERMINAL_KEY": "terminal-key",
    "RL_SIGNING_SECRET": "test-secret",
    "CHANNEL_BACKEND": "memory",
    "UPSTREAM_TIMEOUT_SECONDS": "2",
}


class ManualTimer:
    def __init__(self, due_ms, callback):
        self.due_ms = due_ms
        self.callback = callback
        self.cancelled = False
        self.fired = False

    def cancel(self):
        self.cancelled = True


class ManualScheduler:
    """Timers that only fire when the test advances the clock."""

    def __init__(self):
        self.now_ms = 0
        self.timers = []

    def schedule(self, delay_ms, callback):
        timer = ManualTimer(self.now_ms + delay_ms, callback)
        self.timers.append(timer)
        return timer

    def pending(self):
        return [t for t in self.timers if not t.cancelled and not t.fired]

    def _fire_next(self, until_ms=None):
        due = [t for t in self.pending() if until_ms is None or t.due_ms <= until_ms]
        if not due:
            return False
        timer = min(due, key=lambda t: t.due_ms)
        self.now_ms = max(self.now_ms, timer.due_ms)
        timer.fired = True
        timer.callback()
        return True

    def advance(self, ms):
        target = self.now_ms + ms
        while self._fire_next(target):
            pass
        self.now_ms = target

    def run_all(self):
        while self._fire_next():
            pass


class InlineExecutor(Executor):
    """Runs submitted work immediately on the caller's thread."""

    def submit(self, fn, /, *args, **kwargs):
        future = Future()
        try:
            future.set_result(fn(*args, **kwargs))
        except Exception as exc:
            future.set_exception(exc)
        return future


class FakeIssuer:
    """Stands in for the receipt backend: succeeds, or raises what it is told to."""

    def __init__(self):
        self.calls = []
        self.error = None

    def __call__(self, snapshot):
        self.calls.append(snapshot)
        if self.error is not None:
            raise self.error
        n = len(self.calls)
        return ReceiptInfo(
            token_id=f"00000000-0000-4000-8000-{n:012d}",
            public_url=f"https://receipts.example/r/{n}",
            qr_url=f"https://receipts.example/r/{n}",
        )


@pytest.fixture
def env(monkeypatch):
    for key, value in TEST_ENV.items():
        monkeypatch.setenv(key, value)
    return TEST_ENV


@pytest.fixture
def config(env):
    return load_config("pos-sim-test")


@pytest.fixture
def database(config):
    init_engine(config)
    init_db(Base.metadata)
    yield
    dispose_engine()


@pytest.fixture
def store(database):
    return SnapshotStore()


@pytest.fixture
def event_log(database):
    return EventLog()


@pytest.fixture
def channel():
    return InMemorySessionChannel()


@pytest.fixture
def scheduler():
    return ManualScheduler()


@pytest.fixture
def executor():
    return InlineExecutor()


@pytest.fixture
def issuer():
    return FakeIssuer()


@pytest.fixture
def terminal():
    return TerminalInfo(
        retailer_id="retailer-1",
        store_id="3f1c2a9e-5b7d-4c1e-9a2b-1d2e3f4a5b6c",
        terminal_code="T-001",
    )


@pytest.fixture
def make_snapshot(terminal):
    def _make(code=None, toggles=None):
        return initial_snapshot(
            str(uuid.uuid4()),
            code or generate_session_code(),
            PosSimMode.WEB_POS,
            terminal,
            toggles or Toggles(),
        )

    return _make


@pytest.fixture
def make_actor(store, event_log, channel, scheduler, executor, issuer, config, make_snapshot):
    def _make(toggles=None, **kwargs):
        snapshot = make_snapshot(toggles=toggles)
        store.create(snapshot)
        actor = SessionActor(
            snapshot,
            store=store,
            event_log=event_log,
            channel=channel,
            issuer=kwargs.get("issuer", issuer),
            scheduler=scheduler,
            executor=executor,
            timings=config.timings,
        )
        return actor.start()

    return _make
