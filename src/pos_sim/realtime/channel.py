"""
Session Channel: per-session, self-inclusive broadcast of transient hints.

Messages published here are never persisted. They only tell viewers (and the
host itself) that something changed; the Snapshot Store remains the source of
truth. Every raw message crosses a single decode-and-route boundary
(`MessageRouter.dispatch`) where unknown or malformed messages are dropped and
counted instead of reaching a handler.
"""

from __future__ import annotations

import json
import logging
import threading
from collections import defaultdict
from collections.abc import Callable
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from redis import Redis
from redis.exceptions import RedisError

from pos_sim.config import AppConfig
from pos_sim.constants import ChannelMessageType, ScanState
from pos_sim.datetime_utils import iso_now
from pos_sim.snapshot import Snapshot

logger = logging.getLogger(__name__)

CHANNEL_PREFIX = "pos-sim"

RawHandler = Callable[[str], None]


def channel_name(session_id: str) -> str:
    return f"{CHANNEL_PREFIX}:{session_id}"


class ChannelPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")


class SnapshotSyncPayload(ChannelPayload):
    snapshot: Snapshot


class SessionCreatedMessagePayload(ChannelPayload):
    session_code: str


class CustomerJoinedMessagePayload(ChannelPayload):
    session_code: str | None = None


class CustomerScannedMessagePayload(ChannelPayload):
    outcome: ScanState
    token_id: str | None = None
    message: str | None = None


class ResetRequestedMessagePayload(ChannelPayload):
    previous_sale_id: str | None = None


CHANNEL_PAYLOAD_TYPES: dict[ChannelMessageType, type[ChannelPayload]] = {
    ChannelMessageType.SESSION_CREATED: SessionCreatedMessagePayload,
    ChannelMessageType.CUSTOMER_JOINED: CustomerJoinedMessagePayload,
    ChannelMessageType.CUSTOMER_SCANNED: CustomerScannedMessagePayload,
    ChannelMessageType.CART_UPDATED: SnapshotSyncPayload,
    ChannelMessageType.SNAPSHOT_SYNC: SnapshotSyncPayload,
    ChannelMessageType.RESET_REQUESTED: ResetRequestedMessagePayload,
}


class ChannelMessage(BaseModel):
    """Transient envelope `{type, session_id, sale_id?, ts, payload}`."""

    model_config = ConfigDict(extra="ignore")

    type: ChannelMessageType
    session_id: str = Field(..., min_length=1)
    sale_id: str | None = None
    ts: str = Field(default_factory=iso_now)
    payload: dict[str, Any] = Field(default_factory=dict)

    def typed_payload(self) -> ChannelPayload:
        return CHANNEL_PAYLOAD_TYPES[self.type].model_validate(self.payload)

    @property
    def snapshot(self) -> Snapshot | None:
        typed = self.typed_payload()
        return typed.snapshot if isinstance(typed, SnapshotSyncPayload) else None

    def encode(self) -> str:
        return self.model_dump_json()


def make_message(
    message_type: ChannelMessageType | str,
    session_id: str,
    payload: dict[str, Any] | None = None,
    sale_id: str | None = None,
) -> ChannelMessage:
    return ChannelMessage(
        type=ChannelMessageType(message_type),
        session_id=session_id,
        sale_id=sale_id,
        payload=payload or {},
    )


def snapshot_message(
    snapshot: Snapshot, message_type: ChannelMessageType = ChannelMessageType.SNAPSHOT_SYNC
) -> ChannelMessage:
    """SNAPSHOT_SYNC (or CART_UPDATED) carrying the whole snapshot."""
    return make_message(
        message_type,
        snapshot.session_id,
        payload={"snapshot": snapshot.to_json()},
        sale_id=snapshot.active_sale_id,
    )


def decode_message(raw: str | bytes | dict[str, Any]) -> ChannelMessage | None:
    """Parse and validate one wire message; None when it must be dropped."""
    try:
        data = json.loads(raw) if isinstance(raw, (str, bytes)) else raw
        if not isinstance(data, dict):
            return None
        message = ChannelMessage.model_validate(data)
        message.typed_payload()
    except (ValueError, ValidationError):
        return None
    return message


class MessageRouter:
    """
    Decode-and-route boundary of a channel subscriber.

    Handlers are registered per message type. Messages that do not decode, or
    whose type has no handler, are dropped and counted. A failing handler is
    logged and counted; it never takes the subscriber down.
    """

    def __init__(self, session_id: str | None = None):
        self.session_id = session_id
        self._handlers: dict[ChannelMessageType, list[Callable[[ChannelMessage], None]]] = (
            defaultdict(list)
        )
        self.dropped = 0
        self.failed = 0
        self.delivered = 0

    def on(self, message_type: ChannelMessageType, handler: Callable[[ChannelMessage], None]):
        self._handlers[ChannelMessageType(message_type)].append(handler)
        return self

    def dispatch(self, raw: str | bytes | dict[str, Any]) -> bool:
        message = decode_message(raw)
        if message is None:
            self.dropped += 1
            logger.warning(
                "Dropped invalid channel message",
                extra={"session_id": self.session_id, "dropped": self.dropped},
            )
            return False
        if self.session_id and message.session_id != self.session_id:
            self.dropped += 1
            logger.warning(
                "Dropped channel message for another session",
                extra={"session_id": self.session_id, "message_session": message.session_id},
            )
            return False

        handlers = self._handlers.get(message.type)
        if not handlers:
            self.dropped += 1
            return False

        for handler in handlers:
            try:
                handler(message)
            except Exception:
                self.failed += 1
                logger.exception(
                    "Channel handler failed",
                    extra={"session_id": self.session_id, "message_type": message.type.value},
                )
        self.delivered += 1
        return True


class Subscription:
    """
    Handle of one channel subscription.

    `connected` is False while the backend is down and the listener is waiting
    to resubscribe; `reconnects` counts the connections lost so far.
    """

    def __init__(self, unsubscribe: Callable[[], None], connected: bool = True):
        self._unsubscribe = unsubscribe
        self.active = True
        self.connected = connected
        self.reconnects = 0

    def unsubscribe(self) -> None:
        if self.active:
            self.active = False
            self.connected = False
            self._unsubscribe()


class SessionChannel:
    """Contract of a session channel backend."""

    def publish(self, session_id: str, message: ChannelMessage) -> None:
        raise NotImplementedError

    def subscribe(
        self,
        session_id: str,
        handler: RawHandler,
        on_subscribed: Callable[[], None] | None = None,
    ) -> Subscription:
        """
        Register `handler` for the raw messages of a session.

        `on_subscribed` runs each time the subscription becomes live, which is the point
        where a consumer must re-read the canonical snapshot.
        """
        raise NotImplementedError

    def close(self) -> None:
        """Release backend resources."""


class InMemorySessionChannel(SessionChannel):
    """In-process fan-out, delivered synchronously on the publisher's thread."""

    def __init__(self):
        self._subscribers: dict[str, list[RawHandler]] = defaultdict(list)
        self._lock = threading.Lock()
        self.published: list[ChannelMessage] = []

    def publish(self, session_id: str, message: ChannelMessage) -> None:
        encoded = message.encode()
        with self._lock:
            self.published.append(message)
            handlers = list(self._subscribers.get(channel_name(session_id), ()))
        for handler in handlers:
            handler(encoded)

    def subscribe(self, session_id, handler, on_subscribed=None) -> Subscription:
        name = channel_name(session_id)
        with self._lock:
            self._subscribers[name].append(handler)

        def _unsubscribe() -> None:
            with self._lock:
                if handler in self._subscribers.get(name, []):
                    self._subscribers[name].remove(handler)

        if on_subscribed is not None:
            on_subscribed()
        return Subscription(_unsubscribe)

    def subscriber_count(self, session_id: str) -> int:
        with self._lock:
            return len(self._subscribers.get(channel_name(session_id), ()))

    def close(self) -> None:
        with self._lock:
            self._subscribers.clear()


class RedisSessionChannel(SessionChannel):
    """
    Redis pub/sub backend; one listener thread per subscription.

    A listener that loses its connection keeps retrying with exponential
    backoff capped at `max_reconnect_delay`. Every successful resubscribe runs
    `on_subscribed` again so the consumer re-reads the canonical snapshot it
    may have missed while disconnected.
    """

    def __init__(
        self,
        client: Redis,
        poll_timeout: float = 1.0,
        reconnect_delay: float = 0.5,
        max_reconnect_delay: float = 30.0,
    ):
        self._client = client
        self._poll_timeout = poll_timeout
        self._reconnect_delay = reconnect_delay
        self._max_reconnect_delay = max_reconnect_delay
        self._threads: list[threading.Thread] = []

    def publish(self, session_id: str, message: ChannelMessage) -> None:
        try:
            self._client.publish(channel_name(session_id), message.encode())
        except RedisError as exc:
            logger.warning(
                "Failed to publish channel message %s: %s",
                message.type.value,
                exc,
                extra={"session_id": session_id},
            )

    def subscribe(self, session_id, handler, on_subscribed=None) -> Subscription:
        name = channel_name(session_id)
        stop = threading.Event()
        subscription = Subscription(stop.set, connected=False)
        confirmed = False

        def _listen_once() -> None:
            nonlocal confirmed
            pubsub = self._client.pubsub()
            try:
                pubsub.subscribe(name)
                while not stop.is_set():
                    item = pubsub.get_message(timeout=self._poll_timeout)
                    if item is None:
                        continue
                    if item["type"] == "subscribe":
                        confirmed = True
                        subscription.connected = True
                        if on_subscribed is not None:
                            on_subscribed()
                    elif item["type"] == "message":
                        handler(item["data"])
            finally:
                subscription.connected = False
                pubsub.close()

        def _listen() -> None:
            nonlocal confirmed
            delay = self._reconnect_delay
            while not stop.is_set():
                confirmed = False
                try:
                    _listen_once()
                except RedisError as exc:
                    if confirmed:
                        delay = self._reconnect_delay
                    subscription.reconnects += 1
                    logger.warning(
                        "Channel subscription lost, retrying in %.1fs: %s",
                        delay,
                        exc,
                        extra={"session_id": session_id, "reconnects": subscription.reconnects},
                    )
                    if stop.wait(delay):
                        break
                    delay = min(delay * 2, self._max_reconnect_delay)

        thread = threading.Thread(target=_listen, name=f"channel-{name}", daemon=True)
        thread.start()
        self._threads.append(thread)

        return subscription

    def close(self) -> None:
        self._client.close()


def get_channel(config: AppConfig) -> SessionChannel:
    if config.channel_backend == "redis":
        client = Redis(
            host=config.redis_host,
            port=config.redis_port,
            db=config.redis_db,
            password=config.redis_password or None,
            decode_responses=True,
        )
        return RedisSessionChannel(client)
    return InMemorySessionChannel()
