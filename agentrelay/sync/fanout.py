"""SSE fan-out: routes SyncEvents to subscriber queues by scope."""
from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any

from .events import (
    CONNECTION_CHANGED,
    MESSAGE_RECEIVED,
    ONLINE_USERS_CHANGED,
    TYPING_CHANGED,
    SyncEvent,
)

logger = logging.getLogger(__name__)


@dataclass
class Subscription:
    """One SSE connection and the scope it asked for.

    The queue carries events in delivery order. ``None`` on the queue means
    the connection was dropped by the server and must be closed.
    """
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    namespace: str = "default"
    all: bool = False
    session_id: str | None = None
    machine_id: str | None = None
    client_id: str | None = None
    device_type: str | None = None
    queue_size: int = 5000
    queue: asyncio.Queue = field(init=False, repr=False)
    closed: bool = field(default=False, init=False)

    def __post_init__(self) -> None:
        self.queue = asyncio.Queue(maxsize=self.queue_size)

    @property
    def scope(self) -> str:
        if self.all:
            return "all"
        if self.session_id:
            return f"session:{self.session_id}"
        if self.machine_id:
            return f"machine:{self.machine_id}"
        return "none"


def should_send(sub: Subscription, event: SyncEvent) -> bool:
    if event.type == CONNECTION_CHANGED:
        return True
    if event.namespace != sub.namespace:
        return False

    if event.type == MESSAGE_RECEIVED:
        return sub.all or (event.session_id is not None and sub.session_id == event.session_id)

    if event.type == TYPING_CHANGED:
        if event.session_id is None or sub.session_id != event.session_id:
            return False
        return not (event.client_id and sub.client_id == event.client_id)

    if event.type == ONLINE_USERS_CHANGED:
        return sub.all

    if sub.all:
        return True
    if event.session_id is not None and sub.session_id == event.session_id:
        return True
    return event.machine_id is not None and sub.machine_id == event.machine_id


class SSEManager:
    def __init__(self) -> None:
        self._subscriptions: dict[str, Subscription] = {}

    @property
    def connection_count(self) -> int:
        return len(self._subscriptions)

    def subscribe(self, subscription: Subscription) -> Subscription:
        self._subscriptions[subscription.id] = subscription
        logger.info(
            "SSE subscribe sub=%s scope=%s client=%s active_clients=%d",
            subscription.id, subscription.scope, subscription.client_id,
            len(self._subscriptions),
        )
        self._broadcast_online_users(subscription.namespace)
        return subscription

    def unsubscribe(self, subscription_id: str) -> None:
        sub = self._subscriptions.pop(subscription_id, None)
        if sub is None:
            return
        logger.info(
            "SSE unsubscribe sub=%s active_clients=%d",
            subscription_id, len(self._subscriptions),
        )
        self._broadcast_online_users(sub.namespace)

    def broadcast(self, event: SyncEvent) -> int:
        """Queue *event* for every matching subscriber. Returns the count."""
        delivered = 0
        for sub in list(self._subscriptions.values()):
            if should_send(sub, event) and self._deliver(sub, event):
                delivered += 1
        return delivered

    def _deliver(self, sub: Subscription, event: SyncEvent) -> bool:
        if sub.closed:
            return False
        try:
            sub.queue.put_nowait(event)
            return True
        except asyncio.QueueFull:
            logger.warning(
                "SSE queue full, dropping connection sub=%s size=%d",
                sub.id, sub.queue.qsize(),
            )
            self._drop(sub)
            return False

    def _drop(self, sub: Subscription) -> None:
        # No event is skipped on a live connection; the client reconnects
        # and refetches.
        sub.closed = True
        while not sub.queue.empty():
            sub.queue.get_nowait()
        sub.queue.put_nowait(None)
        self.unsubscribe(sub.id)

    def close_all(self) -> None:
        for sub in list(self._subscriptions.values()):
            self._drop(sub)

    def get_online_users(self, namespace: str) -> list[dict[str, Any]]:
        users: dict[str, dict[str, Any]] = {}
        for sub in self._subscriptions.values():
            if sub.namespace != namespace or not sub.client_id:
                continue
            users[sub.client_id] = {
                "clientId": sub.client_id,
                "deviceType": sub.device_type,
                "sessionId": sub.session_id,
            }
        return list(users.values())

    def get_session_viewers(self, namespace: str, session_id: str) -> list[dict[str, Any]]:
        return [
            u for u in self.get_online_users(namespace) if u["sessionId"] == session_id
        ]

    def _broadcast_online_users(self, namespace: str) -> None:
        event = SyncEvent(
            ONLINE_USERS_CHANGED,
            namespace=namespace,
            data={"users": self.get_online_users(namespace)},
        )
        self.broadcast(event)
