"""Live push channel for users with an open dashboard connection.

Each open connection holds a bounded subscriber queue that the dashboard
drains as a Server-Sent Events stream. Delivery is at-most-once: a user with
no open connection, or a full queue, simply misses the push and picks the
alert up from the durable store on the next dashboard load.
"""

import json
import logging
import queue
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

logger = logging.getLogger(__name__)


@dataclass
class PushMessage:
    """One event pushed to a live connection."""
    event: str
    data: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=datetime.now)

    def to_sse(self) -> str:
        """Format as a Server-Sent Events frame."""
        payload = dict(self.data)
        payload.setdefault("timestamp", self.created_at.isoformat())
        return f"event: {self.event}\ndata: {json.dumps(payload, default=str)}\n\n"


class Subscription:
    """A single live connection held by a user."""

    def __init__(self, user_id: str, queue_size: int = 100):
        self.id = str(uuid.uuid4())[:8]
        self.user_id = user_id
        self.opened_at = datetime.now()
        self._queue: queue.Queue[PushMessage] = queue.Queue(maxsize=queue_size)
        self._closed = threading.Event()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def offer(self, message: PushMessage) -> bool:
        """Queue a message without blocking. Returns False if dropped."""
        if self.closed:
            return False
        try:
            self._queue.put_nowait(message)
            return True
        except queue.Full:
            return False

    def get(self, timeout: float | None = None) -> PushMessage | None:
        """Wait for the next message; None on timeout or once closed."""
        if self.closed:
            return None
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def close(self) -> None:
        self._closed.set()


class LivePushChannel:
    """Registry of live connections keyed by user ID."""

    def __init__(self, queue_size: int = 100):
        """
        Initialize live push channel.

        Args:
            queue_size: Per-connection buffer; pushes beyond it are dropped
        """
        self.queue_size = queue_size
        self._connections: dict[str, list[Subscription]] = {}
        self._lock = threading.Lock()

    def subscribe(self, user_id: str) -> Subscription:
        """Open a live connection for a user."""
        subscription = Subscription(user_id, queue_size=self.queue_size)
        with self._lock:
            self._connections.setdefault(user_id, []).append(subscription)
            count = len(self._connections[user_id])
        logger.info(f"Push: user {user_id} connected ({count} connection(s))")
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        """Close a live connection. Safe to call more than once."""
        subscription.close()
        with self._lock:
            connections = self._connections.get(subscription.user_id)
            if connections and subscription in connections:
                connections.remove(subscription)
                if not connections:
                    del self._connections[subscription.user_id]
                logger.info(f"Push: user {subscription.user_id} disconnected")

    def publish(self, user_id: str, message: PushMessage) -> int:
        """Push a message to every open connection of a user.

        Returns:
            Number of connections the message was queued on
        """
        with self._lock:
            connections = list(self._connections.get(user_id, []))

        delivered = 0
        for subscription in connections:
            if subscription.offer(message):
                delivered += 1
            else:
                logger.warning(
                    f"Push: dropped {message.event} for user {user_id} "
                    f"(connection {subscription.id} full or closed)"
                )
        return delivered

    def is_connected(self, user_id: str) -> bool:
        with self._lock:
            return bool(self._connections.get(user_id))

    def connection_count(self, user_id: str | None = None) -> int:
        with self._lock:
            if user_id is not None:
                return len(self._connections.get(user_id, []))
            return sum(len(c) for c in self._connections.values())
