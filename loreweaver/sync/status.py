"""Sync status publish/subscribe channel."""

import logging
import threading
import uuid
from dataclasses import dataclass, replace
from typing import Callable, Dict, Optional

from loreweaver.types import SyncStatus

logger = logging.getLogger(__name__)

StatusListener = Callable[[SyncStatus], None]


@dataclass(frozen=True)
class Subscription:
    """Token returned by ``StatusChannel.subscribe``."""

    id: str
    channel: "StatusChannel"

    def cancel(self) -> bool:
        return self.channel.unsubscribe(self)


class StatusChannel:
    """Holds the live ``SyncStatus`` and publishes every change.

    Subscribers get a snapshot copy, first on subscription and then after
    each update, synchronously in the updating thread. Publishing is
    serialized, so listeners see updates in the order they were applied and
    the last snapshot a listener receives is the current status. A failing
    subscriber is logged and does not stop delivery to the others.
    """

    def __init__(self, initial: Optional[SyncStatus] = None):
        self._lock = threading.Lock()
        # Held across apply and deliver; reentrant so listeners may update
        self._publish_lock = threading.RLock()
        self._status = initial or SyncStatus()
        self._revision = 0
        self._listeners: Dict[str, StatusListener] = {}

    @property
    def status(self) -> SyncStatus:
        with self._lock:
            return replace(self._status)

    def subscribe(self, listener: StatusListener) -> Subscription:
        subscription = Subscription(id=str(uuid.uuid4()), channel=self)
        with self._publish_lock:
            with self._lock:
                self._listeners[subscription.id] = listener
                snapshot = replace(self._status)
            self._deliver(listener, snapshot)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> bool:
        with self._lock:
            return self._listeners.pop(subscription.id, None) is not None

    def update(self, **changes) -> SyncStatus:
        """Apply field changes and publish the new status."""
        with self._publish_lock:
            with self._lock:
                self._status = replace(self._status, **changes)
                self._revision += 1
                revision = self._revision
                snapshot = replace(self._status)
                listeners = list(self._listeners.values())
            for listener in listeners:
                if self._revision != revision:
                    # A listener published a newer status to everyone already
                    break
                self._deliver(listener, replace(snapshot))
        return snapshot

    def _deliver(self, listener: StatusListener, status: SyncStatus) -> None:
        try:
            listener(status)
        except Exception as e:
            logger.error(f"Sync status listener failed: {e}", exc_info=True)

    @property
    def listener_count(self) -> int:
        with self._lock:
            return len(self._listeners)
