"""
Status Notification Bus

Publishes ``SyncStatus`` snapshots to registered listeners.
"""

import logging
from typing import Callable

from .models import SyncStatus

logger = logging.getLogger(__name__)

StatusListener = Callable[[SyncStatus], None]


class StatusBus:
    """Fan-out of sync status snapshots.

    Args:
        snapshot: Callable producing the current status; used to prime new
            subscribers.
    """

    def __init__(self, snapshot: Callable[[], SyncStatus]):
        self._snapshot = snapshot
        self._listeners: list[StatusListener] = []

    def subscribe(self, listener: StatusListener) -> Callable[[], None]:
        """Register a listener and immediately deliver the current status.

        Returns:
            A function that removes the listener.
        """
        self._listeners.append(listener)
        self._deliver(listener, self._snapshot())

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def publish(self, status: SyncStatus | None = None) -> None:
        """Deliver a snapshot (the current one by default) to every listener."""
        if status is None:
            status = self._snapshot()
        for listener in list(self._listeners):
            self._deliver(listener, status)

    def clear(self) -> None:
        self._listeners.clear()

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    @staticmethod
    def _deliver(listener: StatusListener, status: SyncStatus) -> None:
        try:
            listener(status)
        except Exception:
            logger.exception(f"Error in sync status listener {listener!r}")
