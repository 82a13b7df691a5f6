"""In-process event bus for sync notifications."""

import logging
from enum import Enum
from typing import Any, Callable, Union

logger = logging.getLogger(__name__)

EventCallback = Callable[..., None]


class SyncEvent(str, Enum):
    """Names of events emitted by the sync engine."""

    SYNC_STARTED = "sync:started"
    SYNC_PROGRESS = "sync:progress"
    SYNC_COMPLETED = "sync:completed"
    SYNC_ERROR = "sync:error"
    SYNC_MODE_CHANGED = "sync:mode-changed"
    SYNC_DRIFT_DETECTED = "sync:drift-detected"
    SYNC_RETRY_ATTEMPTED = "sync:retry-attempted"
    FILE_SYNCED = "sync:file-synced"
    CONFLICT_DETECTED = "conflict:detected"
    CONFLICT_RESOLVED = "conflict:resolved"
    QUEUE_UPDATED = "offline:queue-updated"
    SCOPE_CHANGED = "selective-sync:changed"


EventName = Union[SyncEvent, str]


def _key(event: EventName) -> str:
    return event.value if isinstance(event, SyncEvent) else event


class EventBus:
    """Synchronous publish/subscribe bus.

    Handlers run in subscription order. An exception in one handler is
    logged and does not prevent the others from running.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, list[EventCallback]] = {}

    def on(self, event: EventName, callback: EventCallback) -> Callable[[], None]:
        """Subscribe to an event.

        Args:
            event: Event name
            callback: Called with the emitted arguments

        Returns:
            Function that removes the subscription
        """
        self._handlers.setdefault(_key(event), []).append(callback)
        return lambda: self.off(event, callback)

    def once(self, event: EventName, callback: EventCallback) -> Callable[[], None]:
        """Subscribe to the next emission of an event only."""

        def wrapper(*args: Any, **kwargs: Any) -> None:
            self.off(event, wrapper)
            callback(*args, **kwargs)

        return self.on(event, wrapper)

    def off(self, event: EventName, callback: EventCallback) -> None:
        """Remove a subscription (no-op if it is not registered)."""
        handlers = self._handlers.get(_key(event))
        if not handlers:
            return
        try:
            handlers.remove(callback)
        except ValueError:
            return
        if not handlers:
            del self._handlers[_key(event)]

    def emit(self, event: EventName, *args: Any, **kwargs: Any) -> None:
        """Call every handler subscribed to ``event``."""
        for callback in list(self._handlers.get(_key(event), [])):
            try:
                callback(*args, **kwargs)
            except Exception as e:
                logger.error(f'Error in event handler for "{_key(event)}": {e}')

    def clear(self) -> None:
        """Remove all subscriptions."""
        self._handlers.clear()

    def listener_count(self, event: EventName) -> int:
        return len(self._handlers.get(_key(event), []))

    def event_names(self) -> list[str]:
        return list(self._handlers)
