"""Debouncing of local file change events.

The filesystem notification source lives outside the sync engine; it calls
:meth:`ChangeDebouncer.notify` for every raw event. Bursts of events for one
path collapse into a single event delivered after a quiet period. Paths the
sync engine is writing itself are ignored so downloads do not bounce back
as uploads.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Awaitable, Callable, Optional

from ..utils import DEFAULT_DEBOUNCE_DELAY
from .scheduler import Scheduler
from .scope import SelectiveScope

if TYPE_CHECKING:
    from ..local import LocalVault

logger = logging.getLogger(__name__)

DEFAULT_IGNORE_DURATION = 2.0

CHANGE_TIMER_PREFIX = "change:"
UNIGNORE_TIMER_PREFIX = "unignore:"


class ChangeAction(str, Enum):
    """Kinds of local file changes."""

    CREATE = "create"
    MODIFY = "modify"
    DELETE = "delete"
    RENAME = "rename"


@dataclass
class FileChangeEvent:
    """A local change of one file."""

    path: str
    action: ChangeAction
    previous_path: Optional[str] = None
    """Old path of a rename"""


FileChangeHandler = Callable[[FileChangeEvent], Awaitable[None]]


def _merge(pending: FileChangeEvent, new: FileChangeEvent) -> FileChangeEvent:
    """Combine a pending event with a newer one for the same path."""
    if new.action == ChangeAction.MODIFY and pending.action in (
        ChangeAction.CREATE,
        ChangeAction.RENAME,
    ):
        return pending
    return new


class ChangeDebouncer:
    """Collapses change bursts per path and applies the ignore window."""

    def __init__(
        self,
        handler: FileChangeHandler,
        scheduler: Optional[Scheduler] = None,
        delay: float = DEFAULT_DEBOUNCE_DELAY,
        scope: Optional[SelectiveScope] = None,
        ignore_duration: Optional[float] = DEFAULT_IGNORE_DURATION,
    ):
        """Initialize the debouncer.

        Args:
            handler: Coroutine receiving debounced events
            scheduler: Scheduler owning the debounce timers
            delay: Quiet period in seconds before an event is delivered
            scope: Selective sync rules; out-of-scope paths are dropped
            ignore_duration: Seconds after which an ignored path is watched
                again (None keeps it ignored until :meth:`unignore_path`)
        """
        self.handler = handler
        self.scheduler = scheduler or Scheduler()
        self.delay = delay
        self.scope = scope
        self.ignore_duration = ignore_duration
        self._pending: dict[str, FileChangeEvent] = {}
        self._ignored: set[str] = set()

    # =========================
    # Ignore window
    # =========================

    def ignore_path(self, path: str) -> None:
        """Stop reporting changes of ``path`` while the engine writes it."""
        self._ignored.add(path)
        self._pending.pop(path, None)
        self.scheduler.cancel(CHANGE_TIMER_PREFIX + path)
        if self.ignore_duration is not None:

            async def unignore() -> None:
                self.unignore_path(path)

            self.scheduler.call_later(
                UNIGNORE_TIMER_PREFIX + path, self.ignore_duration, unignore
            )

    def unignore_path(self, path: str) -> None:
        self._ignored.discard(path)
        self.scheduler.cancel(UNIGNORE_TIMER_PREFIX + path)

    def is_ignored(self, path: str) -> bool:
        return path in self._ignored

    # =========================
    # Events
    # =========================

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def _in_scope(self, path: Optional[str]) -> bool:
        return path is not None and (
            self.scope is None or self.scope.should_sync_path(path)
        )

    def notify(self, event: FileChangeEvent) -> None:
        """Report a raw change event (must be called inside the event loop).

        Deletes are delivered on the next loop iteration without waiting
        for the quiet period; a pending event for the deleted path is
        dropped.
        """
        path = event.path
        if self.is_ignored(path):
            logger.debug(f"Ignoring {event.action.value} of {path} (engine write)")
            return

        if event.action == ChangeAction.RENAME:
            if not self._in_scope(path):
                if not self._in_scope(event.previous_path):
                    return
                # Moved out of scope: remove it remotely
                event = FileChangeEvent(event.previous_path or path, ChangeAction.DELETE)
                path = event.path
            elif not self._in_scope(event.previous_path):
                event = FileChangeEvent(path, ChangeAction.CREATE)
        elif not self._in_scope(path):
            logger.debug(f"Ignoring {event.action.value} of out-of-scope {path}")
            return

        if event.action == ChangeAction.DELETE:
            self._pending[path] = event
            self.scheduler.call_later(
                CHANGE_TIMER_PREFIX + path, 0.0, lambda: self._fire(path)
            )
            return

        pending = self._pending.get(path)
        self._pending[path] = _merge(pending, event) if pending else event
        self.scheduler.call_later(
            CHANGE_TIMER_PREFIX + path, self.delay, lambda: self._fire(path)
        )

    async def _fire(self, path: str) -> None:
        event = self._pending.pop(path, None)
        if event is None:
            return
        logger.debug(f"Delivering {event.action.value} of {path}")
        await self.handler(event)

    def cancel_all(self) -> int:
        """Drop every pending event.

        Returns:
            Number of dropped events
        """
        count = len(self._pending)
        for path in list(self._pending):
            self.scheduler.cancel(CHANGE_TIMER_PREFIX + path)
        self._pending.clear()
        return count


class LocalChangePoller:
    """Detects local changes by comparing periodic snapshots of the vault.

    Used where no filesystem notification source is available. A file whose
    size or modification time changed is reported as modified; renames show
    up as a delete plus a create.
    """

    TICKER_NAME = "local-poll"

    def __init__(
        self,
        local: "LocalVault",
        notify: Callable[[FileChangeEvent], None],
        scheduler: Scheduler,
        interval: float = 2.0,
    ):
        self.local = local
        self.notify = notify
        self.scheduler = scheduler
        self.interval = interval
        self._snapshot: Optional[dict[str, tuple[int, float]]] = None

    async def _take_snapshot(self) -> dict[str, tuple[int, float]]:
        return {f.relative_path: (f.size, f.mtime) for f in await self.local.list_files()}

    async def poll(self) -> list[FileChangeEvent]:
        """Compare the vault with the previous snapshot and report changes.

        The first call only records the snapshot.

        Returns:
            Reported events
        """
        current = await self._take_snapshot()
        previous, self._snapshot = self._snapshot, current
        if previous is None:
            return []

        events: list[FileChangeEvent] = []
        for path, signature in current.items():
            old = previous.get(path)
            if old is None:
                events.append(FileChangeEvent(path, ChangeAction.CREATE))
            elif old != signature:
                events.append(FileChangeEvent(path, ChangeAction.MODIFY))
        for path in previous:
            if path not in current:
                events.append(FileChangeEvent(path, ChangeAction.DELETE))

        for event in events:
            self.notify(event)
        return events

    async def start(self) -> None:
        await self.poll()
        self.scheduler.every(self.TICKER_NAME, self.interval, self.poll)

    async def stop(self) -> None:
        await self.scheduler.stop_ticker(self.TICKER_NAME)
