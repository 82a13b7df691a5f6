"""CLI progress display for sync operations.

This module provides a Rich-based progress bar driven by the events the
sync components emit on the :class:`~vaultsync.events.EventBus`.
"""

from typing import Any, Callable, Optional

from rich.console import Console
from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    SpinnerColumn,
    TaskID,
    TextColumn,
    TimeElapsedColumn,
)

from .events import EventBus, SyncEvent

_PHASE_LABELS = {
    "analyzing": "Analyzing",
    "syncing": "Syncing",
    "uploading": "Uploading",
    "downloading": "Downloading",
    "deleting": "Deleting",
    "merging": "Merging",
}


class SyncProgressDisplay:
    """Rich progress bar for sync passes.

    Subscribes to ``sync:progress`` and ``sync:retry-attempted`` while the
    context is active and unsubscribes on exit.
    """

    def __init__(self, event_bus: EventBus, console: Optional[Console] = None):
        """Initialize the progress display.

        Args:
            event_bus: Bus the sync components emit on
            console: Console to render to
        """
        self.event_bus = event_bus
        self.console = console
        self._progress: Optional[Progress] = None
        self._task: Optional[TaskID] = None
        self._unsubscribe: list[Callable[[], None]] = []
        self.retries = 0

    def _handle_progress(self, info: dict[str, Any]) -> None:
        """Update the bar from a ``sync:progress`` payload."""
        if self._progress is None or self._task is None:
            return
        phase = info.get("phase", "")
        label = _PHASE_LABELS.get(phase, phase.capitalize() or "Syncing")
        total = info.get("total") or None
        self._progress.update(
            self._task,
            description=label,
            total=total,
            completed=info.get("completed", 0),
            current=info.get("path", ""),
        )

    def _handle_retry(self, info: dict[str, Any]) -> None:
        self.retries += 1
        if self._progress is not None:
            self._progress.console.print(
                f"[yellow]Retrying {info.get('path', '')} "
                f"(attempt {info.get('attempt')}) in {info.get('delay', 0):.1f}s[/yellow]"
            )

    def __enter__(self) -> "SyncProgressDisplay":
        """Enter context manager - start progress display."""
        self._progress = Progress(
            SpinnerColumn(),
            TextColumn("[bold blue]{task.description}"),
            BarColumn(),
            MofNCompleteColumn(),
            TextColumn("[cyan]{task.fields[current]}"),
            TimeElapsedColumn(),
            console=self.console,
            refresh_per_second=4,
        )
        self._progress.__enter__()
        self._task = self._progress.add_task("Preparing...", total=None, current="")
        self._unsubscribe = [
            self.event_bus.on(SyncEvent.SYNC_PROGRESS, self._handle_progress),
            self.event_bus.on(SyncEvent.SYNC_RETRY_ATTEMPTED, self._handle_retry),
        ]
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        """Exit context manager - stop progress display."""
        for unsubscribe in self._unsubscribe:
            unsubscribe()
        self._unsubscribe = []
        if self._progress is not None:
            if self._task is not None:
                self._progress.update(self._task, description="Done", current="")
            self._progress.__exit__(exc_type, exc_val, exc_tb)
            self._progress = None
            self._task = None
