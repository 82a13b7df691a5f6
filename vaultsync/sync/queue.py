"""Durable, retrying work queue for per-path sync operations.

Operations start in FIFO order, at most ``max_concurrent`` at a time and
never two for the same path at once. A pending operation for a path is
replaced when a newer one for the same path arrives, so rapid edits cost a
single transfer. Failed operations are retried with exponential backoff
and frozen as ``failed`` once the retry budget is spent; they stay in the
queue until :meth:`SyncQueue.retry_failed` or :meth:`SyncQueue.clear_failed`.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from ..events import EventBus, SyncEvent
from ..exceptions import VaultStorageError, is_retryable
from ..logging_utils import SyncLogger
from ..utils import (
    DEFAULT_MAX_CONCURRENT,
    DEFAULT_MAX_RETRIES,
    DEFAULT_MAX_RETRY_DELAY,
    DEFAULT_RETRY_DELAY,
)
from .scheduler import Scheduler
from .state import SYNC_QUEUE_KEY, StateStore

logger = logging.getLogger(__name__)

RETRY_TIMER_PREFIX = "queue-retry:"


class OperationKind(str, Enum):
    """Kinds of queued operations."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    RENAME = "rename"


class OperationStatus(str, Enum):
    """Lifecycle of a queued operation."""

    PENDING = "pending"
    ACTIVE = "active"
    FAILED = "failed"
    DONE = "done"


@dataclass
class QueuedOperation:
    """A unit of sync work for one path."""

    path: str
    kind: OperationKind
    content: Optional[str] = None
    """Optional payload; handlers may read the current local content instead"""

    previous_path: Optional[str] = None
    """Old path of a rename"""

    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    retry_count: int = 0
    next_retry_at: float = 0.0
    """Unix time before which the operation is not started"""

    status: OperationStatus = OperationStatus.PENDING
    created_at: float = field(default_factory=time.time)
    last_error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        """Convert operation to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "path": self.path,
            "kind": self.kind.value,
            "content": self.content,
            "previous_path": self.previous_path,
            "retry_count": self.retry_count,
            "next_retry_at": self.next_retry_at,
            "status": self.status.value,
            "created_at": self.created_at,
            "last_error": self.last_error,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "QueuedOperation":
        """Create QueuedOperation from dictionary."""
        return cls(
            id=data.get("id") or uuid.uuid4().hex,
            path=data["path"],
            kind=OperationKind(data["kind"]),
            content=data.get("content"),
            previous_path=data.get("previous_path"),
            retry_count=int(data.get("retry_count", 0)),
            next_retry_at=float(data.get("next_retry_at", 0.0)),
            status=OperationStatus(data.get("status", OperationStatus.PENDING.value)),
            created_at=float(data.get("created_at", time.time())),
            last_error=data.get("last_error"),
        )


OperationHandler = Callable[[QueuedOperation], Awaitable[None]]


class SyncQueue:
    """Bounded-concurrency queue of :class:`QueuedOperation`."""

    def __init__(
        self,
        handler: Optional[OperationHandler] = None,
        store: Optional[StateStore] = None,
        max_concurrent: int = DEFAULT_MAX_CONCURRENT,
        max_retries: int = DEFAULT_MAX_RETRIES,
        base_delay: float = DEFAULT_RETRY_DELAY,
        max_delay: float = DEFAULT_MAX_RETRY_DELAY,
        event_bus: Optional[EventBus] = None,
        scheduler: Optional[Scheduler] = None,
        log: Optional[SyncLogger] = None,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize the queue.

        Args:
            handler: Coroutine executing one operation (raise to signal failure)
            store: State store for persistence (None keeps the queue in memory)
            max_concurrent: Maximum number of active operations
            max_retries: Failures after which an operation is frozen as failed
            base_delay: First retry delay in seconds
            max_delay: Upper bound of the retry delay in seconds
            event_bus: Bus receiving queue and retry events
            scheduler: Scheduler for retry timers (shared with the orchestrator)
            log: Logger keeping recent errors
            clock: Source of Unix time, replaceable in tests
        """
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self.handler = handler
        self.store = store
        self.max_concurrent = max_concurrent
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.event_bus = event_bus
        self.scheduler = scheduler or Scheduler()
        self.log = log or SyncLogger(__name__)
        self.clock = clock

        self._operations: list[QueuedOperation] = []
        self._active: dict[str, "asyncio.Task[None]"] = {}
        self._processing = False
        self._completed = 0
        self._peak_active = 0
        self._idle = asyncio.Event()
        self._idle.set()

    def set_handler(self, handler: OperationHandler) -> None:
        self.handler = handler

    @property
    def is_processing(self) -> bool:
        return self._processing

    # =========================
    # Persistence
    # =========================

    def load(self) -> int:
        """Restore persisted operations.

        Operations that were active when the process stopped are pending
        again; they run once processing starts.

        Returns:
            Number of restored operations
        """
        if self.store is None:
            return 0
        restored: list[QueuedOperation] = []
        for data in self.store.get(SYNC_QUEUE_KEY) or []:
            try:
                op = QueuedOperation.from_dict(data)
            except (KeyError, ValueError, TypeError) as e:
                logger.warning(f"Dropping unreadable queued operation: {e}")
                continue
            if op.status == OperationStatus.DONE:
                continue
            if op.status == OperationStatus.ACTIVE:
                op.status = OperationStatus.PENDING
            restored.append(op)
        self._operations = restored
        self._update_idle()
        if restored:
            logger.info(f"Restored {len(restored)} queued operation(s)")
        return len(restored)

    def _persist(self) -> None:
        if self.store is None:
            return
        self.store.set(SYNC_QUEUE_KEY, [op.to_dict() for op in self._operations])
        try:
            self.store.save()
        except VaultStorageError as e:
            self.log.error("Failed to persist sync queue: %s", e, error=e)

    def _notify(self) -> None:
        if self.event_bus is not None:
            self.event_bus.emit(SyncEvent.QUEUE_UPDATED, self.get_stats())

    # =========================
    # Enqueue
    # =========================

    def enqueue(
        self,
        path: str,
        kind: OperationKind,
        content: Optional[str] = None,
        previous_path: Optional[str] = None,
    ) -> QueuedOperation:
        """Add an operation, replacing a pending one for the same path.

        Args:
            path: Vault-relative path (the new path for renames)
            kind: Operation kind
            content: Optional content payload
            previous_path: Old path for renames

        Returns:
            The queued (or updated) operation
        """
        kind = OperationKind(kind)
        self._drop_failed(path)
        existing = next(
            (
                op
                for op in self._operations
                if op.path == path and op.status == OperationStatus.PENDING
            ),
            None,
        )
        if existing is not None:
            # A later edit of a renamed file still has to remove the old path
            if existing.kind == OperationKind.RENAME and kind in (
                OperationKind.CREATE,
                OperationKind.UPDATE,
            ):
                kind = OperationKind.RENAME
                previous_path = previous_path or existing.previous_path
            existing.kind = kind
            existing.content = content
            existing.previous_path = previous_path
            existing.retry_count = 0
            existing.next_retry_at = 0.0
            existing.last_error = None
            self.scheduler.cancel(RETRY_TIMER_PREFIX + existing.id)
            op = existing
            logger.debug(f"Coalesced {kind.value} for {path}")
        else:
            op = QueuedOperation(
                path=path, kind=kind, content=content, previous_path=previous_path
            )
            self._operations.append(op)
            logger.debug(f"Queued {kind.value} for {path}")

        self._idle.clear()
        self._persist()
        self._notify()
        self._kick()
        return op

    # =========================
    # Processing
    # =========================

    def start_processing(self) -> None:
        """Start executing operations (must be called inside the event loop)."""
        if self.handler is None:
            raise ValueError("No operation handler set")
        self._processing = True
        self._kick()

    async def stop_processing(self, wait: bool = True) -> None:
        """Stop starting new operations.

        Args:
            wait: Wait for active operations to finish
        """
        self._processing = False
        for name in self.scheduler.pending(RETRY_TIMER_PREFIX):
            self.scheduler.cancel(name)
        if wait and self._active:
            await asyncio.gather(*self._active.values(), return_exceptions=True)

    async def process_once(self) -> int:
        """Start every eligible operation (up to the limit) and wait for them.

        Returns:
            Number of operations started
        """
        if self.handler is None:
            raise ValueError("No operation handler set")
        started = self._fill_slots()
        if started:
            await asyncio.gather(*started, return_exceptions=True)
        return len(started)

    async def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Wait until nothing is pending or active.

        Returns:
            True if the queue became idle, False on timeout
        """
        try:
            await asyncio.wait_for(self._idle.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True

    def _kick(self) -> None:
        if self._processing:
            self._fill_slots()

    async def _kick_async(self) -> None:
        self._kick()

    def _next_eligible(self, now: float) -> Optional[QueuedOperation]:
        busy_paths = {
            op.path for op in self._operations if op.status == OperationStatus.ACTIVE
        }
        for op in self._operations:
            if (
                op.status == OperationStatus.PENDING
                and op.next_retry_at <= now
                and op.path not in busy_paths
                and (op.previous_path is None or op.previous_path not in busy_paths)
            ):
                return op
        return None

    def _fill_slots(self) -> list["asyncio.Task[None]"]:
        started: list[asyncio.Task[None]] = []
        now = self.clock()
        while len(self._active) < self.max_concurrent:
            op = self._next_eligible(now)
            if op is None:
                break
            op.status = OperationStatus.ACTIVE
            task = asyncio.create_task(self._run(op), name=f"sync-op:{op.path}")
            self._active[op.id] = task
            self._peak_active = max(self._peak_active, len(self._active))
            started.append(task)
        if started:
            self._persist()
        self._update_idle()
        return started

    async def _run(self, op: QueuedOperation) -> None:
        assert self.handler is not None
        started = time.monotonic()
        try:
            await self.handler(op)
        except Exception as e:
            self._handle_failure(op, e)
        else:
            op.status = OperationStatus.DONE
            self._operations.remove(op)
            self._completed += 1
            logger.debug(
                "Completed %s for %s in %.2fs",
                op.kind.value,
                op.path,
                time.monotonic() - started,
            )
        finally:
            self._active.pop(op.id, None)
            self._persist()
            self._notify()
            self._kick()
            self._update_idle()

    def _retry_delay(self, retry_count: int) -> float:
        return min(self.base_delay * (2**retry_count), self.max_delay)

    def _handle_failure(self, op: QueuedOperation, error: Exception) -> None:
        op.retry_count += 1
        op.last_error = str(error)

        if self._is_superseded(op):
            # A newer operation for the path replaces this one
            self._operations.remove(op)
            logger.debug(
                f"Dropped failed {op.kind.value} for {op.path}, superseded: {error}"
            )
            return

        if not is_retryable(error) or op.retry_count >= self.max_retries:
            op.status = OperationStatus.FAILED
            self.log.error(
                "Operation %s for %s failed after %d attempt(s): %s",
                op.kind.value,
                op.path,
                op.retry_count,
                error,
                error=error,
                path=op.path,
            )
            return

        delay = self._retry_delay(op.retry_count)
        op.status = OperationStatus.PENDING
        op.next_retry_at = self.clock() + delay
        logger.warning(
            f"Operation {op.kind.value} for {op.path} failed "
            f"(attempt {op.retry_count}/{self.max_retries}), retrying in {delay:.1f}s: "
            f"{error}"
        )
        if self.event_bus is not None:
            self.event_bus.emit(
                SyncEvent.SYNC_RETRY_ATTEMPTED,
                {
                    "path": op.path,
                    "attempt": op.retry_count,
                    "max_attempts": self.max_retries,
                    "delay": delay,
                    "error": str(error),
                },
            )
        if self._processing:
            self.scheduler.call_later(RETRY_TIMER_PREFIX + op.id, delay, self._kick_async)

    def _is_superseded(self, op: QueuedOperation) -> bool:
        """Whether an operation queued after ``op`` targets the same path."""
        index = self._operations.index(op)
        return any(other.path == op.path for other in self._operations[index + 1 :])

    def _drop_failed(self, path: str) -> None:
        self._operations = [
            op
            for op in self._operations
            if not (op.path == path and op.status == OperationStatus.FAILED)
        ]

    def _update_idle(self) -> None:
        has_work = bool(self._active) or any(
            op.status == OperationStatus.PENDING for op in self._operations
        )
        if has_work:
            self._idle.clear()
        else:
            self._idle.set()

    # =========================
    # Management
    # =========================

    def retry_failed(self) -> int:
        """Re-queue every failed operation with a fresh retry budget.

        Returns:
            Number of re-queued operations
        """
        count = 0
        dropped = 0
        for op in list(self._operations):
            if op.status != OperationStatus.FAILED:
                continue
            if self._is_superseded(op):
                self._operations.remove(op)
                dropped += 1
                continue
            op.status = OperationStatus.PENDING
            op.retry_count = 0
            op.next_retry_at = 0.0
            op.last_error = None
            count += 1
        if dropped:
            logger.debug(f"Dropped {dropped} superseded failed operation(s)")
        if count or dropped:
            logger.info(f"Re-queued {count} failed operation(s)")
            self._persist()
            self._notify()
            self._kick()
            self._update_idle()
        return count

    def clear_failed(self) -> int:
        """Drop failed operations.

        Returns:
            Number of removed operations
        """
        before = len(self._operations)
        self._operations = [
            op for op in self._operations if op.status != OperationStatus.FAILED
        ]
        removed = before - len(self._operations)
        if removed:
            self._persist()
            self._notify()
        return removed

    def clear_queue(self) -> None:
        """Drop every operation that is not currently running."""
        self._operations = [
            op for op in self._operations if op.status == OperationStatus.ACTIVE
        ]
        for name in self.scheduler.pending(RETRY_TIMER_PREFIX):
            self.scheduler.cancel(name)
        self._persist()
        self._notify()
        self._update_idle()

    def get_queue(self) -> list[QueuedOperation]:
        return list(self._operations)

    def get_stats(self) -> dict[str, int]:
        """Counts per status plus completed and peak concurrency."""
        stats = {
            "total": len(self._operations),
            "pending": 0,
            "active": len(self._active),
            "failed": 0,
            "completed": self._completed,
            "peak_active": self._peak_active,
            "max_concurrent": self.max_concurrent,
        }
        for op in self._operations:
            if op.status == OperationStatus.PENDING:
                stats["pending"] += 1
            elif op.status == OperationStatus.FAILED:
                stats["failed"] += 1
        return stats
