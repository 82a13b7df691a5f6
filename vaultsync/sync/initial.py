"""One-time reconciliation of a local vault with its remote copy.

Runs on the first connection of a vault, before the steady-state sync
loop. The user picks one of three strategies; files are processed in
small concurrent batches with per-file retries. A completion record is
written only when the run finishes without errors and without being
cancelled, so an interrupted run is simply repeated on the next start.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional

from ..events import EventBus, SyncEvent
from ..exceptions import VaultNetworkError, VaultValidationError, is_retryable
from ..logging_utils import SyncLogger
from ..utils import (
    DEFAULT_BATCH_SIZE,
    DEFAULT_MAX_RETRIES,
    DEFAULT_RETRY_DELAY,
    format_iso_timestamp,
    path_depth,
    utc_now,
)
from .conflict import conflict_copy_path
from .modes import InitialSyncStrategy
from .scanner import RemoteFile
from .scheduler import CancellationToken
from .state import INITIAL_SYNC_STATES_KEY, StateStore

if TYPE_CHECKING:
    from ..api import VaultSyncClient
    from ..local import LocalVault
    from .engine import FileSyncEngine

logger = logging.getLogger(__name__)

DEFAULT_ANALYSIS_TIMEOUT = 30.0


@dataclass
class InitialSyncAnalysis:
    """Partition of all known paths into four disjoint sets."""

    local_only: list[str] = field(default_factory=list)
    remote_only: list[str] = field(default_factory=list)
    common: list[str] = field(default_factory=list)
    excluded: list[str] = field(default_factory=list)
    total_local: int = 0
    total_remote: int = 0
    remote_files: dict[str, RemoteFile] = field(default_factory=dict)
    """Remote listing entries of in-scope paths"""

    def file_counts(self) -> dict[str, int]:
        return {
            "local_only": len(self.local_only),
            "remote_only": len(self.remote_only),
            "both": len(self.common),
            "excluded": len(self.excluded),
        }


@dataclass
class InitialSyncRecord:
    """Proof that a vault finished its initial sync."""

    vault_id: str
    completed: bool
    completed_at: str
    """ISO-8601 completion time"""

    chosen_option: InitialSyncStrategy
    file_counts: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert record to dictionary for JSON serialization."""
        return {
            "vault_id": self.vault_id,
            "completed": self.completed,
            "completed_at": self.completed_at,
            "chosen_option": self.chosen_option.value,
            "file_counts": dict(self.file_counts),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "InitialSyncRecord":
        """Create InitialSyncRecord from dictionary."""
        return cls(
            vault_id=data["vault_id"],
            completed=bool(data.get("completed", False)),
            completed_at=data.get("completed_at", ""),
            chosen_option=InitialSyncStrategy(data["chosen_option"]),
            file_counts=dict(data.get("file_counts") or {}),
        )


@dataclass
class InitialSyncResult:
    """Counts of one initial sync run (partial if cancelled)."""

    strategy: InitialSyncStrategy
    success: bool = False
    cancelled: bool = False
    uploaded: int = 0
    downloaded: int = 0
    deleted: int = 0
    conflicts_created: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)
    duration: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        """Convert result to dictionary for JSON output."""
        return {
            "strategy": self.strategy.value,
            "success": self.success,
            "cancelled": self.cancelled,
            "uploaded": self.uploaded,
            "downloaded": self.downloaded,
            "deleted": self.deleted,
            "conflicts_created": self.conflicts_created,
            "skipped": self.skipped,
            "errors": list(self.errors),
            "duration": round(self.duration, 3),
        }


class InitialSyncCoordinator:
    """Executes the chosen initial sync strategy for a vault."""

    def __init__(
        self,
        engine: FileSyncEngine,
        client: VaultSyncClient,
        local: LocalVault,
        store: StateStore,
        event_bus: Optional[EventBus] = None,
        log: Optional[SyncLogger] = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
        max_attempts: int = DEFAULT_MAX_RETRIES,
        retry_delay: float = DEFAULT_RETRY_DELAY,
        analysis_timeout: float = DEFAULT_ANALYSIS_TIMEOUT,
        ignore_path: Optional[Callable[[str], None]] = None,
    ):
        """Initialize the coordinator.

        Args:
            engine: File sync engine used for every transfer
            client: Remote API client
            local: Local vault store
            store: Persistent state store of the vault
            event_bus: Bus receiving progress events
            log: Logger keeping recent errors
            batch_size: Files processed concurrently
            max_attempts: Attempts per file
            retry_delay: First retry delay in seconds (doubled per attempt)
            analysis_timeout: Seconds allowed for the remote listing
            ignore_path: Called before a local file is written or deleted
        """
        self.engine = engine
        self.client = client
        self.local = local
        self.store = store
        self.event_bus = event_bus
        self.log = log or SyncLogger(__name__)
        self.batch_size = max(1, batch_size)
        self.max_attempts = max(1, max_attempts)
        self.retry_delay = retry_delay
        self.analysis_timeout = analysis_timeout
        self.ignore_path = ignore_path
        self._token: Optional[CancellationToken] = None
        self._completed = 0
        self._total = 0

    @property
    def is_running(self) -> bool:
        return self._token is not None

    def _emit(self, event: SyncEvent, payload: dict[str, Any]) -> None:
        if self.event_bus is not None:
            self.event_bus.emit(event, payload)

    # =========================
    # Completion records
    # =========================

    def get_record(self, vault_id: str) -> Optional[InitialSyncRecord]:
        states = self.store.get(INITIAL_SYNC_STATES_KEY) or {}
        data = states.get(vault_id)
        if not data:
            return None
        try:
            return InitialSyncRecord.from_dict(data)
        except (KeyError, ValueError) as e:
            logger.warning(f"Ignoring unreadable initial sync record: {e}")
            return None

    def needs_initial_sync(self, vault_id: str) -> bool:
        """Whether the vault has never completed an initial sync."""
        record = self.get_record(vault_id)
        return record is None or not record.completed

    def reset(self, vault_id: str) -> bool:
        """Remove the completion record so the next start runs initial sync.

        Returns:
            True if a record existed
        """
        states = dict(self.store.get(INITIAL_SYNC_STATES_KEY) or {})
        existed = states.pop(vault_id, None) is not None
        self.store.set(INITIAL_SYNC_STATES_KEY, states)
        self.store.save()
        return existed

    def _write_record(
        self, vault_id: str, strategy: InitialSyncStrategy, analysis: InitialSyncAnalysis
    ) -> InitialSyncRecord:
        record = InitialSyncRecord(
            vault_id=vault_id,
            completed=True,
            completed_at=format_iso_timestamp(utc_now()),
            chosen_option=strategy,
            file_counts=analysis.file_counts(),
        )
        states = dict(self.store.get(INITIAL_SYNC_STATES_KEY) or {})
        states[vault_id] = record.to_dict()
        self.store.set(INITIAL_SYNC_STATES_KEY, states)
        self.store.save()
        return record

    # =========================
    # Analysis
    # =========================

    async def analyze_files(self, vault_id: str) -> InitialSyncAnalysis:
        """Scan local files and list remote files concurrently.

        Raises:
            VaultNetworkError: If the remote listing exceeds the timeout
        """
        self._emit(
            SyncEvent.SYNC_PROGRESS,
            {"phase": "analyzing", "completed": 0, "total": 0, "percentage": 0},
        )
        try:
            local_files, remote_entries = await asyncio.gather(
                self.local.list_files(),
                asyncio.wait_for(
                    self.client.list_files(vault_id), timeout=self.analysis_timeout
                ),
            )
        except asyncio.TimeoutError as e:
            raise VaultNetworkError(
                f"File analysis timed out after {self.analysis_timeout:.0f}s",
                user_message="The server took too long to list the vault files.",
            ) from e

        remote_files = [RemoteFile.from_dict(entry) for entry in remote_entries]
        scope = self.engine.scope

        def in_scope(path: str) -> bool:
            return scope is None or scope.should_sync_path(path)

        local_paths = {f.relative_path for f in local_files}
        remote_by_path = {f.path: f for f in remote_files}
        excluded = sorted(
            p for p in local_paths | set(remote_by_path) if not in_scope(p)
        )
        local_in = {p for p in local_paths if in_scope(p)}
        remote_in = {p for p in remote_by_path if in_scope(p)}

        analysis = InitialSyncAnalysis(
            local_only=sorted(local_in - remote_in),
            remote_only=sorted(remote_in - local_in, key=lambda p: (path_depth(p), p)),
            common=sorted(local_in & remote_in),
            excluded=excluded,
            total_local=len(local_paths),
            total_remote=len(remote_by_path),
            remote_files={p: remote_by_path[p] for p in remote_in},
        )
        logger.info(
            f"Initial sync analysis: {len(analysis.local_only)} local only, "
            f"{len(analysis.remote_only)} remote only, {len(analysis.common)} in both, "
            f"{len(analysis.excluded)} excluded"
        )
        return analysis

    # =========================
    # Execution
    # =========================

    def cancel(self, reason: str = "cancelled by user") -> bool:
        """Request cancellation of the running strategy.

        In-flight transfers finish; no new batch or retry starts.

        Returns:
            True if a run was in progress
        """
        if self._token is None:
            return False
        self._token.cancel(reason)
        return True

    async def execute(
        self,
        vault_id: str,
        strategy: InitialSyncStrategy,
        analysis: Optional[InitialSyncAnalysis] = None,
        token: Optional[CancellationToken] = None,
    ) -> InitialSyncResult:
        """Run a strategy.

        Per-file failures are collected in the result. A failed analysis is
        raised.

        Args:
            vault_id: Vault identifier
            strategy: Strategy chosen by the user
            analysis: Result of :meth:`analyze_files` (computed when None)
            token: Cancellation token (a fresh one when None)

        Returns:
            InitialSyncResult with the counts of this run

        Raises:
            VaultValidationError: If a run is already in progress
        """
        if self._token is not None:
            raise VaultValidationError("Initial sync already in progress")
        strategy = InitialSyncStrategy(strategy)
        token = token or CancellationToken()
        self._token = token
        started = time.monotonic()
        result = InitialSyncResult(strategy=strategy)
        self._emit(
            SyncEvent.SYNC_STARTED,
            {"vault_id": vault_id, "initial": True, "strategy": strategy.value},
        )

        try:
            if analysis is None:
                analysis = await self.analyze_files(vault_id)
            self.engine.remember_remote_files(list(analysis.remote_files.values()))

            if strategy == InitialSyncStrategy.START_FRESH:
                await self._start_fresh(analysis, result, token)
            elif strategy == InitialSyncStrategy.UPLOAD_LOCAL:
                await self._upload_local(analysis, result, token)
            else:
                await self._smart_merge(analysis, result, token)
        except Exception as e:
            result.errors.append(str(e))
            result.duration = time.monotonic() - started
            self.log.error("Initial sync failed: %s", e, error=e, vault_id=vault_id)
            self._emit(
                SyncEvent.SYNC_ERROR,
                {"vault_id": vault_id, "initial": True, "error": str(e)},
            )
            raise
        finally:
            self._token = None

        result.duration = time.monotonic() - started
        result.cancelled = token.cancelled
        result.success = not result.errors and not result.cancelled

        if result.success:
            self._write_record(vault_id, strategy, analysis)
            logger.info(
                f"Initial sync ({strategy.value}) completed in {result.duration:.1f}s: "
                f"{result.uploaded} up, {result.downloaded} down, "
                f"{result.deleted} deleted, {result.conflicts_created} conflict copies"
            )
            self._emit(
                SyncEvent.SYNC_COMPLETED,
                {"vault_id": vault_id, "initial": True, **result.to_dict()},
            )
        else:
            if result.cancelled:
                logger.warning(f"Initial sync cancelled: {token.reason}")
            else:
                logger.warning(
                    f"Initial sync finished with {len(result.errors)} error(s); "
                    "it will run again on the next start"
                )
            self._emit(
                SyncEvent.SYNC_ERROR,
                {"vault_id": vault_id, "initial": True, **result.to_dict()},
            )
        return result

    async def _start_fresh(
        self,
        analysis: InitialSyncAnalysis,
        result: InitialSyncResult,
        token: CancellationToken,
    ) -> None:
        to_delete = analysis.local_only + analysis.common
        to_download = sorted(
            analysis.remote_only + analysis.common, key=lambda p: (path_depth(p), p)
        )
        self._reset_progress(len(to_delete) + len(to_download))

        async def delete_local(path: str) -> None:
            if self.ignore_path is not None:
                self.ignore_path(path)
            if await self.local.delete(path):
                result.deleted += 1

        await self._run_batches(to_delete, "deleting", delete_local, result, token)
        await self._run_batches(
            to_download, "downloading", self._downloader(result, token), result, token
        )

    async def _upload_local(
        self,
        analysis: InitialSyncAnalysis,
        result: InitialSyncResult,
        token: CancellationToken,
    ) -> None:
        self._reset_progress(len(analysis.local_only) + len(analysis.common))
        await self._run_batches(
            analysis.local_only,
            "uploading",
            self._uploader(result, token, force_create=True),
            result,
            token,
        )
        await self._run_batches(
            analysis.common, "uploading", self._uploader(result, token), result, token
        )

    async def _smart_merge(
        self,
        analysis: InitialSyncAnalysis,
        result: InitialSyncResult,
        token: CancellationToken,
    ) -> None:
        self._reset_progress(
            len(analysis.local_only) + len(analysis.remote_only) + len(analysis.common)
        )

        async def merge(path: str) -> None:
            local_hash = self.engine.compute_hash(await self.local.read(path))
            remote = analysis.remote_files[path]
            if local_hash == remote.hash:
                self.engine.set_stored_hash(path, local_hash, persist=False)
                result.skipped += 1
                return
            copy_path = conflict_copy_path(path, utc_now())
            await self.local.rename(path, copy_path)
            result.conflicts_created += 1
            logger.info(f"Kept local version of {path} as {copy_path}")
            if self.ignore_path is not None:
                self.ignore_path(path)
            await self._with_retry(
                path, lambda: self.engine.download_file(path, defer_persist=True), token
            )
            result.downloaded += 1

        await self._run_batches(
            analysis.local_only,
            "uploading",
            self._uploader(result, token, force_create=True),
            result,
            token,
        )
        await self._run_batches(
            analysis.remote_only,
            "downloading",
            self._downloader(result, token),
            result,
            token,
        )
        await self._run_batches(analysis.common, "merging", merge, result, token)

    def _uploader(
        self,
        result: InitialSyncResult,
        token: CancellationToken,
        force_create: bool = False,
    ) -> Callable[[str], Awaitable[None]]:
        async def upload(path: str) -> None:
            outcome = await self._with_retry(
                path,
                lambda: self.engine.upload_file(
                    path, force_create=force_create, defer_persist=True
                ),
                token,
            )
            if outcome.skipped:
                result.skipped += 1
            else:
                result.uploaded += 1

        return upload

    def _downloader(
        self, result: InitialSyncResult, token: CancellationToken
    ) -> Callable[[str], Awaitable[None]]:
        async def download(path: str) -> None:
            if self.ignore_path is not None:
                self.ignore_path(path)
            await self._with_retry(
                path,
                lambda: self.engine.download_file(path, defer_persist=True),
                token,
            )
            result.downloaded += 1

        return download

    def _reset_progress(self, total: int) -> None:
        self._completed = 0
        self._total = total

    async def _with_retry(
        self,
        path: str,
        operation: Callable[[], Awaitable[Any]],
        token: CancellationToken,
    ) -> Any:
        """Run ``operation`` with exponential backoff on retryable errors."""
        attempt = 1
        while True:
            try:
                return await operation()
            except Exception as e:
                if not is_retryable(e) or attempt >= self.max_attempts:
                    raise
                delay = self.retry_delay * (2 ** (attempt - 1))
                logger.warning(
                    f"{path} failed (attempt {attempt}/{self.max_attempts}), "
                    f"retrying in {delay:.1f}s: {e}"
                )
                self._emit(
                    SyncEvent.SYNC_RETRY_ATTEMPTED,
                    {
                        "path": path,
                        "attempt": attempt,
                        "max_attempts": self.max_attempts,
                        "delay": delay,
                        "error": str(e),
                    },
                )
                if await token.sleep(delay):
                    raise
                attempt += 1

    async def _run_batches(
        self,
        paths: list[str],
        phase: str,
        worker: Callable[[str], Awaitable[None]],
        result: InitialSyncResult,
        token: CancellationToken,
    ) -> None:
        """Process ``paths`` in concurrent batches, persisting hashes per batch."""

        async def run_one(path: str) -> None:
            try:
                await worker(path)
            except Exception as e:
                self.log.error("%s %s failed: %s", phase, path, e, error=e, path=path)
                result.errors.append(f"{path}: {e}")
            self._completed += 1
            self._emit(
                SyncEvent.SYNC_PROGRESS,
                {
                    "phase": phase,
                    "path": path,
                    "completed": self._completed,
                    "total": self._total,
                    "percentage": round(self._completed * 100 / self._total)
                    if self._total
                    else 100,
                },
            )

        for start in range(0, len(paths), self.batch_size):
            if token.cancelled:
                logger.info(f"Initial sync cancelled before {phase} batch")
                return
            batch = paths[start : start + self.batch_size]
            await asyncio.gather(*(run_one(path) for path in batch))
            self.engine.save_sync_state()
