"""Top-level coordination of a vault's sync.

The orchestrator builds every sync component for one vault, runs the
initial sync when needed, and then keeps the vault in sync: debounced
local changes go through the operation queue, periodic drift checks catch
remote changes, and full passes run on request.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional

from ..events import EventBus, SyncEvent
from ..exceptions import (
    VaultAuthenticationError,
    VaultStorageError,
    VaultSyncError,
    VaultValidationError,
)
from ..logging_utils import SyncLogger
from ..utils import format_iso_timestamp, parse_iso_timestamp, path_depth, utc_now
from .comparator import SyncAction, SyncDecision, ThreeWayComparator
from .conflict import ConflictResolver
from .engine import FileSyncEngine
from .initial import InitialSyncCoordinator, InitialSyncResult
from .modes import SyncMode
from .operations import TransferOperations
from .queue import OperationKind, SyncQueue
from .scanner import RemoteFile
from .scheduler import Scheduler
from .scope import SelectiveScope
from .settings import SyncSettings
from .state import StateStore, last_sync_timestamp_key
from .watcher import ChangeAction, ChangeDebouncer, FileChangeEvent

if TYPE_CHECKING:
    from ..api import VaultSyncClient
    from ..local import LocalVault

logger = logging.getLogger(__name__)

DRIFT_TICKER = "drift-check"
QUEUE_TICKER = "queue"

_QUEUE_KINDS = {
    ChangeAction.CREATE: OperationKind.CREATE,
    ChangeAction.MODIFY: OperationKind.UPDATE,
    ChangeAction.DELETE: OperationKind.DELETE,
    ChangeAction.RENAME: OperationKind.RENAME,
}


class OrchestratorState(str, Enum):
    """Lifecycle of the orchestrator."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"


@dataclass
class SyncResult:
    """Report of one sync pass."""

    success: bool = True
    files_processed: int = 0
    files_uploaded: int = 0
    files_downloaded: int = 0
    files_deleted: int = 0
    conflicts: int = 0
    errors: list[str] = field(default_factory=list)
    duration: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        """Convert result to dictionary for JSON output."""
        return {
            "success": self.success,
            "files_processed": self.files_processed,
            "files_uploaded": self.files_uploaded,
            "files_downloaded": self.files_downloaded,
            "files_deleted": self.files_deleted,
            "conflicts": self.conflicts,
            "errors": list(self.errors),
            "duration": round(self.duration, 3),
        }


class SyncOrchestrator:
    """Runs the sync of one vault.

    Call :meth:`initialize` once, then either :meth:`start` for continuous
    sync or one of the pass methods (:meth:`bidirectional_sync`,
    :meth:`sync_all`, ...) for a single run.
    """

    def __init__(
        self,
        client: VaultSyncClient,
        local: LocalVault,
        settings: SyncSettings,
        store: Optional[StateStore] = None,
        event_bus: Optional[EventBus] = None,
        log: Optional[SyncLogger] = None,
        scheduler: Optional[Scheduler] = None,
        state_dir: Optional[Path] = None,
        clock: Callable[[], datetime] = utc_now,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        """Initialize the orchestrator.

        Args:
            client: Remote API client
            local: Local vault store
            settings: Sync settings of the vault
            store: State store (created from ``state_dir`` when None)
            event_bus: Bus receiving every sync event
            log: Logger shared by all components
            scheduler: Scheduler owning every timer
            state_dir: Directory of state files
            clock: Source of the current UTC time
            monotonic: Clock used for drift check spacing
        """
        self.client = client
        self.local = local
        self.settings = settings
        self.event_bus = event_bus or EventBus()
        self.log = log or SyncLogger("vaultsync")
        self.scheduler = scheduler or Scheduler()
        self.clock = clock
        self.monotonic = monotonic
        self._store = store
        self._state_dir = state_dir

        self.vault_id: Optional[str] = None
        self.store: Optional[StateStore] = None
        self.scope: Optional[SelectiveScope] = None
        self.engine: Optional[FileSyncEngine] = None
        self.resolver: Optional[ConflictResolver] = None
        self.queue: Optional[SyncQueue] = None
        self.initial_sync: Optional[InitialSyncCoordinator] = None
        self.debouncer: Optional[ChangeDebouncer] = None
        self.comparator = ThreeWayComparator()

        self._state = OrchestratorState.STOPPED
        self._syncing = False
        self._drift_running = False
        self._last_drift_check: Optional[float] = None

    @property
    def state(self) -> OrchestratorState:
        return self._state

    @property
    def is_syncing(self) -> bool:
        return self._syncing

    def _set_state(self, state: OrchestratorState) -> None:
        if state != self._state:
            logger.debug(f"Orchestrator {self._state.value} -> {state.value}")
            self._state = state

    def _emit(self, event: SyncEvent, payload: Any) -> None:
        self.event_bus.emit(event, payload)

    # =========================
    # Lifecycle
    # =========================

    def initialize(self, vault_id: Optional[str] = None) -> None:
        """Build the sync components for a vault and load its state.

        Args:
            vault_id: Vault identifier (defaults to the settings' vault id)

        Raises:
            VaultValidationError: If no vault id is known or sync is running
        """
        if self._state != OrchestratorState.STOPPED:
            raise VaultValidationError("Cannot re-initialize a running orchestrator")
        vault_id = vault_id or self.settings.vault_id
        if not vault_id:
            raise VaultValidationError("No vault id configured")
        settings = self.settings

        self.vault_id = vault_id
        self.store = self._store or StateStore(vault_id, self._state_dir)
        self.scope = SelectiveScope(
            settings.included_folders, settings.excluded_folders, self.event_bus
        )
        transfer = TransferOperations(self.client, chunk_size=settings.chunk_size)
        self.engine = FileSyncEngine(
            vault_id,
            self.client,
            self.local,
            self.store,
            scope=self.scope,
            transfer=transfer,
            event_bus=self.event_bus,
            log=self.log.child("engine"),
            chunk_threshold=settings.chunk_threshold,
        )
        self.debouncer = ChangeDebouncer(
            self.handle_file_change,
            scheduler=self.scheduler,
            delay=settings.debounce_delay,
            scope=self.scope,
        )
        self.resolver = ConflictResolver(
            vault_id,
            self.engine,
            self.client,
            self.local,
            self.store,
            event_bus=self.event_bus,
            log=self.log.child("conflict"),
            ignore_path=self.debouncer.ignore_path,
            clock=self.clock,
        )
        self.queue = SyncQueue(
            self.engine.process_queued_operation,
            store=self.store,
            max_concurrent=settings.max_concurrent_uploads,
            max_retries=settings.max_retries,
            base_delay=settings.retry_base_delay,
            max_delay=settings.retry_max_delay,
            event_bus=self.event_bus,
            scheduler=self.scheduler,
            log=self.log.child("queue"),
        )
        self.initial_sync = InitialSyncCoordinator(
            self.engine,
            self.client,
            self.local,
            self.store,
            event_bus=self.event_bus,
            log=self.log.child("initial"),
            batch_size=settings.initial_sync_batch_size,
            max_attempts=settings.max_retries,
            retry_delay=settings.retry_base_delay,
            ignore_path=self.debouncer.ignore_path,
        )

        self.engine.load_sync_state()
        self.resolver.load_conflicts()
        logger.info(f"Initialized sync for vault {vault_id}")

    def _require_initialized(self) -> None:
        if self.engine is None:
            raise VaultValidationError("Orchestrator is not initialized")

    async def start(self) -> None:
        """Start continuous sync.

        Replays the persisted queue, runs the initial sync if the vault has
        none recorded and a strategy is configured, then starts the queue
        and drift check tickers.

        Raises:
            VaultValidationError: If not stopped or not initialized
            VaultSyncError: If startup fails (the orchestrator is stopped)
        """
        if self._state != OrchestratorState.STOPPED:
            raise VaultValidationError(f"Cannot start while {self._state.value}")
        self._require_initialized()
        assert self.queue is not None and self.initial_sync is not None
        assert self.vault_id is not None
        self._set_state(OrchestratorState.STARTING)

        try:
            restored = self.queue.load()
            if restored:
                logger.info(f"Replaying {restored} queued operation(s)")

            if self.initial_sync.needs_initial_sync(self.vault_id):
                strategy = self.settings.initial_sync_strategy
                if strategy is not None:
                    result = await self.initial_sync.execute(self.vault_id, strategy)
                    if not result.success:
                        logger.warning(
                            "Initial sync did not complete, it runs again on next start"
                        )
                else:
                    logger.warning(
                        "Initial sync has not been run for this vault; "
                        "choose a strategy with 'vaultsync initial'"
                    )

            self.queue.start_processing()
            self.scheduler.every(
                QUEUE_TICKER, self.settings.sync_interval, self._process_queue
            )
            if self._drift_checks_enabled():
                self.scheduler.every(
                    DRIFT_TICKER, self.settings.drift_check_interval, self._drift_tick
                )
        except Exception as e:
            self.log.error("Failed to start sync: %s", e, error=e, vault_id=self.vault_id)
            await self.queue.stop_processing(wait=False)
            await self.scheduler.stop()
            self._set_state(OrchestratorState.STOPPED)
            self._emit(SyncEvent.SYNC_ERROR, {"phase": "startup", "error": str(e)})
            raise

        self._set_state(OrchestratorState.RUNNING)
        logger.info(f"Sync running for vault {self.vault_id}")

    async def stop(self) -> None:
        """Stop continuous sync and wait for every timer and operation."""
        if self._state == OrchestratorState.STOPPED:
            # Single passes may leave ignore-window timers behind
            await self.scheduler.stop()
            return
        assert self.queue is not None and self.engine is not None
        if self.debouncer is not None:
            self.debouncer.cancel_all()
        if self.initial_sync is not None:
            self.initial_sync.cancel("sync stopped")
        await self.queue.stop_processing(wait=True)
        await self.scheduler.stop()
        try:
            self.engine.save_sync_state()
        except VaultStorageError as e:
            self.log.error("Failed to save sync state on stop: %s", e, error=e)
        self._set_state(OrchestratorState.STOPPED)
        logger.info(f"Sync stopped for vault {self.vault_id}")

    def _drift_checks_enabled(self) -> bool:
        return self.settings.sync_mode.is_automatic and self.settings.auto_sync

    async def _process_queue(self) -> None:
        assert self.queue is not None
        await self.queue.process_once()

    async def _drift_tick(self) -> None:
        await self.check_for_drift()

    async def set_mode(self, mode: SyncMode) -> None:
        """Switch the sync mode and adjust the drift check ticker."""
        mode = SyncMode(mode)
        old = self.settings.sync_mode
        if mode == old:
            return
        self.settings.sync_mode = mode
        logger.info(f"Sync mode changed from {old.value} to {mode.value}")
        self._emit(SyncEvent.SYNC_MODE_CHANGED, {"old": old.value, "new": mode.value})
        if self._state != OrchestratorState.RUNNING:
            return
        if self._drift_checks_enabled():
            if not self.scheduler.is_running(DRIFT_TICKER):
                self.scheduler.every(
                    DRIFT_TICKER, self.settings.drift_check_interval, self._drift_tick
                )
        else:
            await self.scheduler.stop_ticker(DRIFT_TICKER)

    # =========================
    # Incremental path
    # =========================

    def notify_change(self, event: FileChangeEvent) -> None:
        """Entry point for raw local change events."""
        self._require_initialized()
        assert self.debouncer is not None
        self.debouncer.notify(event)

    async def handle_file_change(self, event: FileChangeEvent) -> None:
        """Queue a debounced local change.

        Changes are not queued in pull-all and manual modes; the next full
        pass picks them up.
        """
        self._require_initialized()
        assert self.queue is not None
        if self.settings.sync_mode in (SyncMode.PULL_ALL, SyncMode.MANUAL):
            logger.debug(
                f"Not queueing {event.action.value} of {event.path} "
                f"in {self.settings.sync_mode.value} mode"
            )
            return
        self.queue.enqueue(
            event.path,
            _QUEUE_KINDS[ChangeAction(event.action)],
            previous_path=event.previous_path,
        )

    # =========================
    # Bulk passes
    # =========================

    async def _run_pass(
        self, name: str, body: Callable[[SyncResult], Awaitable[None]]
    ) -> SyncResult:
        self._require_initialized()
        if self._syncing:
            raise VaultValidationError("Sync already in progress")
        self._syncing = True
        started = time.monotonic()
        result = SyncResult()
        self._emit(SyncEvent.SYNC_STARTED, {"type": name, "vault_id": self.vault_id})
        try:
            await body(result)
            assert self.engine is not None
            self.engine.save_sync_state()
        except Exception as e:
            result.success = False
            result.errors.append(str(e))
            result.duration = time.monotonic() - started
            self.log.error("%s failed: %s", name, e, error=e, vault_id=self.vault_id)
            self._emit(SyncEvent.SYNC_ERROR, {"type": name, "error": str(e)})
            return result
        finally:
            self._syncing = False

        result.duration = time.monotonic() - started
        result.success = not result.errors
        logger.info(
            f"{name}: {result.files_processed} processed, {result.files_uploaded} up, "
            f"{result.files_downloaded} down, {result.conflicts} conflicts, "
            f"{len(result.errors)} errors in {result.duration:.1f}s"
        )
        self._emit(SyncEvent.SYNC_COMPLETED, {"type": name, **result.to_dict()})
        return result

    def _record_error(self, result: SyncResult, path: str, error: Exception) -> None:
        self.log.error("Sync of %s failed: %s", path, error, error=error, path=path)
        result.errors.append(f"{path}: {error}")

    def _progress(self, phase: str, done: int, total: int, path: str) -> None:
        self._emit(
            SyncEvent.SYNC_PROGRESS,
            {
                "phase": phase,
                "path": path,
                "completed": done,
                "total": total,
                "percentage": round(done * 100 / total) if total else 100,
            },
        )

    async def _remote_files(self) -> dict[str, RemoteFile]:
        """In-scope remote listing by path, in listing order."""
        assert self.engine is not None and self.scope is not None
        assert self.vault_id is not None
        entries = await self.client.list_files(self.vault_id)
        files = [RemoteFile.from_dict(entry) for entry in entries]
        self.engine.remember_remote_files(files, complete=True)
        return {f.path: f for f in files if self.scope.should_sync_path(f.path)}

    async def _local_paths(self) -> list[str]:
        assert self.scope is not None
        return [
            f.relative_path
            for f in await self.local.list_files()
            if self.scope.should_sync_path(f.relative_path)
        ]

    async def _download(self, path: str) -> None:
        assert self.engine is not None and self.debouncer is not None
        self.debouncer.ignore_path(path)
        await self.engine.download_file(path, defer_persist=True)

    def _touch_last_sync(self, when: datetime) -> None:
        assert self.store is not None and self.vault_id is not None
        self.store.set(last_sync_timestamp_key(self.vault_id), format_iso_timestamp(when))
        self.store.save()

    async def sync_all(self) -> SyncResult:
        """Upload every in-scope local file whose content changed."""

        async def body(result: SyncResult) -> None:
            assert self.engine is not None
            paths = await self._local_paths()
            for index, path in enumerate(paths, 1):
                result.files_processed += 1
                try:
                    outcome = await self.engine.upload_file(path, defer_persist=True)
                    if not outcome.skipped:
                        result.files_uploaded += 1
                except VaultAuthenticationError:
                    raise
                except VaultSyncError as e:
                    self._record_error(result, path, e)
                self._progress("uploading", index, len(paths), path)

        return await self._run_pass("sync_all", body)

    async def bidirectional_sync(self) -> SyncResult:
        """Three-way sync of every in-scope file.

        Local files are compared with their stored and remote hashes.
        Remote-only files are then downloaded shallowest first, except
        paths deleted locally on purpose.
        """

        async def body(result: SyncResult) -> None:
            assert self.engine is not None
            started = self.clock()
            remote = await self._remote_files()
            local_paths = await self._local_paths()
            local_set = set(local_paths)
            remote_only = sorted(
                (p for p in remote if p not in local_set), key=path_depth
            )
            total = len(local_paths) + len(remote_only)
            done = 0

            for path in local_paths:
                result.files_processed += 1
                try:
                    content = await self.local.read(path)
                    remote_file = remote.get(path)
                    decision = self.comparator.compare(
                        path,
                        self.engine.compute_hash(content),
                        remote_file.hash if remote_file else None,
                        self.engine.get_stored_hash(path),
                    )
                    await self._apply_decision(decision, result, remote_file)
                except VaultAuthenticationError:
                    raise
                except VaultSyncError as e:
                    self._record_error(result, path, e)
                done += 1
                self._progress("syncing", done, total, path)

            for path in remote_only:
                done += 1
                if self.engine.is_locally_deleted(path):
                    logger.debug(f"Not downloading {path}: deleted locally")
                    continue
                result.files_processed += 1
                try:
                    await self._download(path)
                    result.files_downloaded += 1
                except VaultAuthenticationError:
                    raise
                except VaultSyncError as e:
                    self._record_error(result, path, e)
                self._progress("downloading", done, total, path)

            self._touch_last_sync(started)

        return await self._run_pass("bidirectional_sync", body)

    async def _apply_decision(
        self,
        decision: SyncDecision,
        result: SyncResult,
        remote_file: Optional[RemoteFile],
    ) -> None:
        assert self.engine is not None and self.resolver is not None
        path = decision.relative_path
        if decision.action == SyncAction.UPLOAD:
            outcome = await self.engine.upload_file(path, defer_persist=True)
            if not outcome.skipped:
                result.files_uploaded += 1
        elif decision.action == SyncAction.DOWNLOAD:
            await self._download(path)
            result.files_downloaded += 1
        elif decision.action == SyncAction.RECORD:
            assert decision.local_hash is not None
            self.engine.set_stored_hash(path, decision.local_hash, persist=False)
        elif decision.action == SyncAction.CONFLICT:
            await self.resolver.check_file_conflict(path, remote_file)
            result.conflicts += 1
            result.errors.append(f"{path}: conflict detected")
        else:
            logger.debug(f"Skipping {path}: {decision.reason}")

    async def replace_local_with_remote(self) -> SyncResult:
        """Make local files match the remote vault.

        Local files with different content are kept as conflict copies
        before the remote version is downloaded.
        """

        async def body(result: SyncResult) -> None:
            assert self.engine is not None and self.resolver is not None
            remote = await self._remote_files()
            paths = sorted(remote, key=path_depth)
            for index, path in enumerate(paths, 1):
                if self.engine.is_locally_deleted(path):
                    continue
                result.files_processed += 1
                try:
                    if await self.local.exists(path):
                        content = await self.local.read(path)
                        local_hash = self.engine.compute_hash(content)
                        if local_hash == remote[path].hash:
                            self.engine.set_stored_hash(path, local_hash, persist=False)
                            continue
                        await self.resolver.create_conflict_copy(path, content)
                    await self._download(path)
                    result.files_downloaded += 1
                except VaultAuthenticationError:
                    raise
                except VaultSyncError as e:
                    self._record_error(result, path, e)
                self._progress("downloading", index, len(paths), path)
            self._touch_last_sync(self.clock())

        return await self._run_pass("replace_local_with_remote", body)

    async def replace_remote_with_local(self) -> SyncResult:
        """Make remote files match the local vault."""

        async def body(result: SyncResult) -> None:
            assert self.engine is not None
            remote = await self._remote_files()
            paths = await self._local_paths()
            for index, path in enumerate(paths, 1):
                result.files_processed += 1
                try:
                    remote_file = remote.get(path)
                    local_hash = self.engine.compute_hash(await self.local.read(path))
                    if remote_file is not None and remote_file.hash == local_hash:
                        self.engine.set_stored_hash(path, local_hash, persist=False)
                        continue
                    if self.engine.get_stored_hash(path) == local_hash:
                        # Remote differs although local is unchanged: force the upload
                        self.engine.clear_sync_state(path)
                    outcome = await self.engine.upload_file(
                        path, force_create=remote_file is None, defer_persist=True
                    )
                    if not outcome.skipped:
                        result.files_uploaded += 1
                except VaultAuthenticationError:
                    raise
                except VaultSyncError as e:
                    self._record_error(result, path, e)
                self._progress("uploading", index, len(paths), path)
            self._touch_last_sync(self.clock())

        return await self._run_pass("replace_remote_with_local", body)

    async def force_sync(self) -> SyncResult:
        """Forget all sync state and run the pass of the current mode."""
        self._require_initialized()
        assert self.engine is not None
        if self._syncing:
            raise VaultValidationError("Sync already in progress")
        self.engine.clear_all_sync_state()
        mode = self.settings.sync_mode
        if mode == SyncMode.PULL_ALL:
            return await self.replace_local_with_remote()
        if mode == SyncMode.PUSH_ALL:
            return await self.replace_remote_with_local()
        if mode == SyncMode.SMART_SYNC:
            return await self.bidirectional_sync()
        return await self.sync_all()

    async def run_initial_sync(self, strategy: Any) -> InitialSyncResult:
        """Run the initial sync with an explicit strategy."""
        self._require_initialized()
        assert self.initial_sync is not None and self.vault_id is not None
        if self._syncing:
            raise VaultValidationError("Sync already in progress")
        self._syncing = True
        try:
            return await self.initial_sync.execute(self.vault_id, strategy)
        finally:
            self._syncing = False

    async def handle_reconnection(self) -> list[str]:
        """Catch up after the connection came back.

        Runs queued operations that are due and a drift check (subject to
        the minimum spacing).

        Returns:
            Drifted paths found by the check
        """
        self._require_initialized()
        assert self.queue is not None
        logger.info("Connection restored, catching up")
        await self.queue.process_once()
        return await self.check_for_drift()

    # =========================
    # Drift detection
    # =========================

    async def check_for_drift(self, force: bool = False) -> list[str]:
        """Look for remote changes the local vault has not seen.

        With a stored last-sync timestamp only files changed since then are
        listed; otherwise the full listing is compared. A drifted path is
        missing locally or has a remote hash different from its stored hash.
        In smart sync with auto sync, drift triggers a bidirectional sync.

        Args:
            force: Ignore the minimum spacing between checks

        Returns:
            Drifted paths (empty when the check was skipped or failed)
        """
        self._require_initialized()
        assert self.store is not None and self.vault_id is not None
        now = self.monotonic()
        if self._drift_running:
            logger.debug("Drift check already running")
            return []
        if (
            not force
            and self._last_drift_check is not None
            and now - self._last_drift_check < self.settings.min_drift_check_spacing
        ):
            logger.debug("Skipping drift check, last check was too recent")
            return []

        self._drift_running = True
        self._last_drift_check = now
        try:
            checked_at = self.clock()
            since = parse_iso_timestamp(
                self.store.get(last_sync_timestamp_key(self.vault_id))
            )
            if since is not None:
                drifted = await self._incremental_drift(since)
            else:
                drifted = await self._full_drift()
            self._touch_last_sync(checked_at)
        except VaultSyncError as e:
            self.log.error("Drift check failed: %s", e, error=e, vault_id=self.vault_id)
            self._emit(SyncEvent.SYNC_ERROR, {"type": "drift_check", "error": str(e)})
            return []
        finally:
            self._drift_running = False

        if not drifted:
            logger.debug("No drift detected")
            return drifted

        logger.info(f"Drift detected in {len(drifted)} file(s)")
        self._emit(
            SyncEvent.SYNC_DRIFT_DETECTED,
            {"drift_count": len(drifted), "files": drifted},
        )
        if (
            self.settings.sync_mode == SyncMode.SMART_SYNC
            and self.settings.auto_sync
            and not self._syncing
        ):
            await self.bidirectional_sync()
        return drifted

    async def _incremental_drift(self, since: datetime) -> list[str]:
        assert self.engine is not None and self.scope is not None
        assert self.vault_id is not None
        entries = await self.client.get_changed_files(self.vault_id, since)
        drifted: list[str] = []
        for remote in (RemoteFile.from_dict(entry) for entry in entries):
            if not self.scope.should_sync_path(remote.path):
                continue
            if self.engine.is_locally_deleted(remote.path):
                continue
            if (
                not await self.local.exists(remote.path)
                or self.engine.get_stored_hash(remote.path) != remote.hash
            ):
                drifted.append(remote.path)
        return drifted

    async def _full_drift(self) -> list[str]:
        assert self.engine is not None
        remote = await self._remote_files()
        local_paths = await self._local_paths()
        local_set = set(local_paths)
        drifted: list[str] = []
        for path in local_paths:
            remote_file = remote.get(path)
            if remote_file is None:
                drifted.append(path)
                continue
            stored = self.engine.get_stored_hash(path)
            if stored is not None and stored != remote_file.hash:
                drifted.append(path)
        for path in remote:
            if path not in local_set and not self.engine.is_locally_deleted(path):
                drifted.append(path)
        return drifted

    # =========================
    # Status
    # =========================

    def get_status(self) -> dict[str, Any]:
        """Snapshot of the orchestrator for status displays."""
        status: dict[str, Any] = {
            "state": self._state.value,
            "is_syncing": self._syncing,
            "vault_id": self.vault_id,
            "mode": self.settings.sync_mode.value,
            "auto_sync": self.settings.auto_sync,
            "recent_errors": [e.to_dict() for e in self.log.recent_errors(limit=10)],
        }
        if self.engine is None:
            return status
        assert self.store is not None and self.vault_id is not None
        assert self.queue is not None and self.resolver is not None
        assert self.initial_sync is not None and self.scope is not None
        record = self.initial_sync.get_record(self.vault_id)
        status.update(
            {
                "tracked_files": len(self.engine.state.file_hashes),
                "locally_deleted": len(self.engine.state.locally_deleted),
                "queue": self.queue.get_stats(),
                "conflicts": len(self.resolver.get_conflicts()),
                "initial_sync": record.to_dict() if record else None,
                "last_sync": self.store.get(last_sync_timestamp_key(self.vault_id)),
                "scope": self.scope.get_config(),
            }
        )
        return status
