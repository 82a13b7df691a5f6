"""Per-file sync primitives.

The engine owns the stored-hash map (the content hash each path had when it
was last synchronized) together with tombstones and read-only markers.
Every successful transfer updates the map; callers that process many files
pass ``defer_persist=True`` and call :meth:`FileSyncEngine.save_sync_state`
once per batch.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Optional

from ..events import EventBus, SyncEvent
from ..exceptions import VaultNotFoundError
from ..logging_utils import SyncLogger
from ..utils import DEFAULT_CHUNK_THRESHOLD, format_size, sha256_hex
from .queue import OperationKind, QueuedOperation
from .scanner import RemoteFile
from .scope import SelectiveScope
from .state import FileSyncState, StateStore

if TYPE_CHECKING:
    from ..api import VaultSyncClient
    from ..local import LocalVault
    from .operations import TransferOperations

logger = logging.getLogger(__name__)


@dataclass
class FileSyncResult:
    """Outcome of a single upload, download or delete."""

    path: str
    operation: str
    """Operation name: upload, download or delete"""

    hash: Optional[str] = None
    """Stored hash after the operation"""

    skipped: bool = False
    reason: Optional[str] = None
    """Why the operation was skipped"""


class FileSyncEngine:
    """Uploads and downloads single files and keeps the hash bookkeeping.

    Transfer errors are raised as :class:`~vaultsync.exceptions.VaultSyncError`
    subclasses; bulk callers collect them per file and the queue retries
    them.
    """

    def __init__(
        self,
        vault_id: str,
        client: VaultSyncClient,
        local: LocalVault,
        store: StateStore,
        scope: Optional[SelectiveScope] = None,
        transfer: Optional[TransferOperations] = None,
        event_bus: Optional[EventBus] = None,
        log: Optional[SyncLogger] = None,
        chunk_threshold: int = DEFAULT_CHUNK_THRESHOLD,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize the engine.

        Args:
            vault_id: Vault identifier
            client: Remote API client
            local: Local vault store
            store: Persistent state store of the vault
            scope: Selective sync rules (None syncs everything)
            transfer: Collaborator for files above ``chunk_threshold``
            event_bus: Bus receiving ``sync:file-synced`` events
            log: Logger keeping recent errors
            chunk_threshold: Size in bytes above which files are chunked
            clock: Source of Unix time for last-sync timestamps
        """
        self.vault_id = vault_id
        self.client = client
        self.local = local
        self.store = store
        self.scope = scope
        self.transfer = transfer
        self.event_bus = event_bus
        self.log = log or SyncLogger(__name__)
        self.chunk_threshold = chunk_threshold
        self.clock = clock
        self.state = FileSyncState()
        self._file_ids: dict[str, str] = {}

    # =========================
    # State
    # =========================

    def load_sync_state(self) -> None:
        """Read the stored-hash map and markers from the state store."""
        self.state = FileSyncState.from_store(self.store)
        logger.debug(
            f"Loaded sync state: {len(self.state.file_hashes)} tracked, "
            f"{len(self.state.locally_deleted)} deleted locally"
        )

    def save_sync_state(self) -> None:
        """Persist the stored-hash map and markers.

        Raises:
            VaultStorageError: If the state cannot be written
        """
        self.state.write_to(self.store)
        self.store.save()

    def _persist(self, defer: bool) -> None:
        if not defer:
            self.save_sync_state()

    @staticmethod
    def compute_hash(content: str) -> str:
        """SHA-256 hex digest of the UTF-8 encoded content."""
        return sha256_hex(content)

    def get_stored_hash(self, path: str) -> Optional[str]:
        return self.state.file_hashes.get(path)

    def set_stored_hash(self, path: str, file_hash: str, persist: bool = True) -> None:
        """Record ``file_hash`` as the last synchronized hash of ``path``."""
        self.state.file_hashes[path] = file_hash
        self.state.last_sync_timestamps[path] = self.clock()
        self.state.locally_deleted.discard(path)
        self._persist(defer=not persist)

    def clear_sync_state(self, path: str) -> None:
        """Forget everything known about one path."""
        self.state.file_hashes.pop(path, None)
        self.state.last_sync_timestamps.pop(path, None)
        self.state.locally_deleted.discard(path)
        self._file_ids.pop(path, None)
        if self.transfer is not None:
            self.transfer.forget_base(path)
        self.save_sync_state()

    def clear_all_sync_state(self) -> None:
        """Forget all hashes and tombstones (read-only markers are kept)."""
        read_only = set(self.state.read_only)
        self.state = FileSyncState(read_only=read_only)
        self._file_ids.clear()
        self.save_sync_state()
        logger.info(f"Cleared sync state of vault {self.vault_id}")

    def is_locally_deleted(self, path: str) -> bool:
        return path in self.state.locally_deleted

    def mark_read_only(self, path: str) -> None:
        self.state.read_only.add(path)
        self.save_sync_state()

    def unmark_read_only(self, path: str) -> None:
        self.state.read_only.discard(path)
        self.save_sync_state()

    def is_read_only(self, path: str) -> bool:
        return path in self.state.read_only

    def should_chunk(self, size: int) -> bool:
        return size > self.chunk_threshold

    def remember_remote_files(
        self, files: list[RemoteFile], complete: bool = False
    ) -> None:
        """Cache remote file ids from a listing to avoid lookups on update.

        Args:
            files: Remote files from a listing
            complete: The listing covers the whole vault, so ids of paths
                missing from it are dropped
        """
        if complete:
            self._file_ids.clear()
        for remote in files:
            if remote.file_id:
                self._file_ids[remote.path] = remote.file_id

    def _remember_file_id(self, path: str, response: Any) -> None:
        if not isinstance(response, dict):
            return
        file_id = response.get("file_id", response.get("id"))
        if file_id is not None:
            self._file_ids[path] = str(file_id)

    async def _resolve_file_id(self, path: str) -> Optional[str]:
        """Remote id of ``path``, None if the file does not exist remotely."""
        cached = self._file_ids.get(path)
        if cached:
            return cached
        try:
            info = await self.client.get_file_by_path(self.vault_id, path)
        except VaultNotFoundError:
            return None
        self._remember_file_id(path, info)
        return self._file_ids.get(path)

    def _emit_synced(self, path: str, operation: str) -> None:
        if self.event_bus is not None:
            self.event_bus.emit(
                SyncEvent.FILE_SYNCED, {"path": path, "operation": operation}
            )

    # =========================
    # Change checks
    # =========================

    async def has_local_changes(self, path: str) -> bool:
        """Whether the local file differs from the stored hash.

        A tracked file that no longer exists locally counts as changed.
        """
        stored = self.get_stored_hash(path)
        if not await self.local.exists(path):
            return stored is not None
        content = await self.local.read(path)
        return self.compute_hash(content) != stored

    async def has_remote_changes(
        self, path: str, remote_hash: Optional[str] = None
    ) -> bool:
        """Whether the remote file differs from the stored hash.

        Args:
            path: Vault-relative path
            remote_hash: Hash from a listing; fetched when not given

        Returns:
            False if the file does not exist remotely
        """
        if remote_hash is None:
            try:
                remote_hash = await self.client.get_file_hash(self.vault_id, path)
            except VaultNotFoundError:
                return False
        return remote_hash != self.get_stored_hash(path)

    # =========================
    # Transfers
    # =========================

    async def upload_file(
        self, path: str, force_create: bool = False, defer_persist: bool = False
    ) -> FileSyncResult:
        """Upload a local file.

        Args:
            path: Vault-relative path
            force_create: Create the remote file without an existence check,
                even when the content matches the stored hash
            defer_persist: Leave persisting the hash map to the caller

        Returns:
            FileSyncResult describing the upload or why it was skipped
        """
        if self.scope is not None and not self.scope.should_sync_path(path):
            return FileSyncResult(path, "upload", skipped=True, reason="excluded")
        if self.is_read_only(path):
            logger.debug(f"Skipping upload of read-only file {path}")
            return FileSyncResult(path, "upload", skipped=True, reason="read-only")

        content = await self.local.read(path)
        file_hash = self.compute_hash(content)
        stored = self.get_stored_hash(path)
        if file_hash == stored and not force_create:
            logger.debug(f"Skipping unchanged file {path}")
            return FileSyncResult(
                path, "upload", hash=file_hash, skipped=True, reason="unchanged"
            )

        size = len(content.encode("utf-8"))
        if self.transfer is not None and self.should_chunk(size):
            exists = False
            if not force_create:
                exists = await self.client.file_exists(self.vault_id, path)
            logger.debug(f"Uploading {path} ({format_size(size)}) via transfer")
            response = await self.transfer.upload(
                self.vault_id, path, content, base_hash=stored, exists=exists
            )
        elif force_create:
            response = await self.client.create_file(self.vault_id, path, content)
        else:
            file_id = await self._resolve_file_id(path)
            response = None
            if file_id is not None:
                try:
                    response = await self.client.update_file(
                        self.vault_id, file_id, content, hash=file_hash
                    )
                except VaultNotFoundError:
                    # Deleted remotely since the id was cached
                    logger.debug(f"Remote id {file_id} of {path} is gone, recreating")
                    self._file_ids.pop(path, None)
            if response is None:
                response = await self.client.create_file(self.vault_id, path, content)

        self._remember_file_id(path, response)
        remote_hash = response.get("hash") if isinstance(response, dict) else None
        if remote_hash and remote_hash != file_hash:
            logger.warning(
                f"Server reported hash {remote_hash[:8]} for {path}, "
                f"expected {file_hash[:8]}"
            )

        self.state.file_hashes[path] = file_hash
        self.state.last_sync_timestamps[path] = self.clock()
        self.state.locally_deleted.discard(path)
        self._persist(defer_persist)
        logger.debug(f"Uploaded {path}")
        self._emit_synced(path, "upload")
        return FileSyncResult(path, "upload", hash=file_hash)

    async def download_file(
        self, path: str, defer_persist: bool = False
    ) -> FileSyncResult:
        """Download a remote file and write it locally.

        The caller suppresses the change notification the write produces.

        Args:
            path: Vault-relative path
            defer_persist: Leave persisting the hash map to the caller

        Returns:
            FileSyncResult with the stored hash
        """
        info = await self.client.get_file_by_path(self.vault_id, path)
        content = info.get("content") or ""
        remote_hash = info.get("hash") or self.compute_hash(content)

        await self.local.write(path, content)
        self._remember_file_id(path, info)
        if self.transfer is not None:
            self.transfer.remember_base(path, content)

        self.state.file_hashes[path] = remote_hash
        self.state.last_sync_timestamps[path] = self.clock()
        self.state.locally_deleted.discard(path)
        self._persist(defer_persist)
        logger.debug(f"Downloaded {path}")
        self._emit_synced(path, "download")
        return FileSyncResult(path, "download", hash=remote_hash)

    async def delete_file(self, path: str, defer_persist: bool = False) -> FileSyncResult:
        """Delete a file remotely after it was deleted locally.

        The path gets a tombstone so reconciliation does not download it
        again. A file that is already gone remotely counts as deleted.
        """
        file_id = await self._resolve_file_id(path)
        if file_id is not None:
            try:
                await self.client.delete_file(self.vault_id, file_id)
            except VaultNotFoundError:
                logger.debug(f"{path} was already deleted remotely")

        self.state.file_hashes.pop(path, None)
        self.state.last_sync_timestamps.pop(path, None)
        self.state.locally_deleted.add(path)
        self._file_ids.pop(path, None)
        if self.transfer is not None:
            self.transfer.forget_base(path)
        self._persist(defer_persist)
        logger.debug(f"Deleted {path} remotely")
        self._emit_synced(path, "delete")
        return FileSyncResult(path, "delete")

    async def handle_file_rename(self, old_path: str, new_path: str) -> FileSyncResult:
        """Move a file remotely: delete the old path, upload the new one."""
        if old_path != new_path:
            await self.delete_file(old_path, defer_persist=True)
        result = await self.upload_file(new_path, defer_persist=True)
        self.save_sync_state()
        return result

    async def process_queued_operation(self, op: QueuedOperation) -> None:
        """Execute one queued operation (the queue's handler).

        Create and update operations upload the current local content; if
        the file vanished meanwhile nothing is uploaded.
        """
        if op.kind == OperationKind.DELETE:
            await self.delete_file(op.path)
        elif op.kind == OperationKind.RENAME and op.previous_path:
            if await self.local.exists(op.path):
                await self.handle_file_rename(op.previous_path, op.path)
            else:
                await self.delete_file(op.previous_path)
        elif await self.local.exists(op.path):
            await self.upload_file(op.path)
        else:
            logger.debug(f"Dropping {op.kind.value} of {op.path}: file no longer exists")
