"""Conflict detection and conflict records.

A path is in conflict when both replicas changed since the last
synchronized state and did not converge on the same content. Detection
never overwrites either side: it stores a :class:`ConflictRecord` holding
both snapshots and emits ``conflict:detected``. A user later picks a
resolution that :meth:`ConflictResolver.resolve_conflict` applies.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Optional

from ..events import EventBus, SyncEvent
from ..exceptions import VaultNotFoundError, VaultSyncError, VaultValidationError
from ..logging_utils import SyncLogger
from ..utils import format_iso_timestamp, utc_now
from .comparator import is_conflict
from .scanner import RemoteFile
from .state import CONFLICTS_KEY, StateStore

if TYPE_CHECKING:
    from ..api import VaultSyncClient
    from ..local import LocalVault
    from .engine import FileSyncEngine

logger = logging.getLogger(__name__)


class ConflictType(str, Enum):
    """Kinds of conflicts."""

    CONTENT = "content"
    """Both sides edited the file"""

    DELETION = "deletion"
    """Deleted locally while edited remotely"""


class Resolution(str, Enum):
    """User choices for resolving a conflict."""

    KEEP_LOCAL = "keep_local"
    KEEP_REMOTE = "keep_remote"
    KEEP_BOTH = "keep_both"
    MERGE = "merge"


@dataclass
class ConflictRecord:
    """Both sides of a conflicting file, kept until the user resolves it."""

    path: str
    local_content: str
    remote_content: str
    local_modified: Optional[str] = None
    """ISO timestamp of the local modification"""

    remote_modified: Optional[str] = None
    """ISO timestamp of the remote modification"""

    conflict_type: ConflictType = ConflictType.CONTENT
    auto_resolvable: bool = False
    id: str = field(default_factory=lambda: f"conflict_{uuid.uuid4().hex[:12]}")
    timestamp: str = field(default_factory=lambda: format_iso_timestamp(utc_now()))

    def to_dict(self) -> dict[str, Any]:
        """Convert record to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "path": self.path,
            "local_content": self.local_content,
            "remote_content": self.remote_content,
            "local_modified": self.local_modified,
            "remote_modified": self.remote_modified,
            "conflict_type": self.conflict_type.value,
            "auto_resolvable": self.auto_resolvable,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ConflictRecord":
        """Create ConflictRecord from dictionary."""
        return cls(
            id=data["id"],
            path=data["path"],
            local_content=data.get("local_content", ""),
            remote_content=data.get("remote_content", ""),
            local_modified=data.get("local_modified"),
            remote_modified=data.get("remote_modified"),
            conflict_type=ConflictType(data.get("conflict_type", "content")),
            auto_resolvable=bool(data.get("auto_resolvable", False)),
            timestamp=data.get("timestamp") or format_iso_timestamp(utc_now()),
        )


def conflict_copy_path(path: str, when: datetime) -> str:
    """Name of the copy that keeps one side of a conflicting file.

    Args:
        path: Vault-relative path of the conflicting file
        when: Time of the conflict (converted to UTC)

    Returns:
        ``<base>.conflict-<YYYY-MM-DDTHH-MM-SS>.<ext>`` in the same folder

    Examples:
        >>> when = datetime(2024, 3, 5, 14, 30, 15, 123000, tzinfo=timezone.utc)
        >>> conflict_copy_path("notes/todo.md", when)
        'notes/todo.conflict-2024-03-05T14-30-15.md'
        >>> conflict_copy_path("README", when)
        'README.conflict-2024-03-05T14-30-15'
    """
    stamp = when.astimezone(timezone.utc).strftime("%Y-%m-%dT%H-%M-%S")
    folder, _, name = path.rpartition("/")
    base, dot, ext = name.rpartition(".")
    if dot and base:
        copy_name = f"{base}.conflict-{stamp}.{ext}"
    else:
        copy_name = f"{name}.conflict-{stamp}"
    return f"{folder}/{copy_name}" if folder else copy_name


def _is_auto_resolvable(local_content: str, remote_content: str) -> bool:
    """One side only appended to the other."""
    return local_content.startswith(remote_content) or remote_content.startswith(
        local_content
    )


class ConflictResolver:
    """Detects conflicts, keeps their records and applies resolutions."""

    def __init__(
        self,
        vault_id: str,
        engine: FileSyncEngine,
        client: VaultSyncClient,
        local: LocalVault,
        store: StateStore,
        event_bus: Optional[EventBus] = None,
        log: Optional[SyncLogger] = None,
        ignore_path: Optional[Callable[[str], None]] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        """Initialize the resolver.

        Args:
            vault_id: Vault identifier
            engine: File sync engine holding the stored hashes
            client: Remote API client
            local: Local vault store
            store: Persistent state store of the vault
            event_bus: Bus receiving conflict events
            log: Logger keeping recent errors
            ignore_path: Called before the resolver writes a local file
            clock: Source of the current UTC time
        """
        self.vault_id = vault_id
        self.engine = engine
        self.client = client
        self.local = local
        self.store = store
        self.event_bus = event_bus
        self.log = log or SyncLogger(__name__)
        self.ignore_path = ignore_path
        self.clock = clock
        self._conflicts: dict[str, ConflictRecord] = {}

    # =========================
    # Records
    # =========================

    def load_conflicts(self) -> int:
        """Read stored conflict records.

        Returns:
            Number of loaded records
        """
        self._conflicts = {}
        for data in self.store.get(CONFLICTS_KEY) or []:
            try:
                record = ConflictRecord.from_dict(data)
            except (KeyError, ValueError, TypeError) as e:
                logger.warning(f"Dropping unreadable conflict record: {e}")
                continue
            self._conflicts[record.id] = record
        return len(self._conflicts)

    def _save(self) -> None:
        self.store.set(
            CONFLICTS_KEY, [record.to_dict() for record in self._conflicts.values()]
        )
        self.store.save()

    def get_conflicts(self) -> list[ConflictRecord]:
        return list(self._conflicts.values())

    def get_conflict(self, conflict_id: str) -> Optional[ConflictRecord]:
        return self._conflicts.get(conflict_id)

    def get_conflict_for_path(self, path: str) -> Optional[ConflictRecord]:
        return next((c for c in self._conflicts.values() if c.path == path), None)

    def clear_conflicts(self) -> int:
        """Drop every conflict record.

        Returns:
            Number of removed records
        """
        count = len(self._conflicts)
        self._conflicts = {}
        self._save()
        return count

    # =========================
    # Detection
    # =========================

    async def create_conflict(
        self,
        path: str,
        local_content: str,
        remote_content: str,
        local_modified: Optional[str] = None,
        remote_modified: Optional[str] = None,
        conflict_type: ConflictType = ConflictType.CONTENT,
    ) -> ConflictRecord:
        """Store a conflict record and emit ``conflict:detected``.

        An existing record for the same path is replaced.
        """
        previous = self.get_conflict_for_path(path)
        if previous is not None:
            del self._conflicts[previous.id]

        auto_resolvable = (
            conflict_type == ConflictType.CONTENT
            and _is_auto_resolvable(local_content, remote_content)
        )
        record = ConflictRecord(
            path=path,
            local_content=local_content,
            remote_content=remote_content,
            local_modified=local_modified,
            remote_modified=remote_modified,
            conflict_type=conflict_type,
            auto_resolvable=auto_resolvable,
            timestamp=format_iso_timestamp(self.clock()),
        )
        self._conflicts[record.id] = record
        self._save()
        logger.warning(f"{conflict_type.value.capitalize()} conflict detected: {path}")
        if self.event_bus is not None:
            self.event_bus.emit(SyncEvent.CONFLICT_DETECTED, record)
        return record

    async def check_file_conflict(
        self, path: str, remote: Optional[RemoteFile] = None
    ) -> Optional[ConflictRecord]:
        """Check one path and record a conflict if there is one.

        Args:
            path: Vault-relative path
            remote: Remote listing entry; fetched when not given

        Returns:
            The new ConflictRecord, or None if the path is not in conflict
        """
        stored_hash = self.engine.get_stored_hash(path)
        remote_hash = remote.hash if remote is not None else None
        if remote is None:
            try:
                remote_hash = await self.client.get_file_hash(self.vault_id, path)
            except VaultNotFoundError:
                return None
        if not remote_hash:
            return None

        remote_modified = remote.updated_at if remote is not None else None
        local_file = await self.local.stat(path)

        if local_file is None:
            if stored_hash is not None and remote_hash != stored_hash:
                remote_info = await self.client.get_file_by_path(self.vault_id, path)
                return await self.create_conflict(
                    path,
                    local_content="",
                    remote_content=remote_info.get("content") or "",
                    local_modified=format_iso_timestamp(self.clock()),
                    remote_modified=remote_modified or remote_info.get("updated_at"),
                    conflict_type=ConflictType.DELETION,
                )
            return None

        local_content = await self.local.read(path)
        local_hash = self.engine.compute_hash(local_content)
        if not is_conflict(local_hash, remote_hash, stored_hash):
            return None

        remote_info = await self.client.get_file_by_path(self.vault_id, path)
        return await self.create_conflict(
            path,
            local_content=local_content,
            remote_content=remote_info.get("content") or "",
            local_modified=format_iso_timestamp(
                datetime.fromtimestamp(local_file.mtime, tz=timezone.utc)
            ),
            remote_modified=remote_modified or remote_info.get("updated_at"),
        )

    async def detect_conflicts(self) -> list[ConflictRecord]:
        """Check every remote file against its local and stored state.

        Returns:
            Conflict records created by this run
        """
        remote_files = [
            RemoteFile.from_dict(f) for f in await self.client.list_files(self.vault_id)
        ]
        scope = self.engine.scope
        detected: list[ConflictRecord] = []
        for remote in remote_files:
            if scope is not None and not scope.should_sync_path(remote.path):
                continue
            record = await self.check_file_conflict(remote.path, remote)
            if record is not None:
                detected.append(record)
        logger.info(f"Detected {len(detected)} conflict(s)")
        return detected

    # =========================
    # Resolution
    # =========================

    async def create_conflict_copy(
        self, path: str, content: str, now: Optional[datetime] = None
    ) -> str:
        """Write ``content`` next to ``path`` under a conflict-copy name.

        Returns:
            Path of the copy
        """
        copy_path = conflict_copy_path(path, now or self.clock())
        if self.ignore_path is not None:
            self.ignore_path(copy_path)
        await self.local.write(copy_path, content)
        logger.info(f"Created conflict copy {copy_path}")
        return copy_path

    async def resolve_conflict(
        self,
        conflict_id: str,
        resolution: Resolution,
        merged_content: Optional[str] = None,
    ) -> None:
        """Apply a resolution and drop the record.

        Args:
            conflict_id: Record identifier
            resolution: Which side (or merge) to keep
            merged_content: Content for :attr:`Resolution.MERGE`

        Raises:
            VaultValidationError: If the record does not exist or a merge
                has no content
        """
        record = self._conflicts.get(conflict_id)
        if record is None:
            raise VaultValidationError(f"Conflict not found: {conflict_id}")
        resolution = Resolution(resolution)
        path = record.path

        if resolution == Resolution.KEEP_LOCAL:
            if await self.local.exists(path):
                # The local side wins even when it matches the stored hash
                self.engine.clear_sync_state(path)
                await self.engine.upload_file(path)
            else:
                await self.engine.delete_file(path)
        elif resolution == Resolution.KEEP_REMOTE:
            await self._download(path)
        elif resolution == Resolution.KEEP_BOTH:
            if await self.local.exists(path):
                await self.create_conflict_copy(path, await self.local.read(path))
            await self._download(path)
        else:
            if merged_content is None:
                raise VaultValidationError("Merged content is required for a merge")
            if self.ignore_path is not None:
                self.ignore_path(path)
            await self.local.write(path, merged_content)
            self.engine.clear_sync_state(path)
            await self.engine.upload_file(path)

        del self._conflicts[conflict_id]
        self._save()
        logger.info(f"Resolved conflict for {path} ({resolution.value})")
        if self.event_bus is not None:
            self.event_bus.emit(
                SyncEvent.CONFLICT_RESOLVED,
                {"id": conflict_id, "path": path, "resolution": resolution.value},
            )

    async def resolve_all(self, resolution: Resolution) -> list[str]:
        """Apply one resolution to every record.

        Returns:
            Error messages of records that could not be resolved
        """
        errors: list[str] = []
        for record in list(self._conflicts.values()):
            try:
                await self.resolve_conflict(record.id, resolution)
            except VaultSyncError as e:
                self.log.error(
                    "Failed to resolve conflict for %s: %s", record.path, e, error=e
                )
                errors.append(f"{record.path}: {e}")
        return errors

    async def _download(self, path: str) -> None:
        if self.ignore_path is not None:
            self.ignore_path(path)
        await self.engine.download_file(path)
