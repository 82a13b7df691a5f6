"""Persistent state for sync bookkeeping.

Each vault gets one JSON file in the user's config directory, keyed by a
hash of the vault id. The file holds a flat key-value map: the stored-hash
map, tombstones, the operation queue, conflict records, the drift
timestamp and initial sync completion records.
"""

import hashlib
import json
import logging
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from ..exceptions import VaultStorageError

logger = logging.getLogger(__name__)

FILE_HASHES_KEY = "fileHashes"
LAST_SYNC_TIMESTAMPS_KEY = "lastSyncTimestamps"
LOCALLY_DELETED_KEY = "locallyDeletedFiles"
READ_ONLY_KEY = "readOnlyFiles"
SYNC_QUEUE_KEY = "syncQueue"
CONFLICTS_KEY = "conflicts"
INITIAL_SYNC_STATES_KEY = "initialSyncStates"


def last_sync_timestamp_key(vault_id: str) -> str:
    """Key of the drift-check timestamp for a vault."""
    return f"lastSyncTimestamp:{vault_id}"


class StateStore:
    """JSON-backed key-value store for one vault.

    Values must be JSON-serializable. Changes are kept in memory until
    :meth:`save` is called; callers decide when to persist so batch
    operations can write once.
    """

    def __init__(self, vault_id: str, state_dir: Optional[Path] = None):
        """Initialize the store.

        Args:
            vault_id: Vault the state belongs to
            state_dir: Directory to store state files. Defaults to
                      ~/.config/vaultsync/state/
        """
        if state_dir is None:
            state_dir = Path.home() / ".config" / "vaultsync" / "state"
        self.vault_id = vault_id
        self.state_dir = state_dir
        self._data: dict[str, Any] = {}
        self._loaded = False

    def _get_state_key(self) -> str:
        """Generate a file-name-safe key for the vault.

        Returns:
            Hash-based key for the vault
        """
        return hashlib.sha256(self.vault_id.encode()).hexdigest()[:16]

    @property
    def state_file(self) -> Path:
        return self.state_dir / f"{self._get_state_key()}.json"

    def load(self) -> None:
        """Load state from disk.

        A missing file yields an empty store. A corrupt file is logged and
        also yields an empty store, which degrades the next sync to a full
        comparison.
        """
        self._loaded = True
        state_file = self.state_file
        if not state_file.exists():
            logger.debug(f"No sync state found at {state_file}")
            self._data = {}
            return

        try:
            with open(state_file, encoding="utf-8") as f:
                data = json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            logger.warning(f"Failed to load sync state: {e}")
            self._data = {}
            return

        if not isinstance(data, dict):
            logger.warning(f"Ignoring malformed sync state in {state_file}")
            data = {}
        self._data = data
        logger.debug(f"Loaded sync state with {len(self._data)} keys from {state_file}")

    def _ensure_loaded(self) -> None:
        if not self._loaded:
            self.load()

    def get(self, key: str, default: Any = None) -> Any:
        self._ensure_loaded()
        return self._data.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self._ensure_loaded()
        self._data[key] = value

    def delete(self, key: str) -> bool:
        """Remove a key.

        Returns:
            True if the key existed
        """
        self._ensure_loaded()
        return self._data.pop(key, None) is not None

    def keys(self) -> list[str]:
        self._ensure_loaded()
        return list(self._data)

    def save(self) -> None:
        """Write the state file atomically.

        Raises:
            VaultStorageError: If the file cannot be written
        """
        self._ensure_loaded()
        state_file = self.state_file
        try:
            self.state_dir.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                dir=self.state_dir, prefix=".state-", suffix=".tmp"
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(self._data, f, indent=2, sort_keys=True)
                os.replace(tmp_name, state_file)
            except BaseException:
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)
                raise
        except (OSError, TypeError, ValueError) as e:
            raise VaultStorageError(
                f"Failed to save sync state: {e}", context={"file": str(state_file)}
            ) from e
        logger.debug(f"Saved sync state to {state_file}")

    def clear(self) -> bool:
        """Drop all state and remove the state file.

        Returns:
            True if a state file existed
        """
        self._data = {}
        self._loaded = True
        state_file = self.state_file
        if state_file.exists():
            state_file.unlink()
            logger.debug(f"Cleared sync state at {state_file}")
            return True
        return False


@dataclass
class FileSyncState:
    """Per-file bookkeeping of the sync engine.

    ``file_hashes`` is the common-ancestor reference for three-way
    comparison: the hash each path had when it was last synchronized.
    """

    file_hashes: dict[str, str] = field(default_factory=dict)
    """Last synchronized SHA-256 per path"""

    last_sync_timestamps: dict[str, float] = field(default_factory=dict)
    """Unix time of the last successful transfer per path"""

    locally_deleted: set[str] = field(default_factory=set)
    """Tombstones: paths the user deleted locally"""

    read_only: set[str] = field(default_factory=set)
    """Paths that must never be uploaded"""

    def to_dict(self) -> dict[str, Any]:
        """Convert state to dictionary for JSON serialization."""
        return {
            FILE_HASHES_KEY: dict(self.file_hashes),
            LAST_SYNC_TIMESTAMPS_KEY: dict(self.last_sync_timestamps),
            LOCALLY_DELETED_KEY: sorted(self.locally_deleted),
            READ_ONLY_KEY: sorted(self.read_only),
        }

    @classmethod
    def from_store(cls, store: StateStore) -> "FileSyncState":
        """Read file state from a store."""
        return cls(
            file_hashes=dict(store.get(FILE_HASHES_KEY) or {}),
            last_sync_timestamps=dict(store.get(LAST_SYNC_TIMESTAMPS_KEY) or {}),
            locally_deleted=set(store.get(LOCALLY_DELETED_KEY) or []),
            read_only=set(store.get(READ_ONLY_KEY) or []),
        )

    def write_to(self, store: StateStore) -> None:
        """Copy file state into a store (without saving it)."""
        for key, value in self.to_dict().items():
            store.set(key, value)
