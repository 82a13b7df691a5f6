"""Shared fixtures for vaultsync tests."""

from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Optional

import pytest

from vaultsync.events import EventBus, SyncEvent
from vaultsync.exceptions import VaultNotFoundError
from vaultsync.local import LocalVault
from vaultsync.sync.delta import apply_delta, decode_delta
from vaultsync.sync.state import StateStore
from vaultsync.utils import format_iso_timestamp, parse_iso_timestamp, sha256_hex

VAULT_ID = "vault-1"


class FakeRemote:
    """In-memory stand-in for :class:`vaultsync.api.VaultSyncClient`.

    Files are keyed by path. ``failures`` maps a path to an exception (or a
    list of exceptions consumed one per call) raised by any call touching
    that path.
    """

    def __init__(self) -> None:
        self.files: dict[str, dict[str, Any]] = {}
        self.failures: dict[str, Any] = {}
        self.calls: list[tuple[str, str]] = []
        self.now = datetime(2024, 1, 1, tzinfo=timezone.utc)
        self.changed_since: Optional[list[str]] = None
        self._next_id = 1
        self._chunks: dict[str, list[bytes]] = {}

    # Test helpers

    def put(self, path: str, content: str, updated_at: Optional[datetime] = None) -> str:
        """Store a file directly, returning its id."""
        existing = self.files.get(path)
        file_id = existing["file_id"] if existing else self._new_id()
        self.files[path] = {
            "file_id": file_id,
            "path": path,
            "content": content,
            "hash": sha256_hex(content),
            "updated_at": format_iso_timestamp(updated_at or self.now),
        }
        return file_id

    def content(self, path: str) -> Optional[str]:
        entry = self.files.get(path)
        return entry["content"] if entry else None

    def calls_of(self, method: str) -> list[str]:
        return [path for name, path in self.calls if name == method]

    def _new_id(self) -> str:
        file_id = f"f{self._next_id}"
        self._next_id += 1
        return file_id

    def _record(self, method: str, path: str) -> None:
        self.calls.append((method, path))
        failure = self.failures.get(path)
        if isinstance(failure, list):
            if failure:
                raise failure.pop(0)
        elif failure is not None:
            raise failure

    def _listing_entry(self, entry: dict[str, Any]) -> dict[str, Any]:
        return {
            "path": entry["path"],
            "hash": entry["hash"],
            "updated_at": entry["updated_at"],
            "size_bytes": len(entry["content"].encode("utf-8")),
            "file_id": entry["file_id"],
        }

    def _by_id(self, file_id: str) -> dict[str, Any]:
        for entry in self.files.values():
            if entry["file_id"] == file_id:
                return entry
        raise VaultNotFoundError(f"File {file_id} not found")

    # Client interface

    async def __aenter__(self) -> "FakeRemote":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        return None

    async def list_files(self, vault_id: str) -> list[dict[str, Any]]:
        self.calls.append(("list_files", ""))
        return [self._listing_entry(e) for e in self.files.values()]

    async def get_changed_files(
        self, vault_id: str, since: datetime
    ) -> list[dict[str, Any]]:
        self.calls.append(("get_changed_files", format_iso_timestamp(since)))
        if self.changed_since is not None:
            return [
                self._listing_entry(self.files[p])
                for p in self.changed_since
                if p in self.files
            ]
        return [
            self._listing_entry(e)
            for e in self.files.values()
            if parse_iso_timestamp(e["updated_at"]) > since
        ]

    async def get_file_by_path(self, vault_id: str, file_path: str) -> dict[str, Any]:
        self._record("get_file_by_path", file_path)
        entry = self.files.get(file_path)
        if entry is None:
            raise VaultNotFoundError(f"File not found: {file_path}")
        return dict(entry)

    async def get_file_hash(self, vault_id: str, file_path: str) -> str:
        self._record("get_file_hash", file_path)
        entry = self.files.get(file_path)
        if entry is None:
            raise VaultNotFoundError(f"File not found: {file_path}")
        return entry["hash"]

    async def file_exists(self, vault_id: str, file_path: str) -> bool:
        self._record("file_exists", file_path)
        return file_path in self.files

    async def create_file(
        self, vault_id: str, file_path: str, content: str
    ) -> dict[str, Any]:
        self._record("create_file", file_path)
        self.put(file_path, content)
        return dict(self.files[file_path])

    async def update_file(
        self, vault_id: str, file_id: str, content: str, hash: Optional[str] = None
    ) -> dict[str, Any]:
        entry = self._by_id(file_id)
        self._record("update_file", entry["path"])
        self.put(entry["path"], content)
        return dict(self.files[entry["path"]])

    async def delete_file(self, vault_id: str, file_id: str) -> None:
        entry = self._by_id(file_id)
        self._record("delete_file", entry["path"])
        del self.files[entry["path"]]

    async def apply_delta(
        self, vault_id: str, file_path: str, delta: dict[str, Any]
    ) -> dict[str, Any]:
        self._record("apply_delta", file_path)
        entry = self.files[file_path]
        self.put(file_path, apply_delta(entry["content"], decode_delta(delta)))
        return dict(self.files[file_path])

    async def upload_chunk(
        self,
        vault_id: str,
        file_path: str,
        chunk: bytes,
        chunk_index: int,
        total_chunks: int,
        overwrite: bool = True,
    ) -> dict[str, Any]:
        self._record("upload_chunk", file_path)
        parts = self._chunks.setdefault(file_path, [])
        parts.append(chunk)
        if chunk_index + 1 < total_chunks:
            return {"isComplete": False}
        content = b"".join(self._chunks.pop(file_path)).decode("utf-8")
        self.put(file_path, content)
        return {"isComplete": True, "file": dict(self.files[file_path])}

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def remote() -> FakeRemote:
    """In-memory remote vault."""
    return FakeRemote()


@pytest.fixture
def vault_dir(tmp_path: Path) -> Path:
    directory = tmp_path / "vault"
    directory.mkdir()
    return directory


@pytest.fixture
def local(vault_dir: Path) -> LocalVault:
    return LocalVault(vault_dir)


@pytest.fixture
def store(tmp_path: Path) -> StateStore:
    return StateStore(VAULT_ID, tmp_path / "state")


@pytest.fixture
def event_bus() -> EventBus:
    return EventBus()


@pytest.fixture
def events(event_bus: EventBus) -> list[tuple[str, Any]]:
    """Record every emitted event as (name, payload) tuples."""
    recorded: list[tuple[str, Any]] = []
    for event in SyncEvent:
        event_bus.on(
            event, lambda payload, name=event.value: recorded.append((name, payload))
        )
    return recorded


@pytest.fixture
def make_files():
    """Create files below a root from a path -> content map."""

    def make(root: Path, files: dict[str, str]) -> None:
        for path, content in files.items():
            target = root / path
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content, encoding="utf-8")

    return make
