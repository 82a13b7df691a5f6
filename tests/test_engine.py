"""Tests for the per-file sync engine."""

from unittest.mock import AsyncMock, Mock

import pytest

from vaultsync.exceptions import (
    VaultDeltaIntegrityError,
    VaultNetworkError,
    VaultNotFoundError,
)
from vaultsync.sync.engine import FileSyncEngine
from vaultsync.sync.operations import TransferOperations
from vaultsync.sync.queue import OperationKind, QueuedOperation
from vaultsync.sync.scanner import RemoteFile
from vaultsync.sync.scope import SelectiveScope
from vaultsync.sync.state import FileSyncState, StateStore
from vaultsync.utils import sha256_hex


@pytest.fixture
def engine(remote, local, store, event_bus):
    return FileSyncEngine("vault-1", remote, local, store, event_bus=event_bus)


class TestUpload:
    """Tests for FileSyncEngine.upload_file."""

    @pytest.mark.asyncio
    async def test_creates_new_file(self, engine, remote, local, store):
        await local.write("notes/a.md", "hello")
        result = await engine.upload_file("notes/a.md")

        assert result.skipped is False
        assert result.hash == sha256_hex("hello")
        assert remote.content("notes/a.md") == "hello"
        assert remote.calls_of("create_file") == ["notes/a.md"]
        assert engine.get_stored_hash("notes/a.md") == sha256_hex("hello")

        persisted = FileSyncState.from_store(StateStore("vault-1", store.state_dir))
        assert persisted.file_hashes["notes/a.md"] == sha256_hex("hello")

    @pytest.mark.asyncio
    async def test_updates_existing_file(self, engine, remote, local):
        remote.put("a.md", "old")
        await local.write("a.md", "new")
        await engine.upload_file("a.md")
        assert remote.calls_of("update_file") == ["a.md"]
        assert remote.calls_of("create_file") == []
        assert remote.content("a.md") == "new"

    @pytest.mark.asyncio
    async def test_cached_file_id_skips_lookup(self, engine, remote, local):
        file_id = remote.put("a.md", "old")
        engine.remember_remote_files([RemoteFile("a.md", sha256_hex("old"), file_id=file_id)])
        await local.write("a.md", "new")
        await engine.upload_file("a.md")
        assert remote.calls_of("get_file_by_path") == []
        assert remote.calls_of("update_file") == ["a.md"]

    @pytest.mark.asyncio
    async def test_stale_cached_id_falls_back_to_create(self, engine, remote, local):
        await local.write("a.md", "v1")
        await engine.upload_file("a.md")
        # Deleted on another device, the cached id is now stale
        del remote.files["a.md"]
        await local.write("a.md", "v2")

        await engine.upload_file("a.md")

        assert remote.calls_of("create_file") == ["a.md", "a.md"]
        assert remote.content("a.md") == "v2"
        assert engine.get_stored_hash("a.md") == sha256_hex("v2")

    def test_complete_listing_drops_missing_ids(self, engine):
        engine.remember_remote_files([RemoteFile("a.md", "h1", file_id="f1")])
        engine.remember_remote_files(
            [RemoteFile("b.md", "h2", file_id="f2")], complete=True
        )
        assert engine._file_ids == {"b.md": "f2"}

    @pytest.mark.asyncio
    async def test_unchanged_file_is_skipped(self, engine, remote, local):
        await local.write("a.md", "same")
        engine.set_stored_hash("a.md", sha256_hex("same"))
        result = await engine.upload_file("a.md")
        assert result.skipped is True
        assert result.reason == "unchanged"
        assert remote.calls == []

    @pytest.mark.asyncio
    async def test_force_create_ignores_stored_hash(self, engine, remote, local):
        await local.write("a.md", "same")
        engine.set_stored_hash("a.md", sha256_hex("same"))
        result = await engine.upload_file("a.md", force_create=True)
        assert result.skipped is False
        assert remote.calls_of("create_file") == ["a.md"]
        assert remote.calls_of("get_file_by_path") == []

    @pytest.mark.asyncio
    async def test_read_only_file_is_skipped(self, engine, remote, local):
        await local.write("a.md", "text")
        engine.mark_read_only("a.md")
        result = await engine.upload_file("a.md")
        assert result.reason == "read-only"
        assert remote.calls == []

        engine.unmark_read_only("a.md")
        result = await engine.upload_file("a.md")
        assert result.skipped is False
        assert remote.calls_of("create_file") == ["a.md"]

    @pytest.mark.asyncio
    async def test_excluded_file_is_skipped(self, remote, local, store):
        scope = SelectiveScope(excluded_folders=["private"])
        engine = FileSyncEngine("vault-1", remote, local, store, scope=scope)
        await local.write("private/diary.md", "secret")
        result = await engine.upload_file("private/diary.md")
        assert result.reason == "excluded"
        assert remote.files == {}

    @pytest.mark.asyncio
    async def test_transfer_error_propagates(self, engine, remote, local):
        remote.failures["a.md"] = VaultNetworkError("offline")
        await local.write("a.md", "text")
        with pytest.raises(VaultNetworkError):
            await engine.upload_file("a.md")
        assert engine.get_stored_hash("a.md") is None

    @pytest.mark.asyncio
    async def test_upload_clears_tombstone(self, engine, local):
        engine.state.locally_deleted.add("a.md")
        await local.write("a.md", "back again")
        await engine.upload_file("a.md")
        assert engine.is_locally_deleted("a.md") is False

    @pytest.mark.asyncio
    async def test_file_synced_event(self, engine, local, events):
        await local.write("a.md", "text")
        await engine.upload_file("a.md")
        assert ("sync:file-synced", {"path": "a.md", "operation": "upload"}) in events


class TestDownload:
    """Tests for FileSyncEngine.download_file."""

    @pytest.mark.asyncio
    async def test_writes_local_file_and_records_hash(self, engine, remote, local):
        remote.put("deep/folder/a.md", "remote text")
        result = await engine.download_file("deep/folder/a.md")
        assert await local.read("deep/folder/a.md") == "remote text"
        assert result.hash == sha256_hex("remote text")
        assert engine.get_stored_hash("deep/folder/a.md") == sha256_hex("remote text")
        assert await engine.has_local_changes("deep/folder/a.md") is False

    @pytest.mark.asyncio
    async def test_missing_remote_file_raises(self, engine):
        with pytest.raises(VaultNotFoundError):
            await engine.download_file("missing.md")

    @pytest.mark.asyncio
    async def test_deferred_persist(self, engine, remote, store):
        remote.put("a.md", "text")
        await engine.download_file("a.md", defer_persist=True)
        reloaded = StateStore("vault-1", store.state_dir)
        assert FileSyncState.from_store(reloaded).file_hashes == {}
        engine.save_sync_state()
        reloaded = StateStore("vault-1", store.state_dir)
        assert "a.md" in FileSyncState.from_store(reloaded).file_hashes


class TestDelete:
    """Tests for FileSyncEngine.delete_file."""

    @pytest.mark.asyncio
    async def test_deletes_remote_and_adds_tombstone(self, engine, remote):
        remote.put("a.md", "text")
        engine.set_stored_hash("a.md", sha256_hex("text"))
        await engine.delete_file("a.md")
        assert "a.md" not in remote.files
        assert engine.is_locally_deleted("a.md") is True
        assert engine.get_stored_hash("a.md") is None

    @pytest.mark.asyncio
    async def test_missing_remote_file_counts_as_deleted(self, engine, remote):
        result = await engine.delete_file("never-uploaded.md")
        assert result.operation == "delete"
        assert remote.calls_of("delete_file") == []
        assert engine.is_locally_deleted("never-uploaded.md") is True

    @pytest.mark.asyncio
    async def test_not_found_on_delete_is_tolerated(self, engine, remote):
        file_id = remote.put("a.md", "text")
        engine.remember_remote_files([RemoteFile("a.md", "h", file_id=file_id)])
        remote.failures["a.md"] = VaultNotFoundError("gone")
        await engine.delete_file("a.md")
        assert engine.is_locally_deleted("a.md") is True


class TestChangeChecks:
    """Tests for has_local_changes and has_remote_changes."""

    @pytest.mark.asyncio
    async def test_local_changes(self, engine, local):
        assert await engine.has_local_changes("a.md") is False
        await local.write("a.md", "v1")
        assert await engine.has_local_changes("a.md") is True
        engine.set_stored_hash("a.md", sha256_hex("v1"))
        assert await engine.has_local_changes("a.md") is False
        await local.delete("a.md")
        assert await engine.has_local_changes("a.md") is True

    @pytest.mark.asyncio
    async def test_remote_changes(self, engine, remote):
        assert await engine.has_remote_changes("a.md") is False
        remote.put("a.md", "v1")
        assert await engine.has_remote_changes("a.md") is True
        engine.set_stored_hash("a.md", sha256_hex("v1"))
        assert await engine.has_remote_changes("a.md") is False
        assert await engine.has_remote_changes("a.md", remote_hash="other") is True


class TestQueuedOperations:
    """Tests for process_queued_operation."""

    @pytest.mark.asyncio
    async def test_create_uploads(self, engine, remote, local):
        await local.write("a.md", "text")
        await engine.process_queued_operation(
            QueuedOperation(path="a.md", kind=OperationKind.CREATE)
        )
        assert remote.content("a.md") == "text"

    @pytest.mark.asyncio
    async def test_delete_removes_remote(self, engine, remote):
        remote.put("a.md", "text")
        await engine.process_queued_operation(
            QueuedOperation(path="a.md", kind=OperationKind.DELETE)
        )
        assert remote.files == {}

    @pytest.mark.asyncio
    async def test_rename_moves_remote_file(self, engine, remote, local):
        remote.put("old.md", "text")
        await local.write("new.md", "text")
        await engine.process_queued_operation(
            QueuedOperation(
                path="new.md", kind=OperationKind.RENAME, previous_path="old.md"
            )
        )
        assert set(remote.files) == {"new.md"}
        assert engine.get_stored_hash("new.md") == sha256_hex("text")

    @pytest.mark.asyncio
    async def test_update_of_vanished_file_is_dropped(self, engine, remote):
        await engine.process_queued_operation(
            QueuedOperation(path="gone.md", kind=OperationKind.UPDATE)
        )
        assert remote.calls == []


class TestLargeFiles:
    """Tests for uploads through TransferOperations."""

    @pytest.fixture
    def transfer_engine(self, remote, local, store):
        transfer = TransferOperations(remote, chunk_size=4, delta_threshold=10)
        return FileSyncEngine(
            "vault-1", remote, local, store, transfer=transfer, chunk_threshold=10
        )

    @pytest.mark.asyncio
    async def test_large_file_is_chunked(self, transfer_engine, remote, local):
        content = "0123456789abcdefghij"
        await local.write("big.md", content)
        await transfer_engine.upload_file("big.md")
        assert len(remote.calls_of("upload_chunk")) == 5
        assert remote.content("big.md") == content

    @pytest.mark.asyncio
    async def test_second_upload_sends_delta(self, transfer_engine, remote, local):
        await local.write("big.md", "line one\nline two\nline three\n")
        await transfer_engine.upload_file("big.md")
        await local.write("big.md", "line one\nline 2\nline three\n")
        await transfer_engine.upload_file("big.md")
        assert remote.calls_of("apply_delta") == ["big.md"]
        assert remote.content("big.md") == "line one\nline 2\nline three\n"

    @pytest.mark.asyncio
    async def test_server_hash_mismatch_falls_back_to_full_upload(
        self, transfer_engine, remote, local, monkeypatch
    ):
        await local.write("big.md", "line one\nline two\nline three\n")
        await transfer_engine.upload_file("big.md")
        apply_delta = AsyncMock(return_value={"hash": "0" * 64})
        monkeypatch.setattr(remote, "apply_delta", apply_delta)
        remote.calls.clear()

        new_content = "line one\nline 2\nline three\n"
        await local.write("big.md", new_content)
        await transfer_engine.upload_file("big.md")

        apply_delta.assert_awaited_once()
        assert len(remote.calls_of("upload_chunk")) == 7
        assert remote.content("big.md") == new_content
        assert transfer_engine.get_stored_hash("big.md") == sha256_hex(new_content)

    @pytest.mark.asyncio
    async def test_unverified_delta_is_never_sent(
        self, transfer_engine, remote, local, monkeypatch
    ):
        await local.write("big.md", "line one\nline two\nline three\n")
        await transfer_engine.upload_file("big.md")
        monkeypatch.setattr(
            "vaultsync.sync.operations.verify_delta",
            Mock(side_effect=VaultDeltaIntegrityError("hash mismatch")),
        )
        remote.calls.clear()

        new_content = "line one\nline 2\nline three\n"
        await local.write("big.md", new_content)
        await transfer_engine.upload_file("big.md")

        assert remote.calls_of("apply_delta") == []
        assert len(remote.calls_of("upload_chunk")) == 7
        assert remote.content("big.md") == new_content
        assert transfer_engine.get_stored_hash("big.md") == sha256_hex(new_content)

    @pytest.mark.asyncio
    async def test_small_file_is_not_chunked(self, transfer_engine, remote, local):
        await local.write("small.md", "tiny")
        await transfer_engine.upload_file("small.md")
        assert remote.calls_of("upload_chunk") == []


class TestStateManagement:
    @pytest.mark.asyncio
    async def test_load_sync_state(self, engine, remote, local, store):
        remote.put("a.md", "text")
        await engine.download_file("a.md")
        fresh = FileSyncEngine("vault-1", remote, local, StateStore("vault-1", store.state_dir))
        fresh.load_sync_state()
        assert fresh.get_stored_hash("a.md") == sha256_hex("text")

    def test_clear_all_keeps_read_only(self, engine):
        engine.set_stored_hash("a.md", "h")
        engine.mark_read_only("ro.md")
        engine.clear_all_sync_state()
        assert engine.get_stored_hash("a.md") is None
        assert engine.is_read_only("ro.md") is True

    def test_clear_sync_state(self, engine):
        engine.set_stored_hash("a.md", "h")
        engine.state.locally_deleted.add("a.md")
        engine.clear_sync_state("a.md")
        assert engine.get_stored_hash("a.md") is None
        assert engine.is_locally_deleted("a.md") is False

    def test_should_chunk(self, engine):
        assert engine.should_chunk(engine.chunk_threshold + 1) is True
        assert engine.should_chunk(engine.chunk_threshold) is False
