"""Tests for the sync orchestrator."""

import asyncio
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from vaultsync.exceptions import (
    VaultAuthenticationError,
    VaultNetworkError,
    VaultValidationError,
)
from vaultsync.sync.modes import InitialSyncStrategy, SyncMode
from vaultsync.sync.orchestrator import (
    DRIFT_TICKER,
    QUEUE_TICKER,
    OrchestratorState,
    SyncOrchestrator,
)
from vaultsync.sync.queue import OperationKind
from vaultsync.sync.settings import SyncSettings
from vaultsync.sync.state import last_sync_timestamp_key
from vaultsync.sync.watcher import ChangeAction, FileChangeEvent
from vaultsync.utils import sha256_hex


class FakeMonotonic:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def monotonic():
    return FakeMonotonic()


@pytest.fixture
def settings(vault_dir):
    return SyncSettings(
        vault_id="vault-1",
        vault_path=str(vault_dir),
        retry_base_delay=0.01,
        debounce_delay=0.01,
        sync_interval=60.0,
    )


@pytest_asyncio.fixture
async def orchestrator(remote, local, settings, store, event_bus, monotonic):
    orch = SyncOrchestrator(
        remote,
        local,
        settings,
        store=store,
        event_bus=event_bus,
        clock=lambda: remote.now,
        monotonic=monotonic,
    )
    orch.initialize()
    yield orch
    await orch.stop()


async def synced(orch, remote, local, path, content):
    """Create ``path`` on both sides as if it had been synced."""
    remote.put(path, content)
    await local.write(path, content)
    orch.engine.set_stored_hash(path, sha256_hex(content))


class TestLifecycle:
    """Tests for initialize, start, stop and set_mode."""

    @pytest.mark.asyncio
    async def test_pass_requires_initialize(self, remote, local, settings):
        orch = SyncOrchestrator(remote, local, settings)
        with pytest.raises(VaultValidationError, match="not initialized"):
            await orch.bidirectional_sync()

    def test_initialize_requires_vault_id(self, remote, local):
        orch = SyncOrchestrator(remote, local, SyncSettings())
        with pytest.raises(VaultValidationError, match="vault id"):
            orch.initialize()

    @pytest.mark.asyncio
    async def test_start_and_stop(self, orchestrator):
        await orchestrator.start()
        assert orchestrator.state == OrchestratorState.RUNNING
        assert orchestrator.scheduler.is_running(QUEUE_TICKER) is True
        assert orchestrator.scheduler.is_running(DRIFT_TICKER) is True
        assert orchestrator.queue.is_processing is True

        with pytest.raises(VaultValidationError):
            await orchestrator.start()

        await orchestrator.stop()
        assert orchestrator.state == OrchestratorState.STOPPED
        assert orchestrator.scheduler.is_running(QUEUE_TICKER) is False
        assert orchestrator.scheduler.is_running(DRIFT_TICKER) is False

    @pytest.mark.asyncio
    async def test_no_drift_ticker_in_manual_mode(self, orchestrator, settings):
        settings.sync_mode = SyncMode.MANUAL
        await orchestrator.start()
        assert orchestrator.scheduler.is_running(DRIFT_TICKER) is False

    @pytest.mark.asyncio
    async def test_start_runs_configured_initial_sync(
        self, orchestrator, settings, remote, local
    ):
        remote.put("welcome.md", "hello\n")
        settings.initial_sync_strategy = InitialSyncStrategy.START_FRESH
        await orchestrator.start()
        assert await local.read("welcome.md") == "hello\n"
        assert orchestrator.initial_sync.needs_initial_sync("vault-1") is False

    @pytest.mark.asyncio
    async def test_start_replays_persisted_queue(self, orchestrator, local, remote):
        await local.write("a.md", "queued\n")
        orchestrator.store.set(
            "syncQueue",
            [{"path": "a.md", "kind": "create", "status": "active"}],
        )
        await orchestrator.start()
        assert await orchestrator.queue.wait_idle(timeout=2) is True
        assert remote.content("a.md") == "queued\n"

    @pytest.mark.asyncio
    async def test_set_mode(self, orchestrator, events):
        await orchestrator.start()
        await orchestrator.set_mode(SyncMode.MANUAL)
        assert ("sync:mode-changed", {"old": "smart_sync", "new": "manual"}) in events
        assert orchestrator.scheduler.is_running(DRIFT_TICKER) is False

        await orchestrator.set_mode(SyncMode.PUSH_ALL)
        assert orchestrator.scheduler.is_running(DRIFT_TICKER) is True

    @pytest.mark.asyncio
    async def test_set_same_mode_is_silent(self, orchestrator, events):
        await orchestrator.set_mode(SyncMode.SMART_SYNC)
        assert not any(name == "sync:mode-changed" for name, _ in events)


class TestLocalChanges:
    """Tests for the debounced change path."""

    @pytest.mark.asyncio
    async def test_change_is_queued(self, orchestrator):
        await orchestrator.handle_file_change(FileChangeEvent("a.md", ChangeAction.MODIFY))
        ops = orchestrator.queue.get_queue()
        assert [(op.path, op.kind) for op in ops] == [("a.md", OperationKind.UPDATE)]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("mode", [SyncMode.PULL_ALL, SyncMode.MANUAL])
    async def test_change_not_queued(self, orchestrator, settings, mode):
        settings.sync_mode = mode
        await orchestrator.handle_file_change(FileChangeEvent("a.md", ChangeAction.MODIFY))
        assert orchestrator.queue.get_queue() == []

    @pytest.mark.asyncio
    async def test_notified_change_is_uploaded(self, orchestrator, local, remote):
        await orchestrator.start()
        await local.write("new.md", "typed\n")
        orchestrator.notify_change(FileChangeEvent("new.md", ChangeAction.CREATE))
        orchestrator.notify_change(FileChangeEvent("new.md", ChangeAction.MODIFY))
        await asyncio.sleep(0.05)
        assert await orchestrator.queue.wait_idle(timeout=2) is True
        assert remote.content("new.md") == "typed\n"
        assert remote.calls_of("create_file") == ["new.md"]


class TestBidirectionalSync:
    """Tests for bidirectional_sync."""

    @pytest.mark.asyncio
    async def test_local_edit_is_uploaded(self, orchestrator, remote, local):
        await synced(orchestrator, remote, local, "a.md", "v1\n")
        await local.write("a.md", "v2\n")

        result = await orchestrator.bidirectional_sync()

        assert result.success is True
        assert result.files_uploaded == 1
        assert remote.content("a.md") == "v2\n"
        assert orchestrator.engine.get_stored_hash("a.md") == sha256_hex("v2\n")

    @pytest.mark.asyncio
    async def test_crlf_download_is_stable(self, orchestrator, remote, local):
        remote.put("win.md", "line1\r\nline2\r\n")

        first = await orchestrator.bidirectional_sync()
        second = await orchestrator.bidirectional_sync()

        assert first.files_downloaded == 1
        assert second.files_uploaded == 0
        assert second.files_downloaded == 0
        assert remote.content("win.md") == "line1\r\nline2\r\n"
        assert remote.calls_of("update_file") == []

    @pytest.mark.asyncio
    async def test_edit_of_remotely_deleted_file_is_recreated(
        self, orchestrator, remote, local
    ):
        await synced(orchestrator, remote, local, "x.md", "v1\n")
        await orchestrator.bidirectional_sync()
        # Another device deletes the file, then it is edited here
        del remote.files["x.md"]
        await local.write("x.md", "v2\n")

        result = await orchestrator.bidirectional_sync()

        assert result.errors == []
        assert remote.content("x.md") == "v2\n"
        assert orchestrator.engine.get_stored_hash("x.md") == sha256_hex("v2\n")

    @pytest.mark.asyncio
    async def test_remote_edit_is_downloaded(self, orchestrator, remote, local):
        await synced(orchestrator, remote, local, "a.md", "v1\n")
        remote.put("a.md", "v2\n")

        result = await orchestrator.bidirectional_sync()

        assert result.files_downloaded == 1
        assert await local.read("a.md") == "v2\n"

    @pytest.mark.asyncio
    async def test_divergent_edits_become_conflict(
        self, orchestrator, remote, local, events
    ):
        await synced(orchestrator, remote, local, "a.md", "v1\n")
        await local.write("a.md", "local\n")
        remote.put("a.md", "remote\n")

        result = await orchestrator.bidirectional_sync()

        assert result.conflicts == 1
        assert result.success is False
        assert await local.read("a.md") == "local\n"
        assert remote.content("a.md") == "remote\n"
        records = orchestrator.resolver.get_conflicts()
        assert [r.path for r in records] == ["a.md"]
        assert any(name == "conflict:detected" for name, _ in events)

    @pytest.mark.asyncio
    async def test_identical_edits_are_recorded(self, orchestrator, remote, local):
        await synced(orchestrator, remote, local, "a.md", "v1\n")
        await local.write("a.md", "same\n")
        remote.put("a.md", "same\n")
        calls_before = len(remote.calls)

        result = await orchestrator.bidirectional_sync()

        assert result.success is True
        assert orchestrator.engine.get_stored_hash("a.md") == sha256_hex("same\n")
        assert remote.calls[calls_before:] == [("list_files", "")]

    @pytest.mark.asyncio
    async def test_remote_only_files_download_shallowest_first(
        self, orchestrator, remote, local
    ):
        remote.put("x/y/z.md", "deep")
        remote.put("top.md", "top")
        remote.put("x/mid.md", "mid")

        result = await orchestrator.bidirectional_sync()

        assert result.files_downloaded == 3
        assert remote.calls_of("get_file_by_path") == ["top.md", "x/mid.md", "x/y/z.md"]
        assert await local.read("x/y/z.md") == "deep"

    @pytest.mark.asyncio
    async def test_tombstoned_and_excluded_files_are_not_downloaded(
        self, orchestrator, remote, local
    ):
        remote.put("gone.md", "deleted here on purpose")
        remote.put(".obsidian/app.json", "{}")
        orchestrator.engine.state.locally_deleted.add("gone.md")

        result = await orchestrator.bidirectional_sync()

        assert result.files_processed == 0
        assert await local.exists("gone.md") is False
        assert await local.exists(".obsidian/app.json") is False

    @pytest.mark.asyncio
    async def test_records_last_sync_timestamp(self, orchestrator, store):
        await orchestrator.bidirectional_sync()
        assert store.get(last_sync_timestamp_key("vault-1")) == "2024-01-01T00:00:00.000Z"

    @pytest.mark.asyncio
    async def test_file_errors_are_collected(self, orchestrator, remote, local):
        await local.write("a.md", "a")
        await local.write("b.md", "b")
        remote.failures["a.md"] = VaultNetworkError("offline")

        result = await orchestrator.bidirectional_sync()

        assert result.success is False
        assert result.errors == ["a.md: offline"]
        assert remote.content("b.md") == "b"

    @pytest.mark.asyncio
    async def test_auth_error_aborts_pass(self, orchestrator, remote, local, events):
        await local.write("a.md", "a")
        await local.write("b.md", "b")
        remote.failures["a.md"] = VaultAuthenticationError("expired")

        result = await orchestrator.bidirectional_sync()

        assert result.success is False
        assert result.errors == ["expired"]
        assert "b.md" not in remote.files
        assert events[-1] == (
            "sync:error",
            {"type": "bidirectional_sync", "error": "expired"},
        )
        assert orchestrator.is_syncing is False

    @pytest.mark.asyncio
    async def test_overlapping_pass_is_rejected(self, orchestrator, remote):
        gate = asyncio.Event()

        async def blocked_listing(vault_id):
            await gate.wait()
            return []

        remote.list_files = blocked_listing
        first = asyncio.create_task(orchestrator.bidirectional_sync())
        await asyncio.sleep(0.01)
        with pytest.raises(VaultValidationError, match="already in progress"):
            await orchestrator.bidirectional_sync()
        gate.set()
        assert (await first).success is True


class TestOtherPasses:
    """Tests for sync_all, pull, push and force_sync."""

    @pytest.mark.asyncio
    async def test_sync_all_uploads_changed_files(self, orchestrator, remote, local):
        await synced(orchestrator, remote, local, "same.md", "same")
        await local.write("new.md", "new")

        result = await orchestrator.sync_all()

        assert result.files_processed == 2
        assert result.files_uploaded == 1
        assert remote.content("new.md") == "new"

    @pytest.mark.asyncio
    async def test_replace_local_with_remote(self, orchestrator, remote, local):
        remote.put("a.md", "remote a")
        remote.put("b.md", "same")
        await local.write("a.md", "local a")
        await local.write("b.md", "same")

        result = await orchestrator.replace_local_with_remote()

        assert result.files_downloaded == 1
        assert await local.read("a.md") == "remote a"
        assert await local.read("a.conflict-2024-01-01T00-00-00.md") == "local a"
        assert orchestrator.engine.get_stored_hash("b.md") == sha256_hex("same")

    @pytest.mark.asyncio
    async def test_replace_remote_with_local(self, orchestrator, remote, local):
        await synced(orchestrator, remote, local, "a.md", "local a")
        remote.put("a.md", "changed remotely")
        await local.write("b.md", "only local")

        result = await orchestrator.replace_remote_with_local()

        assert result.files_uploaded == 2
        assert remote.content("a.md") == "local a"
        assert remote.content("b.md") == "only local"

    @pytest.mark.asyncio
    async def test_force_sync_recomputes_state(self, orchestrator, remote, local):
        await synced(orchestrator, remote, local, "a.md", "text")
        orchestrator.engine.set_stored_hash("a.md", "stale")

        result = await orchestrator.force_sync()

        assert result.success is True
        assert result.conflicts == 0
        assert orchestrator.engine.get_stored_hash("a.md") == sha256_hex("text")

    @pytest.mark.asyncio
    async def test_force_sync_in_push_mode(self, orchestrator, settings, remote, local):
        settings.sync_mode = SyncMode.PUSH_ALL
        remote.put("a.md", "remote")
        await local.write("a.md", "local")

        await orchestrator.force_sync()

        assert remote.content("a.md") == "local"

    @pytest.mark.asyncio
    async def test_force_sync_in_manual_mode_uploads_only(
        self, orchestrator, settings, remote, local
    ):
        settings.sync_mode = SyncMode.MANUAL
        remote.put("remote-only.md", "remote")
        await local.write("a.md", "local")

        result = await orchestrator.force_sync()

        assert result.files_uploaded == 1
        assert result.files_downloaded == 0
        assert remote.content("a.md") == "local"
        assert not await local.exists("remote-only.md")

    @pytest.mark.asyncio
    async def test_run_initial_sync(self, orchestrator, remote, local):
        await local.write("a.md", "mine")
        result = await orchestrator.run_initial_sync(InitialSyncStrategy.UPLOAD_LOCAL)
        assert result.success is True
        assert remote.content("a.md") == "mine"
        assert orchestrator.is_syncing is False


class TestDriftDetection:
    """Tests for check_for_drift."""

    @pytest.mark.asyncio
    async def test_full_check_triggers_sync(self, orchestrator, remote, local, events):
        remote.put("new.md", "from elsewhere")

        drifted = await orchestrator.check_for_drift()

        assert drifted == ["new.md"]
        assert ("sync:drift-detected", {"drift_count": 1, "files": ["new.md"]}) in events
        assert await local.read("new.md") == "from elsewhere"

    @pytest.mark.asyncio
    async def test_manual_mode_only_reports(self, orchestrator, settings, remote, local):
        settings.sync_mode = SyncMode.MANUAL
        remote.put("new.md", "from elsewhere")
        assert await orchestrator.check_for_drift() == ["new.md"]
        assert await local.exists("new.md") is False

    @pytest.mark.asyncio
    async def test_minimum_spacing(self, orchestrator, settings, remote, monotonic):
        settings.auto_sync = False

        def checks():
            return len(remote.calls_of("list_files")) + len(
                remote.calls_of("get_changed_files")
            )

        assert await orchestrator.check_for_drift() == []
        assert checks() == 1
        remote.advance(60)
        remote.put("new.md", "x")

        monotonic.now += 30
        assert await orchestrator.check_for_drift() == []
        assert checks() == 1

        monotonic.now += settings.min_drift_check_spacing
        assert await orchestrator.check_for_drift() == ["new.md"]
        assert checks() == 2

        await orchestrator.check_for_drift(force=True)
        assert checks() == 3

    @pytest.mark.asyncio
    async def test_incremental_check(self, orchestrator, settings, remote, local, store):
        settings.auto_sync = False
        await synced(orchestrator, remote, local, "old.md", "old")
        store.set(last_sync_timestamp_key("vault-1"), "2024-01-01T00:00:00.000Z")
        remote.advance(60)
        remote.put("fresh.md", "fresh")
        remote.put("old.md", "old")

        drifted = await orchestrator.check_for_drift()

        assert drifted == ["fresh.md"]
        assert len(remote.calls_of("get_changed_files")) == 1
        assert remote.calls_of("list_files") == []
        assert store.get(last_sync_timestamp_key("vault-1")) == "2024-01-01T00:01:00.000Z"

    @pytest.mark.asyncio
    async def test_full_check_reports_stale_and_missing(
        self, orchestrator, settings, remote, local
    ):
        settings.auto_sync = False
        await synced(orchestrator, remote, local, "edited.md", "v1")
        remote.put("edited.md", "v2")
        await local.write("unpushed.md", "local only")
        remote.put("tombstoned.md", "x")
        orchestrator.engine.state.locally_deleted.add("tombstoned.md")

        drifted = await orchestrator.check_for_drift()

        assert sorted(drifted) == ["edited.md", "unpushed.md"]

    @pytest.mark.asyncio
    async def test_failed_check(self, orchestrator, remote, events):
        remote.list_files = AsyncMock(side_effect=VaultNetworkError("offline"))
        assert await orchestrator.check_for_drift() == []
        assert events[-1] == ("sync:error", {"type": "drift_check", "error": "offline"})

    @pytest.mark.asyncio
    async def test_handle_reconnection(self, orchestrator, settings, remote, local):
        settings.auto_sync = False
        await local.write("offline-edit.md", "written offline")
        orchestrator.queue.enqueue("offline-edit.md", OperationKind.CREATE)

        await orchestrator.handle_reconnection()

        assert remote.content("offline-edit.md") == "written offline"
        assert orchestrator.queue.get_queue() == []


class TestStatus:
    @pytest.mark.asyncio
    async def test_get_status(self, orchestrator, remote, local):
        await synced(orchestrator, remote, local, "a.md", "a")
        status = orchestrator.get_status()
        assert status["state"] == "stopped"
        assert status["vault_id"] == "vault-1"
        assert status["mode"] == "smart_sync"
        assert status["tracked_files"] == 1
        assert status["queue"]["total"] == 0
        assert status["conflicts"] == 0
        assert status["initial_sync"] is None
        assert ".obsidian" in status["scope"]["excluded_folders"]

    def test_status_before_initialize(self, remote, local, settings):
        status = SyncOrchestrator(remote, local, settings).get_status()
        assert status["vault_id"] is None
        assert "queue" not in status
