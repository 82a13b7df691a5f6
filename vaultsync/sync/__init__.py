"""Sync engine for vaultsync - three-way sync, queueing and conflicts."""

from .comparator import SyncAction, SyncDecision, ThreeWayComparator, is_conflict
from .conflict import (
    ConflictRecord,
    ConflictResolver,
    ConflictType,
    Resolution,
    conflict_copy_path,
)
from .delta import (
    Delta,
    DeltaOperation,
    DeltaOpType,
    apply_delta,
    compute_delta,
    should_use_delta,
    verify_delta,
)
from .engine import FileSyncEngine, FileSyncResult
from .initial import (
    InitialSyncAnalysis,
    InitialSyncCoordinator,
    InitialSyncRecord,
    InitialSyncResult,
)
from .modes import InitialSyncStrategy, SyncMode
from .operations import TransferOperations
from .orchestrator import OrchestratorState, SyncOrchestrator, SyncResult
from .queue import OperationKind, OperationStatus, QueuedOperation, SyncQueue
from .scanner import DirectoryScanner, LocalFile, RemoteFile
from .scheduler import CancellationToken, Scheduler, Ticker
from .scope import SelectiveScope, matches_pattern
from .settings import SyncSettings, load_settings
from .state import FileSyncState, StateStore
from .watcher import (
    ChangeAction,
    ChangeDebouncer,
    FileChangeEvent,
    LocalChangePoller,
)

__all__ = [
    "SyncOrchestrator",
    "OrchestratorState",
    "SyncResult",
    "SyncMode",
    "InitialSyncStrategy",
    "SyncSettings",
    "load_settings",
    "FileSyncEngine",
    "FileSyncResult",
    "SyncQueue",
    "QueuedOperation",
    "OperationKind",
    "OperationStatus",
    "ConflictResolver",
    "ConflictRecord",
    "ConflictType",
    "Resolution",
    "conflict_copy_path",
    "InitialSyncCoordinator",
    "InitialSyncAnalysis",
    "InitialSyncRecord",
    "InitialSyncResult",
    "Delta",
    "DeltaOperation",
    "DeltaOpType",
    "compute_delta",
    "apply_delta",
    "verify_delta",
    "should_use_delta",
    "SelectiveScope",
    "matches_pattern",
    "ThreeWayComparator",
    "SyncAction",
    "SyncDecision",
    "is_conflict",
    "TransferOperations",
    "DirectoryScanner",
    "LocalFile",
    "RemoteFile",
    "StateStore",
    "FileSyncState",
    "CancellationToken",
    "Scheduler",
    "Ticker",
    "ChangeAction",
    "ChangeDebouncer",
    "FileChangeEvent",
    "LocalChangePoller",
]
