"""Sync modes and reconciliation strategies."""

from enum import Enum


class SyncMode(str, Enum):
    """Steady-state behaviour of the orchestrator."""

    SMART_SYNC = "smart_sync"
    """Three-way sync in both directions, conflicts are recorded"""

    PULL_ALL = "pull_all"
    """Remote is authoritative, local files are replaced"""

    PUSH_ALL = "push_all"
    """Local is authoritative, remote files are replaced"""

    MANUAL = "manual"
    """No automatic passes, syncs run only on request"""

    @property
    def is_automatic(self) -> bool:
        """Whether drift checks may trigger a pass on their own."""
        return self != SyncMode.MANUAL


class InitialSyncStrategy(str, Enum):
    """How two previously independent file sets are reconciled."""

    START_FRESH = "start_fresh"
    """Replace local files with the remote vault"""

    UPLOAD_LOCAL = "upload_local"
    """Replace remote files with the local vault"""

    SMART_MERGE = "smart_merge"
    """Keep both sides, differing files get a local conflict copy"""
