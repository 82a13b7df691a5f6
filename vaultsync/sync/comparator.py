"""Three-way comparison logic for sync operations.

Each side's content hash is compared with the stored hash (the hash the
path had when it was last synchronized) rather than with the other side.
That tells "I changed" apart from "they changed" and "both changed".
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class SyncAction(str, Enum):
    """Actions that can be taken during sync."""

    UPLOAD = "upload"
    """Upload local file to remote"""

    DOWNLOAD = "download"
    """Download remote file to local"""

    SKIP = "skip"
    """Skip file (no action needed)"""

    RECORD = "record"
    """Both sides hold the same new content, only the stored hash is updated"""

    CONFLICT = "conflict"
    """Both sides changed independently"""


@dataclass
class SyncDecision:
    """Represents a decision about how to sync a file."""

    action: SyncAction
    """Action to take"""

    reason: str
    """Human-readable reason for this decision"""

    relative_path: str
    """Vault-relative path of the file"""

    local_hash: Optional[str] = None
    remote_hash: Optional[str] = None
    stored_hash: Optional[str] = None


def is_conflict(
    local_hash: Optional[str],
    remote_hash: Optional[str],
    stored_hash: Optional[str],
) -> bool:
    """Check for a true three-way conflict.

    A conflict exists only if both sides diverged from the stored hash and
    did not converge on the same content.

    Examples:
        >>> is_conflict("h2", "h3", "h1")
        True
        >>> is_conflict("h2", "h1", "h1")
        False
        >>> is_conflict("h2", "h2", "h1")
        False
    """
    return (
        local_hash != stored_hash
        and remote_hash != stored_hash
        and local_hash != remote_hash
    )


class ThreeWayComparator:
    """Decides the sync action for a path from its three hashes."""

    def compare(
        self,
        path: str,
        local_hash: Optional[str],
        remote_hash: Optional[str],
        stored_hash: Optional[str],
        locally_deleted: bool = False,
    ) -> SyncDecision:
        """Compare a single file and determine action.

        Args:
            path: Vault-relative path
            local_hash: Hash of the local content (None if absent locally)
            remote_hash: Hash of the remote content (None if absent remotely)
            stored_hash: Last synchronized hash (None if never synced)
            locally_deleted: Whether the path carries a tombstone

        Returns:
            SyncDecision for this file
        """

        def decision(action: SyncAction, reason: str) -> SyncDecision:
            return SyncDecision(
                action=action,
                reason=reason,
                relative_path=path,
                local_hash=local_hash,
                remote_hash=remote_hash,
                stored_hash=stored_hash,
            )

        # Case 1: File only exists locally
        if local_hash is not None and remote_hash is None:
            return decision(SyncAction.UPLOAD, "File only exists locally")

        # Case 2: File only exists remotely
        if remote_hash is not None and local_hash is None:
            if locally_deleted:
                return decision(SyncAction.SKIP, "File was deleted locally")
            return decision(SyncAction.DOWNLOAD, "File only exists remotely")

        # Should never happen
        if local_hash is None:
            return decision(SyncAction.SKIP, "No file found")

        # Case 3: File exists in both locations
        local_changed = local_hash != stored_hash
        remote_changed = remote_hash != stored_hash

        if not local_changed and not remote_changed:
            return decision(SyncAction.SKIP, "No changes since last sync")
        if local_changed and not remote_changed:
            return decision(SyncAction.UPLOAD, "Local file changed")
        if remote_changed and not local_changed:
            return decision(SyncAction.DOWNLOAD, "Remote file changed")
        if local_hash == remote_hash:
            return decision(SyncAction.RECORD, "Both sides changed identically")
        return decision(SyncAction.CONFLICT, "Both sides changed independently")
