"""File records and directory scanning for sync operations."""

import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from ..utils import parse_iso_timestamp
from .scope import SelectiveScope

logger = logging.getLogger(__name__)


@dataclass
class LocalFile:
    """Represents a local file with metadata."""

    path: Path
    """Absolute path to the file"""

    relative_path: str
    """Vault-relative path (using forward slashes for cross-platform compatibility)"""

    size: int
    """File size in bytes"""

    mtime: float
    """Last modification time (Unix timestamp)"""

    @classmethod
    def from_path(cls, file_path: Path, base_path: Path) -> "LocalFile":
        """Create LocalFile from a path.

        Args:
            file_path: Absolute path to the file
            base_path: Vault root for calculating relative paths

        Returns:
            LocalFile instance
        """
        stat = file_path.stat()
        # Use as_posix() to ensure forward slashes on all platforms
        relative_path = file_path.relative_to(base_path).as_posix()
        return cls(
            path=file_path,
            relative_path=relative_path,
            size=stat.st_size,
            mtime=stat.st_mtime,
        )


@dataclass
class RemoteFile:
    """Represents a remote file from a listing."""

    path: str
    """Vault-relative path"""

    hash: str
    """SHA-256 of the remote content"""

    updated_at: Optional[str] = None
    """ISO timestamp of the last remote modification"""

    size: int = 0
    """File size in bytes"""

    file_id: Optional[str] = None
    """Remote identifier used by update and delete calls"""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RemoteFile":
        """Create RemoteFile from an API listing entry."""
        file_id = data.get("file_id", data.get("id"))
        return cls(
            path=data["path"],
            hash=data.get("hash", ""),
            updated_at=data.get("updated_at"),
            size=int(data.get("size_bytes", data.get("size")) or 0),
            file_id=str(file_id) if file_id is not None else None,
        )

    @property
    def modified(self) -> Optional[datetime]:
        """Last modification time as aware UTC datetime."""
        return parse_iso_timestamp(self.updated_at)

    @property
    def mtime(self) -> Optional[float]:
        """Last modification time (Unix timestamp)."""
        modified = self.modified
        return modified.timestamp() if modified else None


class DirectoryScanner:
    """Scans a vault directory and builds file lists.

    Hidden files are skipped unless ``include_hidden`` is set; selective
    scope rules are applied when a scope is given.

    Examples:
        >>> scanner = DirectoryScanner()
        >>> files = scanner.scan_local(Path("/vault"))
    """

    def __init__(
        self,
        scope: Optional[SelectiveScope] = None,
        include_hidden: bool = False,
    ):
        """Initialize directory scanner.

        Args:
            scope: Selective scope rules (None: every file is in scope)
            include_hidden: Whether to include files/folders starting with dot
        """
        self.scope = scope
        self.include_hidden = include_hidden

    def should_ignore(self, path: Path, base_path: Path, is_dir: bool = False) -> bool:
        """Check if a path should be skipped.

        Args:
            path: Path to check
            base_path: Vault root for relative path calculation
            is_dir: Whether the path is a directory

        Returns:
            True if path should be skipped
        """
        if not self.include_hidden and path.name.startswith("."):
            return True
        if self.scope is not None and not is_dir:
            relative_path = path.relative_to(base_path).as_posix()
            if not self.scope.should_sync_path(relative_path):
                logger.debug(f"Ignoring (out of scope): {relative_path}")
                return True
        return False

    def scan_local(
        self, directory: Path, base_path: Optional[Path] = None
    ) -> list[LocalFile]:
        """Recursively scan a local directory.

        Args:
            directory: Directory to scan
            base_path: Vault root for calculating relative paths (defaults to directory)

        Returns:
            List of LocalFile objects
        """
        if base_path is None:
            base_path = directory

        files: list[LocalFile] = []
        try:
            for item in sorted(directory.iterdir()):
                is_dir = item.is_dir()
                if self.should_ignore(item, base_path, is_dir=is_dir):
                    continue
                if item.is_file():
                    try:
                        files.append(LocalFile.from_path(item, base_path))
                    except OSError:
                        # Skip files we can't stat
                        continue
                elif is_dir:
                    files.extend(self.scan_local(item, base_path))
        except PermissionError as e:
            logger.warning(f"Permission denied: {e}")

        return files
