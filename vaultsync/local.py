"""Filesystem-backed local vault store."""

import logging
import os
from pathlib import Path, PurePosixPath
from typing import Optional

from .exceptions import VaultStorageError, VaultValidationError
from .sync.scanner import DirectoryScanner, LocalFile

logger = logging.getLogger(__name__)


class LocalVault:
    """Read and write vault files addressed by vault-relative paths.

    All methods are coroutines so the sync engine can treat every local
    read and write as a suspension point. OS errors surface as
    :class:`VaultStorageError`.
    """

    def __init__(self, root: Path, include_hidden: bool = False):
        """Initialize the store.

        Args:
            root: Vault root directory (created on first write)
            include_hidden: Whether dot files take part in listings
        """
        self.root = Path(root).resolve()
        self.scanner = DirectoryScanner(include_hidden=include_hidden)

    def resolve(self, path: str) -> Path:
        """Map a vault-relative path to an absolute path inside the vault.

        Raises:
            VaultValidationError: If the path escapes the vault root
        """
        relative = PurePosixPath(path)
        if relative.is_absolute() or ".." in relative.parts or not relative.parts:
            raise VaultValidationError(f"Invalid vault path: {path!r}")
        return self.root.joinpath(*relative.parts)

    async def list_files(self) -> list[LocalFile]:
        """Enumerate every file of the vault."""
        if not self.root.exists():
            return []
        return self.scanner.scan_local(self.root)

    async def exists(self, path: str) -> bool:
        return self.resolve(path).is_file()

    async def stat(self, path: str) -> Optional[LocalFile]:
        """Metadata for one file, None if it does not exist."""
        file_path = self.resolve(path)
        if not file_path.is_file():
            return None
        try:
            return LocalFile.from_path(file_path, self.root)
        except OSError as e:
            raise VaultStorageError(f"Failed to stat {path}: {e}") from e

    async def read(self, path: str) -> str:
        """Read a file as UTF-8 text.

        Raises:
            VaultStorageError: If the file cannot be read
        """
        try:
            with open(self.resolve(path), encoding="utf-8", newline="") as f:
                return f.read()
        except (OSError, UnicodeDecodeError) as e:
            raise VaultStorageError(
                f"Failed to read {path}: {e}", context={"path": path}
            ) from e

    async def write(self, path: str, content: str) -> None:
        """Create or overwrite a file, creating parent folders as needed."""
        file_path = self.resolve(path)
        try:
            file_path.parent.mkdir(parents=True, exist_ok=True)
            # newline="" keeps line endings byte-identical for hashing
            with open(file_path, "w", encoding="utf-8", newline="") as f:
                f.write(content)
        except OSError as e:
            raise VaultStorageError(
                f"Failed to write {path}: {e}", context={"path": path}
            ) from e
        logger.debug(f"Wrote {path} ({len(content)} chars)")

    async def delete(self, path: str) -> bool:
        """Delete a file.

        Returns:
            True if the file existed
        """
        file_path = self.resolve(path)
        try:
            file_path.unlink()
        except FileNotFoundError:
            return False
        except OSError as e:
            raise VaultStorageError(
                f"Failed to delete {path}: {e}", context={"path": path}
            ) from e
        self._prune_empty_parents(file_path.parent)
        return True

    async def rename(self, old_path: str, new_path: str) -> None:
        """Move a file within the vault."""
        source = self.resolve(old_path)
        target = self.resolve(new_path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            os.replace(source, target)
        except OSError as e:
            raise VaultStorageError(
                f"Failed to rename {old_path} to {new_path}: {e}",
                context={"path": old_path},
            ) from e
        self._prune_empty_parents(source.parent)

    def _prune_empty_parents(self, directory: Path) -> None:
        """Remove empty folders left behind, up to the vault root."""
        while directory != self.root and self.root in directory.parents:
            try:
                directory.rmdir()
            except OSError:
                # Not empty (or not removable)
                return
            directory = directory.parent
