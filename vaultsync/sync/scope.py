"""Selective sync: which vault paths take part in synchronization.

Folder patterns are vault-relative. A pattern matches a path if it is the
path itself, a parent folder of the path, or a ``*`` glob matching the path
or one of its parent folders. Exclusions always win; when the include list
is non-empty a path must also match one of its entries.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Iterable, Optional

from ..events import EventBus, SyncEvent
from ..utils import DEFAULT_EXCLUDED_FOLDERS

logger = logging.getLogger(__name__)

_INVALID_PATTERN_CHARS = re.compile(r'[<>:"|?]')


def normalize_folder_path(folder: str) -> str:
    """Trim whitespace and leading slash, and the trailing slash of plain folders.

    Examples:
        >>> normalize_folder_path(" /notes/ ")
        'notes'
        >>> normalize_folder_path("drafts*/")
        'drafts*/'
    """
    normalized = folder.strip()
    if normalized.startswith("/"):
        normalized = normalized[1:]
    if normalized.endswith("/") and "*" not in normalized:
        normalized = normalized[:-1]
    return normalized


def _pattern_to_regex(pattern: str) -> "re.Pattern[str]":
    escaped = re.escape(pattern).replace(r"\*", ".*")
    return re.compile(f"^{escaped}(/.*)?$")


def matches_pattern(path: str, pattern: str) -> bool:
    """Check whether ``path`` is covered by a folder pattern.

    Examples:
        >>> matches_pattern("notes/a.md", "notes")
        True
        >>> matches_pattern("notes2/a.md", "notes")
        False
        >>> matches_pattern("daily-2024/a.md", "daily-*")
        True
    """
    if pattern.endswith("/"):
        pattern = pattern[:-1]
    if path == pattern or path.startswith(pattern + "/"):
        return True
    if "*" in pattern:
        return bool(_pattern_to_regex(pattern).match(path))
    return False


@dataclass
class ScopePreview:
    """How many files a scope configuration keeps and drops."""

    total_files: int = 0
    included_files: int = 0
    excluded_files: int = 0
    included_folders: list[str] = field(default_factory=list)
    excluded_folders: list[str] = field(default_factory=list)


class SelectiveScope:
    """Include/exclude folder rules for one vault.

    The default exclusions are added back whenever the excluded list is
    built or replaced.
    """

    DEFAULT_EXCLUDED_FOLDERS: tuple[str, ...] = DEFAULT_EXCLUDED_FOLDERS

    def __init__(
        self,
        included_folders: Optional[Iterable[str]] = None,
        excluded_folders: Optional[Iterable[str]] = None,
        event_bus: Optional[EventBus] = None,
    ):
        """Initialize the scope.

        Args:
            included_folders: Folder patterns to restrict sync to (empty: all)
            excluded_folders: Folder patterns never synced, defaults are added
            event_bus: Bus receiving ``selective-sync:changed`` on updates
        """
        self.event_bus = event_bus
        self.included_folders: list[str] = []
        self.excluded_folders: list[str] = []
        for folder in included_folders or []:
            self._add_unique(self.included_folders, folder)
        for folder in excluded_folders or []:
            self._add_unique(self.excluded_folders, folder)
        self._ensure_defaults()

    @staticmethod
    def _add_unique(target: list[str], folder: str) -> bool:
        normalized = normalize_folder_path(folder)
        if not normalized or normalized in target:
            return False
        target.append(normalized)
        return True

    def _ensure_defaults(self) -> None:
        for default in self.DEFAULT_EXCLUDED_FOLDERS:
            if default not in self.excluded_folders:
                self.excluded_folders.append(default)

    def _changed(self) -> None:
        logger.debug(
            f"Scope changed: include={self.included_folders} "
            f"exclude={self.excluded_folders}"
        )
        if self.event_bus is not None:
            self.event_bus.emit(SyncEvent.SCOPE_CHANGED, self.get_config())

    # =========================
    # Matching
    # =========================

    def is_excluded(self, path: str) -> bool:
        return any(matches_pattern(path, p) for p in self.excluded_folders)

    def is_included(self, path: str) -> bool:
        return any(matches_pattern(path, p) for p in self.included_folders)

    def should_sync_path(self, path: str) -> bool:
        """Check whether a vault-relative path participates in sync."""
        if self.is_excluded(path):
            return False
        if self.included_folders:
            return self.is_included(path)
        return True

    # =========================
    # Configuration
    # =========================

    def add_excluded_folder(self, folder: str) -> None:
        if self._add_unique(self.excluded_folders, folder):
            self._changed()

    def remove_excluded_folder(self, folder: str) -> None:
        normalized = normalize_folder_path(folder)
        if normalized in self.excluded_folders:
            self.excluded_folders.remove(normalized)
            self._changed()

    def add_included_folder(self, folder: str) -> None:
        if self._add_unique(self.included_folders, folder):
            self._changed()

    def remove_included_folder(self, folder: str) -> None:
        normalized = normalize_folder_path(folder)
        if normalized in self.included_folders:
            self.included_folders.remove(normalized)
            self._changed()

    def set_excluded_folders(self, folders: Iterable[str]) -> None:
        """Replace the excluded list; default exclusions are kept."""
        self.excluded_folders = []
        for folder in folders:
            self._add_unique(self.excluded_folders, folder)
        self._ensure_defaults()
        self._changed()

    def set_included_folders(self, folders: Iterable[str]) -> None:
        self.included_folders = []
        for folder in folders:
            self._add_unique(self.included_folders, folder)
        self._changed()

    def clear_included_folders(self) -> None:
        self.included_folders = []
        self._changed()

    def reset_excluded_folders(self) -> None:
        self.excluded_folders = list(self.DEFAULT_EXCLUDED_FOLDERS)
        self._changed()

    def get_config(self) -> dict[str, list[str]]:
        return {
            "included_folders": list(self.included_folders),
            "excluded_folders": list(self.excluded_folders),
        }

    def is_using_default_exclusions_only(self) -> bool:
        return sorted(self.excluded_folders) == sorted(self.DEFAULT_EXCLUDED_FOLDERS)

    def is_selective_sync_active(self) -> bool:
        """True if the user restricted or extended the default scope."""
        return bool(self.included_folders) or not self.is_using_default_exclusions_only()

    # =========================
    # Helpers
    # =========================

    @staticmethod
    def validate_pattern(pattern: str) -> tuple[bool, Optional[str]]:
        """Validate a folder pattern entered by the user.

        Args:
            pattern: Pattern to check

        Returns:
            Tuple of (valid, error message or None)
        """
        if not pattern or not pattern.strip():
            return False, "Pattern cannot be empty"
        normalized = normalize_folder_path(pattern)
        if _INVALID_PATTERN_CHARS.search(normalized):
            return False, "Pattern contains invalid characters"
        if "//" in normalized:
            return False, "Pattern contains double slashes"
        return True, None

    def get_sync_scope_preview(self, paths: Iterable[str]) -> ScopePreview:
        """Count how many of ``paths`` would be synced."""
        preview = ScopePreview(
            included_folders=list(self.included_folders),
            excluded_folders=list(self.excluded_folders),
        )
        for path in paths:
            preview.total_files += 1
            if self.should_sync_path(path):
                preview.included_files += 1
            else:
                preview.excluded_files += 1
        return preview

    def files_to_sync(self, paths: Iterable[str]) -> list[str]:
        return [p for p in paths if self.should_sync_path(p)]

    def files_to_exclude(self, paths: Iterable[str]) -> list[str]:
        return [p for p in paths if not self.should_sync_path(p)]
