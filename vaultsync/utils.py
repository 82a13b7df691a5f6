"""Utility functions for vaultsync."""

import hashlib
from datetime import datetime, timezone
from typing import Optional, Union

# =============================================================================
# Constants for sync operations
# =============================================================================

# Files above this size are handed to the chunked transfer (5 MB)
DEFAULT_CHUNK_THRESHOLD: int = 5 * 1024 * 1024

# Chunk size for chunked uploads (1 MB)
DEFAULT_CHUNK_SIZE: int = 1024 * 1024

# Delta encoding is only worth it above this size (1 MB)
DEFAULT_DELTA_THRESHOLD: int = 1024 * 1024

# Retry configuration for transient errors
DEFAULT_MAX_RETRIES: int = 3
DEFAULT_RETRY_DELAY: float = 1.0  # seconds
DEFAULT_MAX_RETRY_DELAY: float = 60.0  # seconds

# Queue concurrency and reconciliation batch size
DEFAULT_MAX_CONCURRENT: int = 5
DEFAULT_BATCH_SIZE: int = 5

# Drift detection cadence
DEFAULT_DRIFT_CHECK_INTERVAL: float = 120.0  # seconds
DEFAULT_MIN_DRIFT_CHECK_SPACING: float = 90.0  # seconds

# Debounce window for local change bursts
DEFAULT_DEBOUNCE_DELAY: float = 0.5  # seconds

# Folders never synced unless the user changes the defaults
DEFAULT_EXCLUDED_FOLDERS: tuple[str, ...] = (".obsidian", ".trash")


# =============================================================================
# Hash utilities
# =============================================================================


def sha256_hex(content: Union[str, bytes]) -> str:
    """Compute the SHA-256 hex digest used as change fingerprint.

    Args:
        content: Text (encoded as UTF-8) or raw bytes

    Returns:
        Lowercase hex digest

    Examples:
        >>> sha256_hex("")[:16]
        'e3b0c44298fc1c14'
    """
    if isinstance(content, str):
        content = content.encode("utf-8")
    return hashlib.sha256(content).hexdigest()


# =============================================================================
# Timestamp utilities
# =============================================================================


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def format_iso_timestamp(dt: datetime) -> str:
    """Format a datetime as ISO-8601 with a ``Z`` suffix for UTC.

    Args:
        dt: Datetime to format (naive values are treated as UTC)

    Returns:
        ISO timestamp string (e.g., "2025-01-15T10:30:00.123Z")
    """
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt = dt.astimezone(timezone.utc)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_iso_timestamp(timestamp_str: Optional[str]) -> Optional[datetime]:
    """Parse an ISO format timestamp from the API or the state file.

    Args:
        timestamp_str: ISO format timestamp string (e.g., "2025-01-15T10:30:00Z")

    Returns:
        Aware datetime in UTC or None if parsing fails
    """
    if not timestamp_str:
        return None

    try:
        # The 'Z' suffix indicates UTC time
        if timestamp_str.endswith("Z"):
            timestamp_str = timestamp_str[:-1] + "+00:00"
        dt = datetime.fromisoformat(timestamp_str)
    except (ValueError, AttributeError, TypeError):
        return None

    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


# =============================================================================
# Path utilities
# =============================================================================


def path_depth(path: str) -> int:
    """Number of segments in a slash-separated path.

    Examples:
        >>> path_depth("note.md")
        1
        >>> path_depth("a/b/note.md")
        3
    """
    return len(path.split("/"))


# =============================================================================
# Size formatting utilities
# =============================================================================


def format_size(size_bytes: int) -> str:
    """Format file size in human-readable format.

    Args:
        size_bytes: Size in bytes

    Returns:
        Formatted size string (e.g., "1.5 MB", "256 B")
    """
    if size_bytes < 1024:
        return f"{size_bytes} B"
    elif size_bytes < 1024 * 1024:
        return f"{size_bytes / 1024:.1f} KB"
    elif size_bytes < 1024 * 1024 * 1024:
        return f"{size_bytes / 1024 / 1024:.1f} MB"
    else:
        return f"{size_bytes / 1024 / 1024 / 1024:.1f} GB"
