"""Per-vault sync settings."""

import json
import logging
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Optional

from ..exceptions import VaultConfigError
from ..utils import (
    DEFAULT_BATCH_SIZE,
    DEFAULT_CHUNK_SIZE,
    DEFAULT_CHUNK_THRESHOLD,
    DEFAULT_DEBOUNCE_DELAY,
    DEFAULT_DRIFT_CHECK_INTERVAL,
    DEFAULT_EXCLUDED_FOLDERS,
    DEFAULT_MAX_CONCURRENT,
    DEFAULT_MAX_RETRIES,
    DEFAULT_MAX_RETRY_DELAY,
    DEFAULT_MIN_DRIFT_CHECK_SPACING,
    DEFAULT_RETRY_DELAY,
)
from .modes import InitialSyncStrategy, SyncMode

logger = logging.getLogger(__name__)


@dataclass
class SyncSettings:
    """Sync behaviour for one vault."""

    vault_id: str = ""
    """Remote vault identifier"""

    vault_path: str = "."
    """Local vault root directory"""

    sync_mode: SyncMode = SyncMode.SMART_SYNC
    auto_sync: bool = True

    sync_interval: float = 15.0
    """Seconds between queue processing ticks"""

    drift_check_interval: float = DEFAULT_DRIFT_CHECK_INTERVAL
    min_drift_check_spacing: float = DEFAULT_MIN_DRIFT_CHECK_SPACING

    included_folders: list[str] = field(default_factory=list)
    excluded_folders: list[str] = field(
        default_factory=lambda: list(DEFAULT_EXCLUDED_FOLDERS)
    )

    max_concurrent_uploads: int = DEFAULT_MAX_CONCURRENT
    max_retries: int = DEFAULT_MAX_RETRIES
    retry_base_delay: float = DEFAULT_RETRY_DELAY
    retry_max_delay: float = DEFAULT_MAX_RETRY_DELAY

    chunk_threshold: int = DEFAULT_CHUNK_THRESHOLD
    chunk_size: int = DEFAULT_CHUNK_SIZE
    debounce_delay: float = DEFAULT_DEBOUNCE_DELAY

    initial_sync_strategy: Optional[InitialSyncStrategy] = None
    """Strategy run automatically on first connection (None: ask the user)"""

    initial_sync_batch_size: int = DEFAULT_BATCH_SIZE

    def validate(self) -> None:
        """Check value ranges.

        Raises:
            VaultConfigError: If a value is out of range
        """
        if self.max_concurrent_uploads < 1:
            raise VaultConfigError("max_concurrent_uploads must be at least 1")
        if self.max_retries < 0:
            raise VaultConfigError("max_retries must not be negative")
        if self.initial_sync_batch_size < 1:
            raise VaultConfigError("initial_sync_batch_size must be at least 1")
        for name in ("sync_interval", "drift_check_interval", "debounce_delay"):
            if getattr(self, name) < 0:
                raise VaultConfigError(f"{name} must not be negative")

    def to_dict(self) -> dict[str, Any]:
        """Convert settings to a JSON-serializable dictionary."""
        data = asdict(self)
        data["sync_mode"] = self.sync_mode.value
        data["initial_sync_strategy"] = (
            self.initial_sync_strategy.value if self.initial_sync_strategy else None
        )
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SyncSettings":
        """Create settings from a dictionary, ignoring unknown keys.

        Raises:
            VaultConfigError: If a value cannot be converted
        """
        known = set(cls.__dataclass_fields__)
        values = {k: v for k, v in data.items() if k in known}
        try:
            if "sync_mode" in values:
                values["sync_mode"] = SyncMode(values["sync_mode"])
            if values.get("initial_sync_strategy"):
                values["initial_sync_strategy"] = InitialSyncStrategy(
                    values["initial_sync_strategy"]
                )
        except ValueError as e:
            raise VaultConfigError(f"Invalid settings value: {e}") from e
        settings = cls(**values)
        settings.validate()
        return settings


def load_settings(path: Path) -> SyncSettings:
    """Load sync settings from a JSON file.

    Args:
        path: JSON file with a single settings object

    Returns:
        Validated SyncSettings

    Raises:
        VaultConfigError: If the file is missing or malformed
    """
    if not path.exists():
        raise VaultConfigError(f"Settings file does not exist: {path}")
    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise VaultConfigError(f"Failed to read settings: {e}") from e
    if not isinstance(data, dict):
        raise VaultConfigError("Settings file must contain a JSON object")
    logger.debug(f"Loaded settings for vault {data.get('vault_id', '')!r}")
    return SyncSettings.from_dict(data)
