"""Configuration management for vaultsync.

Credentials come from the environment or from a small key=value file in
``~/.config/vaultsync/config``.
"""

import logging
import os
from pathlib import Path
from typing import Optional

from .exceptions import VaultConfigError

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "http://localhost:3001/v1"


class Config:
    """Process-wide credentials and locations."""

    def __init__(self) -> None:
        self.config_dir = Path(
            os.environ.get("VAULTSYNC_CONFIG_DIR", "")
            or Path.home() / ".config" / "vaultsync"
        )
        self.config_file = self.config_dir / "config"
        self._file_values = self._load_file()

    def _load_file(self) -> dict[str, str]:
        """Read key=value pairs from the config file, if any."""
        values: dict[str, str] = {}
        if not self.config_file.exists():
            return values
        try:
            for line in self.config_file.read_text(encoding="utf-8").splitlines():
                line = line.strip()
                if not line or line.startswith("#") or "=" not in line:
                    continue
                key, value = line.split("=", 1)
                values[key.strip()] = value.strip()
        except OSError as e:
            logger.warning(f"Failed to read config file: {e}")
        return values

    @property
    def api_key(self) -> Optional[str]:
        """API key from VAULTSYNC_API_KEY or the config file."""
        return os.environ.get("VAULTSYNC_API_KEY") or self._file_values.get(
            "VAULTSYNC_API_KEY"
        )

    @property
    def api_url(self) -> str:
        """API base URL from VAULTSYNC_API_URL or the config file."""
        return (
            os.environ.get("VAULTSYNC_API_URL")
            or self._file_values.get("VAULTSYNC_API_URL")
            or DEFAULT_API_URL
        )

    def is_configured(self) -> bool:
        return bool(self.api_key)

    @property
    def state_dir(self) -> Path:
        """Directory holding per-vault state files."""
        return self.config_dir / "state"

    def save_api_key(self, api_key: str) -> None:
        """Store the API key in the config file.

        Args:
            api_key: API key to persist

        Raises:
            VaultConfigError: If the file cannot be written
        """
        self._file_values["VAULTSYNC_API_KEY"] = api_key
        try:
            self.config_dir.mkdir(parents=True, exist_ok=True)
            lines = [f"{k}={v}" for k, v in sorted(self._file_values.items())]
            self.config_file.write_text("\n".join(lines) + "\n", encoding="utf-8")
            self.config_file.chmod(0o600)
        except OSError as e:
            raise VaultConfigError(f"Failed to save config: {e}") from e


config = Config()
