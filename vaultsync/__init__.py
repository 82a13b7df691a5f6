"""VaultSync - keeps a local vault and its remote copy in sync."""

from .api import VaultSyncClient
from .exceptions import (
    VaultAuthenticationError,
    VaultConfigError,
    VaultConflictError,
    VaultDeltaIntegrityError,
    VaultInvalidResponseError,
    VaultNetworkError,
    VaultNotFoundError,
    VaultPermissionError,
    VaultRateLimitError,
    VaultStorageError,
    VaultSyncError,
    VaultValidationError,
    is_retryable,
)
from .local import LocalVault
from .utils import sha256_hex

__version__ = "0.1.0"

__all__ = [
    "VaultSyncClient",
    "LocalVault",
    "VaultSyncError",
    "VaultAuthenticationError",
    "VaultConfigError",
    "VaultConflictError",
    "VaultDeltaIntegrityError",
    "VaultInvalidResponseError",
    "VaultNetworkError",
    "VaultNotFoundError",
    "VaultPermissionError",
    "VaultRateLimitError",
    "VaultStorageError",
    "VaultValidationError",
    "is_retryable",
    "sha256_hex",
]
