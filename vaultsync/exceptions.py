"""Custom exceptions for vaultsync."""

from typing import Any, Optional


class VaultSyncError(Exception):
    """Base exception for all vaultsync errors.

    Attributes:
        retryable: Whether the failed operation may succeed if attempted again
        user_message: Short message suitable for notifications
        context: Optional extra data about the failure (path, vault id, ...)
    """

    retryable: bool = False
    default_user_message: str = "Sync failed."

    def __init__(
        self,
        message: str,
        user_message: Optional[str] = None,
        context: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.user_message = user_message or self.default_user_message
        self.context = context or {}


class VaultNetworkError(VaultSyncError):
    """Network connection failed or timed out."""

    retryable = True
    default_user_message = (
        "Network connection issue. Please check your internet connection."
    )


class VaultRateLimitError(VaultNetworkError):
    """Rate limit exceeded."""

    default_user_message = "Too many requests. Sync will retry shortly."


class VaultStorageError(VaultSyncError):
    """Reading or writing local state or files failed."""

    retryable = True
    default_user_message = (
        "Failed to access local storage. Please check your disk space."
    )


class VaultAuthenticationError(VaultSyncError):
    """Authentication failed (invalid or expired API key)."""

    default_user_message = "Authentication failed. Please log in again."


class VaultPermissionError(VaultSyncError):
    """Access to the vault or file is forbidden."""

    default_user_message = "You do not have permission to modify this vault."


class VaultNotFoundError(VaultSyncError):
    """Requested remote resource does not exist."""

    default_user_message = "File not found on the server."


class VaultConflictError(VaultSyncError):
    """Both replicas changed a file independently."""

    default_user_message = (
        "File conflict detected. Please resolve the conflict manually."
    )


class VaultValidationError(VaultSyncError):
    """Invalid input or invalid operation for the current state."""

    default_user_message = "Invalid request."


class VaultDeltaIntegrityError(VaultSyncError):
    """Applying a delta did not reproduce the declared target content.

    Never retried at the delta level; callers transfer the full content
    instead.
    """

    default_user_message = "Incremental transfer failed verification."


class VaultConfigError(VaultSyncError):
    """Configuration is missing or invalid."""

    default_user_message = "Configuration error."


class VaultInvalidResponseError(VaultSyncError):
    """Server returned a response that could not be understood."""

    default_user_message = "Unexpected response from the server."


def is_retryable(error: BaseException) -> bool:
    """Check whether an error should be retried automatically.

    Args:
        error: The exception raised by a sync operation

    Returns:
        True for transient failures (network, storage), False otherwise
    """
    if isinstance(error, VaultSyncError):
        return error.retryable
    if isinstance(error, OSError):
        return True
    return False
