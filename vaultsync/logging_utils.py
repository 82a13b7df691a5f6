"""Logging helpers for vaultsync.

Components receive a :class:`SyncLogger` through their constructor. It
forwards every message to a standard :mod:`logging` logger and keeps the
most recent errors in a bounded ring buffer so a status view can show them
without any module-level error list.
"""

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Optional

DEFAULT_ERROR_BUFFER_SIZE = 100
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
MAX_LOG_BYTES = 5 * 1024 * 1024  # 5 MB per log segment
LOG_BACKUP_COUNT = 3


@dataclass
class ErrorEntry:
    """One error kept in the ring buffer."""

    message: str
    logger_name: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    error_type: Optional[str] = None
    context: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert entry to dictionary for JSON output."""
        return {
            "message": self.message,
            "logger": self.logger_name,
            "timestamp": self.timestamp.isoformat(),
            "error_type": self.error_type,
            "context": self.context,
        }


class SyncLogger:
    """Logger wrapper with a bounded buffer of recent errors.

    Child loggers created with :meth:`child` share the parent's buffer, so
    one instance can be handed to every component of a vault.

    Examples:
        >>> log = SyncLogger("vaultsync.test", max_errors=2)
        >>> log.error("first")
        >>> log.error("second")
        >>> log.error("third")
        >>> [e.message for e in log.recent_errors()]
        ['second', 'third']
    """

    def __init__(
        self,
        name: str = "vaultsync",
        max_errors: int = DEFAULT_ERROR_BUFFER_SIZE,
        _buffer: Optional["deque[ErrorEntry]"] = None,
    ):
        """Initialize the logger.

        Args:
            name: Name of the underlying stdlib logger
            max_errors: Capacity of the error ring buffer
        """
        self.name = name
        self._logger = logging.getLogger(name)
        self._errors: deque[ErrorEntry] = (
            _buffer if _buffer is not None else deque(maxlen=max_errors)
        )

    def child(self, suffix: str) -> "SyncLogger":
        """Create a logger named ``<name>.<suffix>`` sharing the error buffer."""
        return SyncLogger(f"{self.name}.{suffix}", _buffer=self._errors)

    def debug(self, msg: str, *args: Any) -> None:
        self._logger.debug(msg, *args)

    def info(self, msg: str, *args: Any) -> None:
        self._logger.info(msg, *args)

    def warning(self, msg: str, *args: Any) -> None:
        self._logger.warning(msg, *args)

    def error(
        self,
        msg: str,
        *args: Any,
        error: Optional[BaseException] = None,
        **context: Any,
    ) -> None:
        """Log an error and remember it in the ring buffer.

        Args:
            msg: Message, %-style formatted with ``args``
            error: Exception that caused the error, if any
            **context: Extra fields stored with the entry (path, vault id, ...)
        """
        message = msg % args if args else msg
        # Tracebacks only in debug output
        exc_info = error if self._logger.isEnabledFor(logging.DEBUG) else None
        self._logger.error(message, exc_info=exc_info)
        self._errors.append(
            ErrorEntry(
                message=message,
                logger_name=self.name,
                error_type=type(error).__name__ if error is not None else None,
                context=context,
            )
        )

    def recent_errors(self, limit: Optional[int] = None) -> list[ErrorEntry]:
        """Return buffered errors, oldest first.

        Args:
            limit: Only return the newest ``limit`` entries

        Returns:
            List of error entries
        """
        entries = list(self._errors)
        if limit is not None:
            entries = entries[-limit:] if limit > 0 else []
        return entries

    def clear_errors(self) -> None:
        """Drop all buffered errors."""
        self._errors.clear()

    @property
    def error_count(self) -> int:
        return len(self._errors)


def configure_logging(verbose: bool = False, log_file: Optional[Path] = None) -> None:
    """Configure process logging for the CLI.

    Args:
        verbose: Enable debug output for vaultsync modules
        log_file: Optional rotating log file receiving the same records
    """
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format=LOG_FORMAT,
            datefmt="%H:%M:%S",
        )
        logging.getLogger("vaultsync").setLevel(logging.DEBUG)
    else:
        # Set default logging level to WARNING to suppress debug/info messages
        logging.basicConfig(level=logging.WARNING)

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(
            log_file,
            maxBytes=MAX_LOG_BYTES,
            backupCount=LOG_BACKUP_COUNT,
            encoding="utf-8",
        )
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logging.getLogger("vaultsync").addHandler(handler)
