"""
Error types and error logging for chatledger.

Write-path failures are raised to the caller as typed errors.
Read-path failures are logged and the offending record skipped.

The CLI logs full stack traces to a file while showing clean messages to users.
"""

import os
import traceback
from datetime import datetime, timezone
from pathlib import Path


class ChatLedgerError(Exception):
    """Base class for chatledger errors."""


class Unauthorized(ChatLedgerError):
    """No active identity or credentials. Writes fail fast, no retry."""


class StorageUnavailable(ChatLedgerError):
    """The record store, index or gateway could not be reached or refused a request."""


class IndexingNotYetVisible(ChatLedgerError):
    """
    An index query came back without records that should exist.

    Not a hard error: the store indexes writes with a delay, so a record
    written seconds ago may not be queryable yet.
    """


class DeserializationFailure(ChatLedgerError):
    """A fetched payload did not parse as the expected snapshot."""

    def __init__(self, record_id: str, reason: str):
        super().__init__(f"Cannot deserialize record {record_id}: {reason}")
        self.record_id = record_id
        self.reason = reason


class EntityNotFound(ChatLedgerError, KeyError):
    """No chat or agent with this ID, locally or remotely."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else "Entity not found"


class InvalidFile(ChatLedgerError, ValueError):
    """An uploaded file failed size or type validation."""


def _error_log_path() -> Path:
    """Resolve error log path, respecting CHATLEDGER_CONFIG_DIR."""
    config_dir = os.environ.get("CHATLEDGER_CONFIG_DIR")
    if config_dir:
        return Path(config_dir) / "chatledger-errors.log"
    return Path.home() / ".chatledger" / "chatledger-errors.log"


def log_exception(exc: Exception, context: str = "") -> Path:
    """
    Log exception with full traceback to file.

    Args:
        exc: The exception that occurred
        context: Optional context string (e.g., command name)

    Returns:
        Path to the error log file
    """
    log_path = _error_log_path()
    timestamp = datetime.now(timezone.utc).isoformat()
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(log_path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o600)
        with os.fdopen(fd, "a") as f:
            f.write(f"\n{'='*60}\n")
            f.write(f"[{timestamp}]")
            if context:
                f.write(f" {context}")
            f.write("\n")
            f.write("".join(traceback.format_exception(type(exc), exc, exc.__traceback__)))
    except OSError:
        pass  # Can't write error log, don't crash over it
    return log_path
