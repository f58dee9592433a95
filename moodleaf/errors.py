"""
Error types and error logging for moodleaf.

Storage errors (ConflictError, NotFoundError) propagate to the caller of
the journal API. Provider errors are raised by AI providers and absorbed
by the enrichment pipeline; they never reach the journaling caller.
"""

import os
import traceback
from pathlib import Path
from typing import Optional

from .types import format_timestamp, utc_now


class MoodleafError(Exception):
    """Base class for moodleaf errors."""


class NotFoundError(MoodleafError):
    """A journal entry or quote does not exist."""


class ConflictError(MoodleafError):
    """An edit named a version that is no longer current.

    Recoverable by the caller: re-fetch the entry and retry.
    """

    def __init__(self, entry_id: str, expected: int, actual: int):
        self.entry_id = entry_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Journal entry {entry_id} was modified by another request. "
            f"Expected version: {expected}, current version: {actual}"
        )


class ProviderError(MoodleafError):
    """Base class for failures of an AI provider call."""

    def __init__(self, message: str, *, provider: str = ""):
        self.provider = provider
        super().__init__(message)


class RateLimited(ProviderError):
    """The provider refused the call because of rate limiting."""

    def __init__(
        self,
        message: str = "Rate limited",
        *,
        provider: str = "",
        retry_after: Optional[float] = None,
    ):
        self.retry_after = retry_after
        super().__init__(message, provider=provider)


class TransientNetworkError(ProviderError):
    """Timeout, connection failure or server-side error. Worth retrying."""


class InvalidResponseError(TransientNetworkError):
    """The provider answered, but the answer failed validation."""


class PermanentError(ProviderError):
    """Malformed request or unrecoverable client error. Never retried."""


def _error_log_path() -> Path:
    """Resolve error log path, respecting MOODLEAF_STORE_PATH."""
    store = os.environ.get("MOODLEAF_STORE_PATH")
    if store:
        return Path(store) / "moodleaf-errors.log"
    return Path.home() / ".moodleaf" / "moodleaf-errors.log"


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
    timestamp = format_timestamp(utc_now())
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(log_path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o600)
        with os.fdopen(fd, "a") as f:
            f.write(f"\n{'='*60}\n")
            f.write(f"[{timestamp}]")
            if context:
                f.write(f" {context}")
            f.write("\n")
            f.write("".join(traceback.format_exception(exc)))
    except OSError:
        pass  # Can't write error log; don't crash over it
    return log_path
