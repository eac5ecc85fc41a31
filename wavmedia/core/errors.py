"""Error taxonomy shared by converters, storage, queue and workers.

Every error carries an ``error_code`` and a ``retryable`` flag. The job queue
retries retryable errors with exponential backoff and fails the job at once
for everything else.
"""
from __future__ import annotations


class MediaError(Exception):
    """Base class for exceptions in this project."""

    retryable = True

    def __init__(self, message: str, error_code: str = "INTERNAL_ERROR"):
        self.message = message
        self.error_code = error_code
        super().__init__(self.message)


class ToolExecutionError(MediaError):
    """An external binary exited non-zero, timed out or could not be started."""

    def __init__(self, tool: str, exit_info: str, stderr: str = ""):
        self.tool = tool
        self.exit_info = exit_info
        self.stderr = stderr
        detail = f"{tool} failed ({exit_info})"
        if stderr:
            detail = f"{detail}: {stderr.strip()[-2000:]}"
        super().__init__(detail, error_code="TOOL_EXECUTION_ERROR")


class ConversionError(MediaError):
    """Malformed or unsupported source. Retrying will not help."""

    retryable = False

    def __init__(self, message: str, error_code: str = "CONVERSION_ERROR"):
        super().__init__(message, error_code=error_code)


class JobDataError(ConversionError):
    """The job refers to a record or file that does not exist."""

    def __init__(self, message: str):
        super().__init__(message, error_code="JOB_DATA_ERROR")


class MixError(MediaError):
    """Stems cannot be mixed (none given, or incompatible layouts)."""

    retryable = False

    def __init__(self, message: str):
        super().__init__(message, error_code="MIX_ERROR")


class StorageError(MediaError):
    """Upload, download or delete against object/staging storage failed."""

    def __init__(self, message: str):
        super().__init__(message, error_code="STORAGE_ERROR")


class DeletionError(StorageError):
    """A delete still failed after its retries."""

    def __init__(self, url: str, cause: BaseException | None = None):
        self.url = url
        self.cause = cause
        reason = f": {cause}" if cause is not None else ""
        super().__init__(f"Failed to delete file {url}{reason}")


class QuotaExceededError(MediaError):
    """Soft condition: the user has no capacity left for this work."""

    retryable = False

    def __init__(self, user_id: str, seconds_needed: float):
        self.user_id = user_id
        self.seconds_needed = seconds_needed
        super().__init__(
            f"User {user_id} has no capacity for {seconds_needed:.1f}s of audio",
            error_code="QUOTA_EXCEEDED",
        )


class TransactionError(MediaError):
    """Persisting results failed after artifacts had been uploaded."""

    def __init__(self, message: str):
        super().__init__(message, error_code="TRANSACTION_ERROR")


class InvalidStatusTransition(MediaError):
    retryable = False

    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(
            f"Conversion status cannot move from {current} to {target}",
            error_code="INVALID_STATUS_TRANSITION",
        )


def is_retryable(error: BaseException) -> bool:
    return bool(getattr(error, "retryable", True))
