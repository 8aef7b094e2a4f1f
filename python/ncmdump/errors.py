"""Error types raised while decoding NCM containers."""

from __future__ import annotations

import enum


class ErrorKind(enum.Enum):
    FILE_NOT_FOUND = "file_not_found"
    INVALID_FORMAT = "invalid_format"
    TRUNCATED = "truncated"
    IO_ERROR = "io_error"
    CORRUPT_KEY_DATA = "corrupt_key_data"
    POOL_DISPOSED = "pool_disposed"
    TASK_FAILURE = "task_failure"


class NCMError(Exception):
    kind = ErrorKind.TASK_FAILURE


class InputNotFoundError(NCMError, FileNotFoundError):
    kind = ErrorKind.FILE_NOT_FOUND


class InvalidFormatError(NCMError):
    kind = ErrorKind.INVALID_FORMAT


class TruncatedError(NCMError):
    kind = ErrorKind.TRUNCATED


class CorruptKeyDataError(NCMError):
    kind = ErrorKind.CORRUPT_KEY_DATA


class MetadataError(NCMError):
    """Raised for unreadable metadata blocks; the parser falls back to mp3."""


class WorkerExitedError(NCMError):
    """A pooled worker process went away while it owned a task."""


class PoolDisposedError(NCMError):
    kind = ErrorKind.POOL_DISPOSED

    def __init__(self, message: str = "worker pool has been disposed"):
        super().__init__(message)


def error_kind(exc: BaseException) -> ErrorKind:
    if isinstance(exc, NCMError):
        return exc.kind
    if isinstance(exc, OSError):
        return ErrorKind.IO_ERROR
    return ErrorKind.TASK_FAILURE
