"""Value objects passed between the decoder, the worker pool and callers."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from .errors import ErrorKind
from .settings import DEFAULT_BUFFER_SIZE, DEFAULT_FLUSH_INTERVAL


@dataclass(frozen=True)
class DecodeTask:
    input_path: str
    output_dir: str
    use_streaming: bool = True
    buffer_size: int = DEFAULT_BUFFER_SIZE
    flush_interval: int = DEFAULT_FLUSH_INTERVAL


@dataclass(frozen=True)
class DecodeResult:
    input_path: str
    output_path: str
    success: bool
    error_message: Optional[str] = None
    error_kind: Optional[ErrorKind] = None

    @classmethod
    def ok(cls, input_path: str, output_path: str) -> "DecodeResult":
        return cls(input_path=input_path, output_path=output_path, success=True)

    @classmethod
    def failure(cls, input_path: str, message: str, kind: ErrorKind = ErrorKind.TASK_FAILURE) -> "DecodeResult":
        return cls(input_path=input_path, output_path="", success=False, error_message=message, error_kind=kind)

    def __str__(self) -> str:
        if self.success:
            return f"DecodeResult(success: {self.input_path} -> {self.output_path})"
        return f"DecodeResult(failed: {self.input_path}, error: {self.error_message})"


@dataclass(frozen=True)
class BatchProgress:
    total: int
    completed: int
    failed: int
    current_file: Optional[str] = None

    @property
    def progress(self) -> float:
        return (self.completed + self.failed) / self.total if self.total > 0 else 0.0

    @property
    def is_complete(self) -> bool:
        return self.completed + self.failed >= self.total
