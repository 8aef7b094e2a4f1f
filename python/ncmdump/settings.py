"""Tunable decoder options and their allowed ranges."""

from __future__ import annotations

import os
from dataclasses import dataclass, field

MAX_THREAD_COUNT = 32

MIN_BUFFER_SIZE = 64 * 1024
MAX_BUFFER_SIZE = 1024 * 1024
DEFAULT_BUFFER_SIZE = 256 * 1024

MIN_FLUSH_INTERVAL = 1
MAX_FLUSH_INTERVAL = 32
DEFAULT_FLUSH_INTERVAL = 8


def _clamp(value: int, low: int, high: int) -> int:
    return max(low, min(high, int(value)))


def default_thread_count() -> int:
    return _clamp(os.cpu_count() or 1, 1, MAX_THREAD_COUNT)


def clamp_thread_count(count: int) -> int:
    return _clamp(count, 1, MAX_THREAD_COUNT)


def clamp_buffer_size(size: int) -> int:
    return _clamp(size, MIN_BUFFER_SIZE, MAX_BUFFER_SIZE)


def clamp_flush_interval(interval: int) -> int:
    return _clamp(interval, MIN_FLUSH_INTERVAL, MAX_FLUSH_INTERVAL)


@dataclass
class DecoderSettings:
    """Plain configuration values; out-of-range inputs are clamped, not rejected."""

    thread_count: int = field(default_factory=default_thread_count)
    buffer_size: int = DEFAULT_BUFFER_SIZE
    flush_interval: int = DEFAULT_FLUSH_INTERVAL

    def __post_init__(self) -> None:
        self.thread_count = clamp_thread_count(self.thread_count)
        self.buffer_size = clamp_buffer_size(self.buffer_size)
        self.flush_interval = clamp_flush_interval(self.flush_interval)

    @property
    def buffer_size_text(self) -> str:
        size_kb = self.buffer_size // 1024
        if size_kb >= 1024:
            return f"{size_kb // 1024}MB"
        return f"{size_kb}KB"
