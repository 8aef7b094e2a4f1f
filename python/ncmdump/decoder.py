"""Batch decoding service built on top of the worker pool."""

from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path
from typing import AsyncIterator, Callable, Iterable, List, Optional

from .errors import error_kind
from .models import BatchProgress, DecodeResult, DecodeTask
from .pool import WorkerPool
from .settings import (
    MAX_THREAD_COUNT,
    DecoderSettings,
    clamp_buffer_size,
    clamp_flush_interval,
    clamp_thread_count,
)
from .version import __version__

logger = logging.getLogger(__name__)

NCM_SUFFIX = ".ncm"

_CLOSED = object()


def scan_files(directory) -> List[str]:
    """Return the ``.ncm`` files directly inside ``directory``, sorted by name.

    A missing or unreadable directory gives an empty list.
    """
    path = Path(directory)
    try:
        entries = sorted(path.iterdir())
    except OSError as exc:
        logger.warning("Cannot list %s: %s", directory, exc)
        return []

    files = []
    for entry in entries:
        if not entry.name.lower().endswith(NCM_SUFFIX):
            continue
        try:
            is_file = entry.is_file()
        except OSError as exc:
            logger.warning("Skipping %s: %s", entry, exc)
            continue
        if is_file:
            logger.debug("Found NCM file %s", entry)
            files.append(str(entry))
    logger.debug("Found %d NCM file(s) in %s", len(files), directory)
    return files


class NcmDecoder:
    """Decodes files through a shared ``WorkerPool``.

    Construct one per application and pass it to whatever needs it. The pool
    is created lazily and recreated if it was disposed.
    """

    def __init__(self, pool: Optional[WorkerPool] = None, settings: Optional[DecoderSettings] = None):
        self.settings = settings or DecoderSettings()
        self._pool = pool

    @property
    def version(self) -> str:
        return __version__

    @property
    def pool(self) -> WorkerPool:
        if self._pool is None or self._pool.is_disposed:
            self._pool = WorkerPool(max_size=MAX_THREAD_COUNT)
        return self._pool

    async def warm_up(self, count: Optional[int] = None) -> None:
        await self.pool.warm_up(count)

    async def dispose(self) -> None:
        if self._pool is not None:
            await self._pool.dispose()
        self._pool = None

    def scan_files(self, directory) -> List[str]:
        return scan_files(directory)

    async def decode_file(
        self,
        input_path,
        output_dir,
        use_streaming: bool = True,
        buffer_size: Optional[int] = None,
        flush_interval: Optional[int] = None,
    ) -> DecodeResult:
        task = DecodeTask(
            input_path=str(input_path),
            output_dir=str(output_dir),
            use_streaming=use_streaming,
            buffer_size=clamp_buffer_size(buffer_size if buffer_size is not None else self.settings.buffer_size),
            flush_interval=clamp_flush_interval(
                flush_interval if flush_interval is not None else self.settings.flush_interval
            ),
        )
        return await self.pool.run_decode(task)

    async def decode_paths(
        self,
        paths: Iterable,
        output_dir=None,
        concurrency: Optional[int] = None,
        buffer_size: Optional[int] = None,
        flush_interval: Optional[int] = None,
        use_streaming: bool = True,
        on_file_complete: Optional[Callable[[DecodeResult], None]] = None,
    ) -> AsyncIterator[BatchProgress]:
        """Decode ``paths`` with at most ``concurrency`` files in flight.

        Yields a ``BatchProgress`` after every file is picked up and after
        every file finishes, then one final snapshot. ``output_dir=None``
        writes each output next to its input.
        """
        files = [str(p) for p in paths]
        total = len(files)
        if not total:
            yield BatchProgress(total=0, completed=0, failed=0)
            return

        if output_dir is not None:
            Path(output_dir).mkdir(parents=True, exist_ok=True)

        workers = clamp_thread_count(concurrency if concurrency is not None else self.settings.thread_count)
        buffer_size = clamp_buffer_size(buffer_size if buffer_size is not None else self.settings.buffer_size)
        flush_interval = clamp_flush_interval(
            flush_interval if flush_interval is not None else self.settings.flush_interval
        )
        logger.info(
            "Decoding %d file(s) with %d parallel task(s), buffer %dKB, flush every %d buffer(s)",
            total,
            workers,
            buffer_size // 1024,
            flush_interval,
        )
        await self.warm_up(min(workers, total))

        progress: asyncio.Queue = asyncio.Queue()
        next_index = 0
        completed = 0
        failed = 0

        async def process_one() -> None:
            nonlocal next_index, completed, failed
            while next_index < total:
                index = next_index
                next_index += 1
                file_path = files[index]
                file_name = os.path.basename(file_path)
                progress.put_nowait(BatchProgress(total, completed, failed, file_name))

                target_dir = output_dir if output_dir is not None else os.path.dirname(file_path)
                try:
                    result = await self.decode_file(file_path, target_dir, use_streaming, buffer_size, flush_interval)
                except Exception as exc:
                    logger.warning("Failed to decode %s: %s", file_path, exc)
                    result = DecodeResult.failure(file_path, str(exc), error_kind(exc))

                if result.success:
                    completed += 1
                else:
                    failed += 1
                progress.put_nowait(BatchProgress(total, completed, failed, file_name))
                if on_file_complete is not None:
                    on_file_complete(result)

        async def run_all() -> None:
            try:
                await asyncio.gather(*(process_one() for _ in range(workers)))
                progress.put_nowait(BatchProgress(total, completed, failed))
            finally:
                progress.put_nowait(_CLOSED)

        producer = asyncio.ensure_future(run_all())
        try:
            while True:
                snapshot = await progress.get()
                if snapshot is _CLOSED:
                    break
                yield snapshot
            await producer
        finally:
            if not producer.done():
                producer.cancel()

    async def decode_directory(
        self,
        input_dir,
        output_dir,
        concurrency: Optional[int] = None,
        buffer_size: Optional[int] = None,
        flush_interval: Optional[int] = None,
        use_streaming: bool = True,
        on_file_complete: Optional[Callable[[DecodeResult], None]] = None,
    ) -> AsyncIterator[BatchProgress]:
        files = await asyncio.to_thread(scan_files, input_dir)
        async for snapshot in self.decode_paths(
            files,
            output_dir,
            concurrency=concurrency,
            buffer_size=buffer_size,
            flush_interval=flush_interval,
            use_streaming=use_streaming,
            on_file_complete=on_file_complete,
        ):
            yield snapshot
