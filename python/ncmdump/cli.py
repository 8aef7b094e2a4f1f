"""Command line front end: ``ncmdump [files ...] [-d DIR]``."""

from __future__ import annotations

import argparse
import asyncio
import logging
from pathlib import Path
from typing import List, Optional

from .decoder import NcmDecoder, scan_files
from .models import DecodeResult
from .settings import DEFAULT_BUFFER_SIZE, DEFAULT_FLUSH_INTERVAL, DecoderSettings, default_thread_count


def collect_files(args) -> List[str]:
    results: List[str] = []
    if args.directory:
        results.extend(scan_files(args.directory))
    results.extend(str(Path(f)) for f in args.files)
    return results


def _report(result: DecodeResult) -> None:
    if result.success:
        print(f"Converted {result.input_path} -> {result.output_path}")
    else:
        print(f"Failed to convert {result.input_path}: {result.error_message}")


async def _run(files: List[str], args, settings: DecoderSettings) -> int:
    decoder = NcmDecoder(settings=settings)
    last = None
    try:
        async for progress in decoder.decode_paths(
            files,
            args.output,
            use_streaming=not args.whole_file,
            on_file_complete=_report,
        ):
            last = progress
    finally:
        await decoder.dispose()

    print(f"Total: {last.total} | Success: {last.completed} | Fail: {last.failed}")
    return 1 if last.failed else 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="ncmdump", description="Decrypt NetEase NCM files to mp3 or flac.")
    parser.add_argument("files", nargs="*", help="Individual .ncm files to convert")
    parser.add_argument("-d", "--directory", help="Directory containing .ncm files (not searched recursively)")
    parser.add_argument("-o", "--output", type=Path, help="Output directory for converted files")
    parser.add_argument(
        "-j",
        "--jobs",
        type=int,
        default=default_thread_count(),
        help="Number of files decoded in parallel (1-32)",
    )
    parser.add_argument(
        "--buffer-size",
        type=int,
        default=DEFAULT_BUFFER_SIZE // 1024,
        help="Streaming buffer size in KB (64-1024)",
    )
    parser.add_argument(
        "--flush-interval",
        type=int,
        default=DEFAULT_FLUSH_INTERVAL,
        help="Flush the output every N buffers (1-32)",
    )
    parser.add_argument("--whole-file", action="store_true", help="Load each file into memory instead of streaming")
    parser.add_argument("-v", "--verbose", action="count", default=0, help="Log more (repeat for debug output)")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    level = logging.WARNING if args.verbose == 0 else logging.INFO if args.verbose == 1 else logging.DEBUG
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    files = collect_files(args)
    if not files:
        parser.error("No input files provided")

    settings = DecoderSettings(
        thread_count=args.jobs,
        buffer_size=args.buffer_size * 1024,
        flush_interval=args.flush_interval,
    )
    return asyncio.run(_run(files, args, settings))
