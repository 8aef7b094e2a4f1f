"""Whole-file and streaming NCM decoding."""

from __future__ import annotations

import io
import logging
import os
from pathlib import Path

from .cipher import build_key_box, build_keystream, decrypt_chunk
from .container import DEFAULT_KEYS, NcmKeySet, output_path_for, parse_container
from .errors import InputNotFoundError, TruncatedError, error_kind
from .models import DecodeResult, DecodeTask
from .settings import DEFAULT_BUFFER_SIZE, DEFAULT_FLUSH_INTERVAL, clamp_buffer_size, clamp_flush_interval

logger = logging.getLogger(__name__)


def _require_input(input_path: str) -> None:
    if not os.path.isfile(input_path):
        raise InputNotFoundError(f"File not found: {input_path}")


class NcmDump:
    """Decodes single NCM files in the calling thread.

    ``decode`` keeps the whole file in memory and writes the output once the
    payload is fully decrypted. ``decode_streaming`` works through the payload
    with one reusable buffer; if the disk fails half way it can leave a
    partial output file behind, which is still reported as a failure.
    """

    def __init__(self, keys: NcmKeySet = DEFAULT_KEYS):
        self.keys = keys

    def decode(self, input_path: str, output_dir: str) -> DecodeResult:
        try:
            output_path = self._decode_whole(str(input_path), str(output_dir))
        except Exception as exc:
            return self._failure(str(input_path), exc)
        return DecodeResult.ok(str(input_path), output_path)

    def decode_streaming(
        self,
        input_path: str,
        output_dir: str,
        buffer_size: int = DEFAULT_BUFFER_SIZE,
        flush_interval: int = DEFAULT_FLUSH_INTERVAL,
    ) -> DecodeResult:
        try:
            output_path = self._decode_stream(
                str(input_path),
                str(output_dir),
                clamp_buffer_size(buffer_size),
                clamp_flush_interval(flush_interval),
            )
        except Exception as exc:
            return self._failure(str(input_path), exc)
        return DecodeResult.ok(str(input_path), output_path)

    def run_task(self, task: DecodeTask) -> DecodeResult:
        if task.use_streaming:
            return self.decode_streaming(task.input_path, task.output_dir, task.buffer_size, task.flush_interval)
        return self.decode(task.input_path, task.output_dir)

    def _decode_whole(self, input_path: str, output_dir: str) -> str:
        _require_input(input_path)
        raw = Path(input_path).read_bytes()
        layout = parse_container(io.BytesIO(raw), len(raw), self.keys)
        output_path = output_path_for(input_path, output_dir, layout.format)

        audio = bytearray(raw[layout.audio_offset:])
        decrypt_chunk(audio, build_keystream(build_key_box(layout.key)), 0)

        with open(output_path, "wb") as out:
            out.write(audio)
        return output_path

    def _decode_stream(self, input_path: str, output_dir: str, buffer_size: int, flush_interval: int) -> str:
        _require_input(input_path)
        with open(input_path, "rb") as src:
            layout = parse_container(src, os.fstat(src.fileno()).st_size, self.keys)
            output_path = output_path_for(input_path, output_dir, layout.format)
            keystream = build_keystream(build_key_box(layout.key))

            buffer = bytearray(buffer_size)
            view = memoryview(buffer)
            offset = 0
            remaining = layout.audio_length
            chunk_count = 0
            with open(output_path, "wb") as out:
                while remaining > 0:
                    bytes_read = src.readinto(view[:min(buffer_size, remaining)])
                    if not bytes_read:
                        raise TruncatedError(f"Audio payload ended {remaining} bytes early")
                    chunk = view[:bytes_read]
                    decrypt_chunk(chunk, keystream, offset)
                    out.write(chunk)

                    offset += bytes_read
                    remaining -= bytes_read
                    chunk_count += 1
                    if chunk_count % flush_interval == 0:
                        out.flush()
                out.flush()
        return output_path

    @staticmethod
    def _failure(input_path: str, exc: Exception) -> DecodeResult:
        message = str(exc) or exc.__class__.__name__
        logger.warning("Failed to decode %s: %s", input_path, message)
        return DecodeResult.failure(input_path, message, error_kind(exc))
