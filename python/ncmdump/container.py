"""Parser for the NCM container header."""

from __future__ import annotations

import base64
import json
import logging
import os
import re
from dataclasses import dataclass
from typing import BinaryIO

from .cipher import aes_ecb_decrypt, pkcs7_unpad
from .errors import CorruptKeyDataError, InvalidFormatError, MetadataError, TruncatedError

logger = logging.getLogger(__name__)

NCM_MAGIC = b"CTENFDAM"
KEY_PREFIX = b"neteasecloudmusic"
META_PREFIX = b"163 key(Don't modify):"
META_JSON_PREFIX = b"music:"
KEY_MASK = 0x64
META_MASK = 0x63
DEFAULT_FORMAT = "mp3"

_NCM_SUFFIX = re.compile(r"\.ncm$", re.IGNORECASE)


@dataclass(frozen=True)
class NcmKeySet:
    core_key: bytes = b"hzHRAmso5kInbaxW"
    meta_key: bytes = b"#14ljk_!\\]&0U<'("


DEFAULT_KEYS = NcmKeySet()


@dataclass(frozen=True)
class ContainerLayout:
    key: bytes
    format: str
    audio_offset: int
    audio_length: int


class _HeaderReader:
    def __init__(self, file_obj: BinaryIO, file_size: int):
        self._file = file_obj
        self._size = file_size

    @property
    def position(self) -> int:
        return self._file.tell()

    def read(self, length: int, what: str) -> bytes:
        if self.position + length > self._size:
            raise TruncatedError(f"Unexpected EOF while reading {what}")
        data = self._file.read(length)
        if len(data) != length:
            raise TruncatedError(f"Unexpected EOF while reading {what}")
        return data

    def read_partial(self, length: int) -> bytes:
        return self._file.read(length)

    def read_int(self, what: str) -> int:
        return int.from_bytes(self.read(4, what), byteorder="little")

    def skip(self, length: int, what: str) -> None:
        if self.position + length > self._size:
            raise TruncatedError(f"{what} runs past end of file")
        self._file.seek(length, os.SEEK_CUR)


def _mask(data: bytes, value: int) -> bytes:
    return bytes(b ^ value for b in data)


def _decrypt_key(key_data: bytes, keys: NcmKeySet) -> bytes:
    try:
        decrypted = aes_ecb_decrypt(_mask(key_data, KEY_MASK), keys.core_key)
    except ValueError as exc:
        raise CorruptKeyDataError(f"Key block cannot be decrypted: {exc}") from exc
    key = pkcs7_unpad(decrypted)[len(KEY_PREFIX):]
    if not key:
        raise CorruptKeyDataError("Key block holds no key after its prefix")
    return key


def _parse_format(meta_data: bytes, keys: NcmKeySet) -> str:
    try:
        encoded = _mask(meta_data, META_MASK)[len(META_PREFIX):]
        decrypted = pkcs7_unpad(aes_ecb_decrypt(base64.b64decode(encoded), keys.meta_key))
        meta = json.loads(decrypted[len(META_JSON_PREFIX):].decode("utf-8"))
    except ValueError as exc:
        raise MetadataError(f"Unreadable metadata: {exc}") from exc
    if not isinstance(meta, dict):
        raise MetadataError("Metadata is not a JSON object")
    fmt = meta.get("format")
    if not isinstance(fmt, str) or not fmt:
        return DEFAULT_FORMAT
    return fmt


def parse_container(file_obj: BinaryIO, file_size: int, keys: NcmKeySet = DEFAULT_KEYS) -> ContainerLayout:
    """Walk the header of an NCM file positioned at its start.

    On return ``file_obj`` is positioned at the first byte of the audio payload.
    """
    reader = _HeaderReader(file_obj, file_size)
    if reader.read_partial(len(NCM_MAGIC)) != NCM_MAGIC:
        raise InvalidFormatError("Not a valid NCM file")
    reader.skip(2, "reserved header bytes")

    key_length = reader.read_int("key length")
    if key_length == 0 or key_length % 16:
        raise CorruptKeyDataError(f"Invalid key block length {key_length}")
    key = _decrypt_key(reader.read(key_length, "key data"), keys)

    fmt = DEFAULT_FORMAT
    meta_length = reader.read_int("metadata length")
    if meta_length > 0:
        raw_meta = reader.read(meta_length, "metadata")
        try:
            fmt = _parse_format(raw_meta, keys)
        except MetadataError as exc:
            logger.debug("Falling back to %s: %s", DEFAULT_FORMAT, exc)

    reader.skip(4 + 5, "crc block")
    cover_length = reader.read_int("cover length")
    reader.skip(cover_length, "cover image")

    audio_offset = reader.position
    return ContainerLayout(
        key=key,
        format=fmt,
        audio_offset=audio_offset,
        audio_length=file_size - audio_offset,
    )


def output_path_for(input_path: str, output_dir: str, fmt: str) -> str:
    base_name = _NCM_SUFFIX.sub("", os.path.basename(input_path))
    return os.path.join(output_dir, f"{base_name}.{fmt}")
