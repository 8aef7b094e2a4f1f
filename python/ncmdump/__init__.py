"""Python implementation of NetEase NCM decryption."""

from .cipher import aes_ecb_decrypt, build_key_box, build_keystream, decrypt_chunk, keystream_byte, pkcs7_unpad
from .container import ContainerLayout, NcmKeySet, output_path_for, parse_container
from .decoder import NcmDecoder, scan_files
from .engine import NcmDump
from .errors import (
    CorruptKeyDataError,
    ErrorKind,
    InputNotFoundError,
    InvalidFormatError,
    MetadataError,
    NCMError,
    PoolDisposedError,
    TruncatedError,
    WorkerExitedError,
)
from .models import BatchProgress, DecodeResult, DecodeTask
from .pool import PooledWorker, WorkerPool, WorkerState
from .settings import DecoderSettings
from .version import __version__

__all__ = [
    "BatchProgress",
    "ContainerLayout",
    "CorruptKeyDataError",
    "DecodeResult",
    "DecodeTask",
    "DecoderSettings",
    "ErrorKind",
    "InputNotFoundError",
    "InvalidFormatError",
    "MetadataError",
    "NCMError",
    "NcmDecoder",
    "NcmDump",
    "NcmKeySet",
    "PoolDisposedError",
    "PooledWorker",
    "TruncatedError",
    "WorkerExitedError",
    "WorkerPool",
    "WorkerState",
    "__version__",
    "aes_ecb_decrypt",
    "build_key_box",
    "build_keystream",
    "decrypt_chunk",
    "keystream_byte",
    "output_path_for",
    "parse_container",
    "pkcs7_unpad",
    "scan_files",
]
