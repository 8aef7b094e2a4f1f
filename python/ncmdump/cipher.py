"""AES helpers and the RC4-like keystream used by NCM audio payloads."""

from __future__ import annotations

from typing import List, Sequence, Union

import numpy as np
from Crypto.Cipher import AES

Buffer = Union[bytearray, memoryview]


def aes_ecb_decrypt(data: bytes, key: bytes) -> bytes:
    if len(data) % AES.block_size:
        raise ValueError(f"AES-ECB input of {len(data)} bytes is not block aligned")
    return AES.new(key, AES.MODE_ECB).decrypt(bytes(data))


def pkcs7_unpad(data: bytes) -> bytes:
    if not data:
        return data
    padding = data[-1]
    if 0 < padding <= AES.block_size and padding <= len(data):
        return data[:-padding]
    return data


def build_key_box(key: bytes) -> List[int]:
    if not key:
        raise ValueError("key box derivation needs a non-empty key")
    box = list(range(256))
    last_byte = key_offset = 0
    for i in range(256):
        swap = box[i]
        c = (swap + last_byte + key[key_offset]) & 0xFF
        key_offset = (key_offset + 1) % len(key)
        box[i] = box[c]
        box[c] = swap
        last_byte = c
    return box


def keystream_byte(box: Sequence[int], n: int) -> int:
    """Keystream byte for absolute payload offset ``n``; depends only on ``n % 256``."""
    j = (n + 1) & 0xFF
    return box[(box[j] + box[(box[j] + j) & 0xFF]) & 0xFF]


def build_keystream(box: Sequence[int]) -> np.ndarray:
    return np.array([keystream_byte(box, n) for n in range(256)], dtype=np.uint8)


def decrypt_chunk(buffer: Buffer, keystream: np.ndarray, offset: int) -> None:
    """XOR ``buffer`` in place, treating its first byte as payload offset ``offset``."""
    if not len(buffer):
        return
    data = np.frombuffer(buffer, dtype=np.uint8)
    data ^= np.resize(np.roll(keystream, -(offset & 0xFF)), data.shape[0])
