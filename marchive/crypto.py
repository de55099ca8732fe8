from __future__ import annotations

import hashlib
import os
import random
from typing import List, Sequence

from Cryptodome.Util.strxor import strxor

from .constants import (
    DEFAULT_MARCHIVE_SEED,
    DEFAULT_MARCHIVE_KEY_LENGTH,
    MARCHIVE_HEADER_SIZE,
)


_MASK32 = 0xFFFFFFFF
_MT_N = 624


def _mt_state_from_array(key: Sequence[int]) -> List[int]:
    # MT19937 init_by_array; the standard library only exposes it through
    # seed(int), which drops high zero words from the key.
    mt = [0] * _MT_N
    mt[0] = 19650218
    for i in range(1, _MT_N):
        mt[i] = (1812433253 * (mt[i - 1] ^ (mt[i - 1] >> 30)) + i) & _MASK32
    i, j = 1, 0
    for _ in range(max(_MT_N, len(key))):
        mt[i] = ((mt[i] ^ ((mt[i - 1] ^ (mt[i - 1] >> 30)) * 1664525)) + key[j] + j) & _MASK32
        i += 1
        j += 1
        if i >= _MT_N:
            mt[0] = mt[_MT_N - 1]
            i = 1
        if j >= len(key):
            j = 0
    for _ in range(_MT_N - 1):
        mt[i] = ((mt[i] ^ ((mt[i - 1] ^ (mt[i - 1] >> 30)) * 1566083941)) - i) & _MASK32
        i += 1
        if i >= _MT_N:
            mt[0] = mt[_MT_N - 1]
            i = 1
    mt[0] = 0x80000000
    return mt


def derive_key(file_name: str, seed: str = DEFAULT_MARCHIVE_SEED, key_length: int = DEFAULT_MARCHIVE_KEY_LENGTH) -> bytes:
    """Key buffer for one ``.m`` file.

    MD5 of ``seed + lower(basename)`` seeds MT19937 as four little-endian
    words; 32-bit outputs are concatenated little-endian and cut to
    ``key_length``.
    """
    if not file_name:
        raise ValueError("file name is required for key derivation")
    if key_length <= 0:
        raise ValueError("key length must be positive")
    digest = hashlib.md5((seed + os.path.basename(file_name).lower()).encode("utf-8")).digest()
    words = [int.from_bytes(digest[i:i + 4], "little") for i in range(0, 16, 4)]
    rng = random.Random()
    rng.setstate((3, tuple(_mt_state_from_array(words)) + (_MT_N,), None))
    out = bytearray()
    while len(out) < key_length:
        out += rng.getrandbits(32).to_bytes(4, "little")
    return bytes(out[:key_length])


class MArchiveCrypto:
    """XOR cipher over an MArchive file; the 8-byte header is left in the clear."""

    def __init__(self, file_name: str, seed: str = DEFAULT_MARCHIVE_SEED, key_length: int = DEFAULT_MARCHIVE_KEY_LENGTH):
        self.file_name = file_name
        self.key = derive_key(file_name, seed, key_length)

    def keystream(self, position: int, n: int) -> bytes:
        """Key bytes for file offsets ``[position, position + n)``; header bytes get zeros."""
        out = bytearray()
        klen = len(self.key)
        while len(out) < n:
            pos = position + len(out)
            if pos < MARCHIVE_HEADER_SIZE:
                out += b"\x00" * min(MARCHIVE_HEADER_SIZE - pos, n - len(out))
                continue
            k = (pos - MARCHIVE_HEADER_SIZE) % klen
            out += self.key[k:k + min(klen - k, n - len(out))]
        return bytes(out)

    def apply(self, data: bytes, position: int = 0) -> bytes:
        """XOR ``data`` as found at file offset ``position``. Symmetric."""
        if not data:
            return b""
        return strxor(bytes(data), self.keystream(position, len(data)))
