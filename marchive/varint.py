from __future__ import annotations

"""
Width-selected little-endian integers used throughout PSB.

Every numeric operand in the token stream is stored with an explicit byte
width chosen by the preceding type id. Unsigned operands (offsets, counts,
string/key/stream indices, array elements) use 1..4 bytes; signed integers
use 1..8 bytes in two's complement, so the 3-byte int32 form and the 5..8
byte int64 forms are plain sign-extended reads.
"""

from typing import BinaryIO

from .errors import TruncatedInput


def uint_width(n: int, max_width: int = 4) -> int:
    if n < 0:
        raise ValueError("uint: negative not supported")
    for width in range(1, max_width + 1):
        if n < (1 << (8 * width)):
            return width
    raise ValueError(f"uint: {n} does not fit in {max_width} bytes")


def int_width(n: int) -> int:
    for width in range(1, 9):
        bound = 1 << (8 * width - 1)
        if -bound <= n < bound:
            return width
    raise ValueError(f"int: {n} does not fit in 8 bytes")


def pack_uint(n: int, width: int) -> bytes:
    return n.to_bytes(width, "little", signed=False)


def pack_int(n: int, width: int) -> bytes:
    return n.to_bytes(width, "little", signed=True)


def unpack_uint(data: bytes) -> int:
    return int.from_bytes(data, "little", signed=False)


def unpack_int(data: bytes) -> int:
    return int.from_bytes(data, "little", signed=True)


def read_exact(f: BinaryIO, n: int) -> bytes:
    b = f.read(n)
    if b is None or len(b) != n:
        raise TruncatedInput(f"Unexpected end of input (wanted {n} bytes)")
    return bytes(b)


def read_uint(f: BinaryIO, width: int) -> int:
    return unpack_uint(read_exact(f, width))


def read_int(f: BinaryIO, width: int) -> int:
    return unpack_int(read_exact(f, width))
