from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Tuple

from .constants import (
    TokenKind,
    TYPE_INVALID,
    TYPE_NULL,
    TYPE_FALSE,
    TYPE_TRUE,
    TYPE_INT_ZERO,
    TYPE_INT_MAX,
    TYPE_LONG_BASE,
    TYPE_LONG_MAX,
    TYPE_UINT_ARRAY,
    TYPE_KEY,
    TYPE_STRING,
    TYPE_STREAM,
    TYPE_FLOAT_ZERO,
    TYPE_FLOAT,
    TYPE_DOUBLE,
    TYPE_ARRAY,
    TYPE_OBJECT,
    TYPE_BSTREAM,
    TYPE_MAX,
    STREAM_ID_PREFIX,
    BSTREAM_ID_PREFIX,
)
from .errors import InvalidTypeId


@dataclass(frozen=True)
class Float32:
    """Single-precision float; kept apart from ``float`` (double) on purpose."""

    value: float = 0.0

    def __float__(self) -> float:
        return float(self.value)


@dataclass(frozen=True)
class UIntArray:
    values: Tuple[int, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, "values", tuple(int(v) for v in self.values))

    def __len__(self) -> int:
        return len(self.values)

    def __iter__(self):
        return iter(self.values)

    def __getitem__(self, i):
        return self.values[i]


@dataclass(frozen=True)
class KeyRef:
    """Raw key-name reference (version 1 containers only)."""

    name: str


@dataclass(eq=False)
class StreamRef:
    """Reference to a binary blob by index.

    Decoded refs carry only ``index``; the payload is fetched through the
    reader that produced them. Refs built in memory may carry ``data`` and no
    index, in which case the writer assigns one.
    """

    index: Optional[int] = None
    is_bstream: bool = False
    data: Optional[bytes] = field(default=None, repr=False)

    @property
    def identifier(self) -> str:
        prefix = BSTREAM_ID_PREFIX if self.is_bstream else STREAM_ID_PREFIX
        return f"{prefix}:{'new' if self.index is None else self.index}"

    @classmethod
    def from_identifier(cls, rep: str) -> "StreamRef":
        parts = rep.split(":")
        if len(parts) != 2 or parts[0] not in (STREAM_ID_PREFIX, BSTREAM_ID_PREFIX):
            raise ValueError(f"Not a stream identifier: {rep!r}")
        if not parts[1].isdigit():
            raise ValueError(f"Bad stream index in {rep!r}")
        return cls(index=int(parts[1]), is_bstream=parts[0] == BSTREAM_ID_PREFIX)

    @classmethod
    def from_bytes(cls, data: bytes, is_bstream: bool = False) -> "StreamRef":
        return cls(index=None, is_bstream=is_bstream, data=bytes(data))

    def __eq__(self, other):
        if not isinstance(other, StreamRef):
            return NotImplemented
        return (self.index, self.is_bstream) == (other.index, other.is_bstream)

    def __hash__(self):
        return hash((self.index, self.is_bstream))


def is_stream_identifier(rep: str) -> bool:
    try:
        StreamRef.from_identifier(rep)
    except ValueError:
        return False
    return True


# (first id, last id, kind, base id used to derive operand width)
_TYPE_RANGES = (
    (TYPE_NULL, TYPE_NULL, TokenKind.NULL, TYPE_NULL),
    (TYPE_FALSE, TYPE_TRUE, TokenKind.BOOL, TYPE_FALSE),
    (TYPE_INT_ZERO, TYPE_INT_MAX, TokenKind.INT, TYPE_INT_ZERO),
    (TYPE_LONG_BASE, TYPE_LONG_MAX, TokenKind.LONG, TYPE_INT_ZERO),
    (TYPE_UINT_ARRAY, TYPE_KEY - 1, TokenKind.UINT_ARRAY, TYPE_UINT_ARRAY - 1),
    (TYPE_KEY, TYPE_STRING - 1, TokenKind.KEY, TYPE_KEY - 1),
    (TYPE_STRING, TYPE_STREAM - 1, TokenKind.STRING, TYPE_STRING - 1),
    (TYPE_STREAM, TYPE_FLOAT_ZERO - 1, TokenKind.STREAM, TYPE_STREAM - 1),
    (TYPE_FLOAT_ZERO, TYPE_FLOAT, TokenKind.FLOAT, TYPE_FLOAT_ZERO),
    (TYPE_DOUBLE, TYPE_DOUBLE, TokenKind.DOUBLE, TYPE_DOUBLE),
    (TYPE_ARRAY, TYPE_ARRAY, TokenKind.ARRAY, TYPE_ARRAY),
    (TYPE_OBJECT, TYPE_OBJECT, TokenKind.OBJECT, TYPE_OBJECT),
    (TYPE_BSTREAM, TYPE_MAX, TokenKind.BSTREAM, TYPE_BSTREAM - 1),
)


def kind_of(type_id: int) -> Tuple[TokenKind, int]:
    """Map a type id to ``(kind, operand_width)``.

    For ints the width is the payload byte count (0 for the zero id); for
    floats it is 0 or 4; for refs and uint arrays it is the index/count width.
    """
    if type_id != TYPE_INVALID:
        for first, last, kind, base in _TYPE_RANGES:
            if first <= type_id <= last:
                if kind == TokenKind.FLOAT:
                    return kind, 0 if type_id == TYPE_FLOAT_ZERO else 4
                if kind in (TokenKind.NULL, TokenKind.BOOL, TokenKind.DOUBLE, TokenKind.ARRAY, TokenKind.OBJECT):
                    return kind, 0
                return kind, type_id - base
    raise InvalidTypeId(f"Invalid token type id {type_id}")


def type_id_for(kind: TokenKind, width: int) -> int:
    """Inverse of :func:`kind_of` for width-selected kinds."""
    if kind in (TokenKind.INT, TokenKind.LONG):
        if not 0 <= width <= 8:
            raise ValueError(f"int width {width} out of range")
        return TYPE_INT_ZERO + width
    bases = {
        TokenKind.UINT_ARRAY: TYPE_UINT_ARRAY,
        TokenKind.KEY: TYPE_KEY,
        TokenKind.STRING: TYPE_STRING,
        TokenKind.STREAM: TYPE_STREAM,
        TokenKind.BSTREAM: TYPE_BSTREAM,
    }
    if kind not in bases:
        raise ValueError(f"{kind.name} has no width-selected type id")
    if not 1 <= width <= 4:
        raise ValueError(f"{kind.name} width {width} out of range")
    return bases[kind] + width - 1
