from __future__ import annotations

import io
from typing import BinaryIO

from .errors import TruncatedInput
from .filters import PsbFilter


class OverlayReader(io.RawIOBase):
    """Read-only view of ``base`` with ``[start, end)`` passed through a filter.

    Filtered bytes are decoded on demand as a growing prefix of the range, so
    the filter always sees each byte once and in order no matter how callers
    seek and read.
    """

    def __init__(self, base: BinaryIO, start: int, end: int, psb_filter: PsbFilter):
        if not base.seekable():
            raise ValueError("Overlay base stream must be seekable")
        if end < start:
            raise ValueError("Overlay range ends before it starts")
        self._base = base
        self._start = start
        self._end = end
        self._filter = psb_filter
        self._decoded = bytearray()
        self._pos = 0
        self._length = base.seek(0, io.SEEK_END)

    def readable(self) -> bool:
        return True

    def seekable(self) -> bool:
        return True

    def tell(self) -> int:
        return self._pos

    def seek(self, offset: int, whence: int = io.SEEK_SET) -> int:
        if whence == io.SEEK_SET:
            pos = offset
        elif whence == io.SEEK_CUR:
            pos = self._pos + offset
        elif whence == io.SEEK_END:
            pos = self._length + offset
        else:
            raise ValueError(f"Invalid whence {whence}")
        if pos < 0:
            raise ValueError("Negative seek position")
        self._pos = pos
        return pos

    def _decode_through(self, upto: int) -> None:
        have = self._start + len(self._decoded)
        if upto <= have:
            return
        self._base.seek(have)
        raw = self._base.read(upto - have)
        if raw is None or len(raw) != upto - have:
            raise TruncatedInput("Could not read all bytes in filtered region")
        self._decoded += self._filter.apply(raw)

    def _read_plain(self, pos: int, n: int) -> bytes:
        self._base.seek(pos)
        return self._base.read(n) or b""

    def readinto(self, b) -> int:
        want = len(b)
        pos = self._pos
        out = bytearray()
        while len(out) < want and pos < self._length:
            remaining = want - len(out)
            if pos < self._start:
                chunk = self._read_plain(pos, min(remaining, self._start - pos))
            elif pos >= self._end:
                chunk = self._read_plain(pos, remaining)
            else:
                stop = min(self._end, pos + remaining)
                self._decode_through(stop)
                chunk = bytes(self._decoded[pos - self._start:stop - self._start])
            if not chunk:
                break
            out += chunk
            pos += len(chunk)
        n = len(out)
        b[:n] = out
        self._pos = pos
        return n

    def close(self) -> None:
        # the base stream belongs to whoever opened it
        self._decoded = bytearray()
        super().close()
