from __future__ import annotations

import io
import struct
from typing import Any, BinaryIO, Dict, List, Optional

from .constants import TokenKind, TYPE_FALSE, TYPE_FLOAT_ZERO
from .errors import (
    FormatError,
    InvalidTypeId,
    OffsetOutOfRange,
    TruncatedInput,
)
from .filters import PsbFilter
from .header import PsbHeader, read_header
from .keynames import KeyNames, FlatKeyNames
from .overlay import OverlayReader
from .tokens import Float32, UIntArray, KeyRef, StreamRef, kind_of
from .varint import read_exact, read_uint, read_int


_F32 = struct.Struct("<f")
_F64 = struct.Struct("<d")


class PsbReader:
    """Random-access reader for one PSB container.

    The header is parsed and verified on construction; the root token tree,
    key names, strings and blob payloads are decoded lazily and memoized.
    """

    def __init__(self, stream: BinaryIO, psb_filter: Optional[PsbFilter] = None):
        if not stream.seekable():
            raise ValueError("PSB source must be seekable")
        self._base = stream
        self.filter = psb_filter
        self.f: BinaryIO = stream
        self._owns_stream = False
        self.header: PsbHeader = read_header(stream, psb_filter)
        self.length = stream.seek(0, io.SEEK_END)
        self.header.validate(self.length)

        if psb_filter is not None and (self.version < 3 or self.header.body_filtered):
            start, end = self.header.filter_range()
            self.f = OverlayReader(stream, start, end, psb_filter)

        self._root: Any = None
        self._root_loaded = False
        self._keys = None
        self._string_offsets: Optional[UIntArray] = None
        self._strings: Dict[int, str] = {}
        self._stream_tables = None
        self._bstream_tables = None
        self.stream_cache: Dict[int, bytes] = {}
        self.bstream_cache: Dict[int, bytes] = {}

    @classmethod
    def open(cls, path: str, psb_filter: Optional[PsbFilter] = None) -> "PsbReader":
        f = open(path, "rb")
        try:
            reader = cls(f, psb_filter)
        except BaseException:
            f.close()
            raise
        reader._owns_stream = True
        return reader

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def close(self):
        if self.f is not self._base:
            self.f.close()
        if self._owns_stream and not self._base.closed:
            self._base.close()

    @property
    def version(self) -> int:
        return self.header.version

    @property
    def flags(self) -> int:
        return self.header.flags

    # Low-level reads

    def _seek(self, offset: int) -> None:
        if not 0 <= offset <= self.length:
            raise OffsetOutOfRange(f"Offset {offset:#x} outside container ({self.length:#x} bytes)")
        self.f.seek(offset)

    def _read_type(self) -> int:
        return read_exact(self.f, 1)[0]

    def _read_uint_array_body(self, count_width: int) -> UIntArray:
        count = read_uint(self.f, count_width)
        elem_type = self._read_type()
        kind, elem_width = kind_of(elem_type)
        if kind != TokenKind.UINT_ARRAY:
            raise InvalidTypeId(f"Bad uint array element width id {elem_type}")
        if count > self.length:
            raise TruncatedInput(f"Uint array count {count} exceeds container size")
        raw = read_exact(self.f, count * elem_width)
        return UIntArray(
            int.from_bytes(raw[i:i + elem_width], "little") for i in range(0, len(raw), elem_width)
        )

    def _read_uint_array(self) -> UIntArray:
        type_id = self._read_type()
        kind, width = kind_of(type_id)
        if kind != TokenKind.UINT_ARRAY:
            raise InvalidTypeId(f"Expected uint array, got type id {type_id}")
        return self._read_uint_array_body(width)

    def read_uint_array_at(self, offset: int) -> UIntArray:
        self._seek(offset)
        return self._read_uint_array()

    def _read_cstring_at(self, offset: int) -> str:
        self._seek(offset)
        out = bytearray()
        while True:
            chunk = self.f.read(256)
            if not chunk:
                raise TruncatedInput("Unterminated string")
            nul = chunk.find(b"\x00")
            if nul >= 0:
                out += chunk[:nul]
                break
            out += chunk
        try:
            return out.decode("utf-8")
        except UnicodeDecodeError as e:
            raise FormatError(f"String at {offset:#x} is not valid UTF-8") from e

    # Tables

    @property
    def key_names(self):
        if self._keys is None:
            if self.version == 1:
                offsets = self.read_uint_array_at(self.header.keys_offsets_offset)
                blob = self.header.keys_blob_offset
                self._keys = FlatKeyNames(offsets, lambda off: self._read_cstring_at(blob + off))
            else:
                self._seek(self.header.keys_blob_offset)
                value_offsets = self._read_uint_array()
                tree = self._read_uint_array()
                tails = self._read_uint_array()
                self._keys = KeyNames(value_offsets, tree, tails)
        return self._keys

    @property
    def keys(self) -> List[str]:
        return self.key_names.names()

    def get_key(self, index: int) -> str:
        return self.key_names[index]

    def get_string(self, index: int) -> str:
        cached = self._strings.get(index)
        if cached is not None:
            return cached
        if self._string_offsets is None:
            self._string_offsets = self.read_uint_array_at(self.header.strings_offsets_offset)
        if not 0 <= index < len(self._string_offsets):
            raise OffsetOutOfRange(f"String index {index} out of range ({len(self._string_offsets)} strings)")
        s = self._read_cstring_at(self.header.strings_blob_offset + self._string_offsets[index])
        self._strings[index] = s
        return s

    def _tables(self, bstream: bool):
        if bstream:
            if self.version < 4:
                raise InvalidTypeId("B-streams require PSB version 4")
            if self._bstream_tables is None:
                self._bstream_tables = (
                    self.read_uint_array_at(self.header.bstreams_offsets_offset),
                    self.read_uint_array_at(self.header.bstreams_sizes_offset),
                    self.header.bstreams_blob_offset,
                )
            return self._bstream_tables
        if self._stream_tables is None:
            self._stream_tables = (
                self.read_uint_array_at(self.header.streams_offsets_offset),
                self.read_uint_array_at(self.header.streams_sizes_offset),
                self.header.streams_blob_offset,
            )
        return self._stream_tables

    @property
    def stream_count(self) -> int:
        return len(self._tables(False)[0])

    @property
    def bstream_count(self) -> int:
        if self.version < 4:
            return 0
        return len(self._tables(True)[0])

    def _get_blob(self, index: int, bstream: bool) -> bytes:
        cache = self.bstream_cache if bstream else self.stream_cache
        data = cache.get(index)
        if data is not None:
            return data
        offsets, sizes, blob = self._tables(bstream)
        if not 0 <= index < len(offsets) or index >= len(sizes):
            what = "B-stream" if bstream else "Stream"
            raise OffsetOutOfRange(f"{what} index {index} out of range ({len(offsets)} entries)")
        start = blob + offsets[index]
        if start + sizes[index] > self.length:
            raise OffsetOutOfRange(f"Blob {index} runs past the end of the container")
        self._seek(start)
        data = read_exact(self.f, sizes[index])
        cache[index] = data
        return data

    def get_stream(self, index: int) -> bytes:
        return self._get_blob(index, False)

    def get_bstream(self, index: int) -> bytes:
        return self._get_blob(index, True)

    def resolve_stream(self, ref: StreamRef) -> bytes:
        if ref.index is None:
            if ref.data is None:
                raise ValueError("Stream reference has neither index nor data")
            return ref.data
        return self._get_blob(ref.index, ref.is_bstream)

    # Token tree

    @property
    def root(self) -> Any:
        if not self._root_loaded:
            self._root = self.read_token_at(self.header.root_offset)
            self._root_loaded = True
        return self._root

    def read_token_at(self, offset: int) -> Any:
        self._seek(offset)
        return self._read_token()

    def _read_token(self) -> Any:
        type_id = self._read_type()
        kind, width = kind_of(type_id)
        if kind == TokenKind.NULL:
            return None
        if kind == TokenKind.BOOL:
            return type_id != TYPE_FALSE
        if kind in (TokenKind.INT, TokenKind.LONG):
            return read_int(self.f, width) if width else 0
        if kind == TokenKind.FLOAT:
            if type_id == TYPE_FLOAT_ZERO:
                return Float32(0.0)
            return Float32(_F32.unpack(read_exact(self.f, 4))[0])
        if kind == TokenKind.DOUBLE:
            return _F64.unpack(read_exact(self.f, 8))[0]
        if kind == TokenKind.UINT_ARRAY:
            return self._read_uint_array_body(width)
        if kind == TokenKind.STRING:
            return self.get_string(read_uint(self.f, width))
        if kind == TokenKind.KEY:
            if self.version != 1:
                raise InvalidTypeId(f"Key reference token (type id {type_id}) only valid in version 1")
            return KeyRef(self.get_key(read_uint(self.f, width)))
        if kind == TokenKind.STREAM:
            return StreamRef(read_uint(self.f, width))
        if kind == TokenKind.BSTREAM:
            if self.version < 4:
                raise InvalidTypeId(f"B-stream token (type id {type_id}) requires version 4")
            return StreamRef(read_uint(self.f, width), is_bstream=True)
        if kind == TokenKind.ARRAY:
            offsets = self._read_uint_array()
            base = self.f.tell()
            return [self.read_token_at(base + off) for off in offsets]
        if kind == TokenKind.OBJECT:
            key_indices = self._read_uint_array()
            offsets = self._read_uint_array()
            if len(key_indices) != len(offsets):
                raise FormatError("Object key and offset tables differ in length")
            base = self.f.tell()
            obj = {}
            for ki, off in zip(key_indices, offsets):
                name = self.get_key(ki)
                if name in obj:
                    raise FormatError(f"Object repeats key {name!r}")
                obj[name] = self.read_token_at(base + off)
            return obj
        raise InvalidTypeId(f"Unhandled token type id {type_id}")


def load(path: str, psb_filter: Optional[PsbFilter] = None) -> Any:
    """Open ``path`` and return its fully decoded root value."""
    with PsbReader.open(path, psb_filter) as reader:
        return reader.root


def loads(data: bytes, psb_filter: Optional[PsbFilter] = None) -> Any:
    return PsbReader(io.BytesIO(data), psb_filter).root
