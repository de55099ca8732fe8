from __future__ import annotations

import struct
import zlib
from dataclasses import dataclass
from typing import BinaryIO, Optional

from .constants import (
    PSB_MAGIC,
    SUPPORTED_VERSIONS,
    FLAG_HEADER_FILTERED,
    FLAG_BODY_FILTERED,
    HEADER_BASE_SIZE,
    HEADER_CHECKSUM_SIZE,
    HEADER_BSTREAM_SIZE,
    HEADER_PREFIX_SIZE,
)
from .errors import (
    BadMagic,
    UnsupportedVersion,
    ChecksumMismatch,
    TruncatedInput,
    FilterRequired,
    OffsetOutOfRange,
)
from .filters import PsbFilter


_PREFIX_STRUCT = struct.Struct("<4sHH")
_BASE_STRUCT = struct.Struct("<8I")
_U32 = struct.Struct("<I")
_BSTREAM_STRUCT = struct.Struct("<3I")

# Checksum coverage inside the header block
_CHECKSUM_AT = HEADER_BASE_SIZE
_BSTREAM_AT = HEADER_BASE_SIZE + HEADER_CHECKSUM_SIZE


@dataclass
class PsbHeader:
    version: int
    flags: int = 0
    keys_offsets_offset: int = 0
    keys_blob_offset: int = 0
    strings_offsets_offset: int = 0
    strings_blob_offset: int = 0
    streams_offsets_offset: int = 0
    streams_sizes_offset: int = 0
    streams_blob_offset: int = 0
    root_offset: int = 0
    checksum: int = 0
    bstreams_offsets_offset: int = 0
    bstreams_sizes_offset: int = 0
    bstreams_blob_offset: int = 0

    @property
    def header_filtered(self) -> bool:
        return bool(self.flags & FLAG_HEADER_FILTERED)

    @property
    def body_filtered(self) -> bool:
        return bool(self.flags & FLAG_BODY_FILTERED)

    @property
    def length(self) -> int:
        return header_length(self.version)

    @property
    def end(self) -> int:
        """Absolute offset of the first byte after the header."""
        return HEADER_PREFIX_SIZE + self.length

    def offsets(self) -> dict:
        out = {
            "keys_offsets_offset": self.keys_offsets_offset,
            "keys_blob_offset": self.keys_blob_offset,
            "strings_offsets_offset": self.strings_offsets_offset,
            "strings_blob_offset": self.strings_blob_offset,
            "streams_offsets_offset": self.streams_offsets_offset,
            "streams_sizes_offset": self.streams_sizes_offset,
            "streams_blob_offset": self.streams_blob_offset,
            "root_offset": self.root_offset,
        }
        if self.version >= 4:
            out["bstreams_offsets_offset"] = self.bstreams_offsets_offset
            out["bstreams_sizes_offset"] = self.bstreams_sizes_offset
            out["bstreams_blob_offset"] = self.bstreams_blob_offset
        return out

    def filter_range(self) -> tuple:
        """Body span covered by the filter overlay."""
        end = self.bstreams_offsets_offset if self.version >= 4 else self.streams_offsets_offset
        return self.keys_offsets_offset, end

    def validate(self, stream_length: int) -> None:
        for name, value in self.offsets().items():
            if value < self.end or value > stream_length:
                raise OffsetOutOfRange(f"Header field {name}={value:#x} outside [{self.end:#x}, {stream_length:#x}]")
        start, end = self.filter_range()
        if end < start:
            raise OffsetOutOfRange("Filtered range ends before it starts")


def header_length(version: int) -> int:
    if version not in SUPPORTED_VERSIONS:
        raise UnsupportedVersion(f"Unsupported PSB version {version}")
    n = HEADER_BASE_SIZE
    if version >= 3:
        n += HEADER_CHECKSUM_SIZE
    if version >= 4:
        n += HEADER_BSTREAM_SIZE
    return n


def header_checksum(block: bytes, version: int) -> int:
    covered = block[:_CHECKSUM_AT]
    if version >= 4:
        covered += block[_BSTREAM_AT:_BSTREAM_AT + HEADER_BSTREAM_SIZE]
    return zlib.adler32(covered) & 0xFFFFFFFF


def read_header(f: BinaryIO, psb_filter: Optional[PsbFilter] = None) -> PsbHeader:
    f.seek(0)
    raw = f.read(_PREFIX_STRUCT.size)
    if raw is None or len(raw) != _PREFIX_STRUCT.size:
        raise TruncatedInput("PSB header too short")
    magic, version, flags = _PREFIX_STRUCT.unpack(raw)
    if magic != PSB_MAGIC:
        raise BadMagic("Bad PSB magic")
    n = header_length(version)
    block = f.read(n)
    if block is None or len(block) != n:
        raise TruncatedInput("PSB header block too short")

    if version >= 3 and flags & FLAG_HEADER_FILTERED:
        if psb_filter is None:
            raise FilterRequired("Header is filtered but no filter was given")
        block = psb_filter.apply(block)
    if version >= 3 and flags & FLAG_BODY_FILTERED and psb_filter is None:
        raise FilterRequired("Body is filtered but no filter was given")

    hdr = PsbHeader(version=version, flags=flags)
    (
        hdr.keys_offsets_offset,
        hdr.keys_blob_offset,
        hdr.strings_offsets_offset,
        hdr.strings_blob_offset,
        hdr.streams_offsets_offset,
        hdr.streams_sizes_offset,
        hdr.streams_blob_offset,
        hdr.root_offset,
    ) = _BASE_STRUCT.unpack_from(block, 0)
    if version >= 3:
        (hdr.checksum,) = _U32.unpack_from(block, _CHECKSUM_AT)
        actual = header_checksum(block, version)
        if actual != hdr.checksum:
            raise ChecksumMismatch(f"Header checksum mismatch (stored {hdr.checksum:#010x}, computed {actual:#010x})")
    if version >= 4:
        (
            hdr.bstreams_offsets_offset,
            hdr.bstreams_sizes_offset,
            hdr.bstreams_blob_offset,
        ) = _BSTREAM_STRUCT.unpack_from(block, _BSTREAM_AT)
    return hdr


def pack_header(hdr: PsbHeader, psb_filter: Optional[PsbFilter] = None) -> bytes:
    """Serialize magic, version, flags and the header block.

    The checksum field is recomputed. For v3+ with ``HEADER_FILTERED`` set the
    block is passed through ``psb_filter`` after the checksum is stored.
    """
    n = header_length(hdr.version)
    block = bytearray(n)
    _BASE_STRUCT.pack_into(
        block,
        0,
        hdr.keys_offsets_offset,
        hdr.keys_blob_offset,
        hdr.strings_offsets_offset,
        hdr.strings_blob_offset,
        hdr.streams_offsets_offset,
        hdr.streams_sizes_offset,
        hdr.streams_blob_offset,
        hdr.root_offset,
    )
    if hdr.version >= 4:
        _BSTREAM_STRUCT.pack_into(
            block,
            _BSTREAM_AT,
            hdr.bstreams_offsets_offset,
            hdr.bstreams_sizes_offset,
            hdr.bstreams_blob_offset,
        )
    if hdr.version >= 3:
        hdr.checksum = header_checksum(bytes(block), hdr.version)
        _U32.pack_into(block, _CHECKSUM_AT, hdr.checksum)
    out = bytes(block)
    if hdr.version >= 3 and hdr.flags & FLAG_HEADER_FILTERED:
        if psb_filter is None:
            raise FilterRequired("HEADER_FILTERED set but no filter was given")
        out = psb_filter.apply(out)
    return _PREFIX_STRUCT.pack(PSB_MAGIC, hdr.version, hdr.flags) + out
