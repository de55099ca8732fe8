from __future__ import annotations

import struct
from typing import Any, BinaryIO, Dict, List, Optional

from .constants import (
    SUPPORTED_VERSIONS,
    DEFAULT_VERSION,
    FLAG_HEADER_FILTERED,
    FLAG_BODY_FILTERED,
    HEADER_PREFIX_SIZE,
    TYPE_NULL,
    TYPE_FALSE,
    TYPE_TRUE,
    TYPE_INT_ZERO,
    TYPE_UINT_ARRAY,
    TYPE_KEY,
    TYPE_STRING,
    TYPE_STREAM,
    TYPE_BSTREAM,
    TYPE_FLOAT_ZERO,
    TYPE_FLOAT,
    TYPE_DOUBLE,
    TYPE_ARRAY,
    TYPE_OBJECT,
)
from .errors import UnsupportedVersion
from .filters import PsbFilter
from .header import PsbHeader, header_length, pack_header
from .keynames import build_key_trie, flat_key_order
from .sources import StreamSource
from .tokens import Float32, UIntArray, KeyRef, StreamRef
from .varint import uint_width, int_width, pack_uint, pack_int


_F32 = struct.Struct("<f")
_F64 = struct.Struct("<d")
_INT64_MIN = -(1 << 63)
_INT64_MAX = (1 << 63) - 1
_U32_MAX = 0xFFFFFFFF


def encode_uint_array(values) -> bytes:
    values = list(values)
    for v in values:
        if not 0 <= v <= _U32_MAX:
            raise ValueError(f"uint array element {v} out of u32 range")
    count_width = uint_width(len(values))
    elem_width = uint_width(max(values, default=0))
    out = bytearray()
    out.append(TYPE_UINT_ARRAY + count_width - 1)
    out += pack_uint(len(values), count_width)
    out.append(TYPE_UINT_ARRAY + elem_width - 1)
    for v in values:
        out += pack_uint(v, elem_width)
    return bytes(out)


def encode_int(n: int) -> bytes:
    if not _INT64_MIN <= n <= _INT64_MAX:
        raise ValueError(f"Integer {n} does not fit in 64 bits")
    if n == 0:
        return bytes([TYPE_INT_ZERO])
    width = int_width(n)
    return bytes([TYPE_INT_ZERO + width]) + pack_int(n, width)


def _encode_ref(base: int, index: int) -> bytes:
    width = uint_width(index)
    return bytes([base + width - 1]) + pack_uint(index, width)


class PsbWriter:
    """Serialize a document tree into a PSB container.

    ``stream_source`` supplies payloads for stream refs that carry an index
    but no inline data; each identifier is requested once per write. A
    filter is stateful, so pass a fresh instance for every container.
    """

    def __init__(
        self,
        version: int = DEFAULT_VERSION,
        psb_filter: Optional[PsbFilter] = None,
        stream_source: Optional[StreamSource] = None,
    ):
        if version not in SUPPORTED_VERSIONS:
            raise UnsupportedVersion(f"Unsupported PSB version {version}")
        self.version = version
        self.filter = psb_filter
        self.stream_source = stream_source
        self._reset()

    def _reset(self):
        self._keys = set()
        self._strings = set()
        self._refs: List[StreamRef] = []
        self._key_index: Dict[str, int] = {}
        self._string_index: Dict[str, int] = {}
        self._new_ref_index: Dict[int, int] = {}
        self._fetched: Dict[str, bytes] = {}

    # Collection pass

    def _collect(self, value: Any) -> None:
        if value is None or isinstance(value, (bool, int, float, Float32, UIntArray)):
            return
        if isinstance(value, str):
            self._strings.add(value)
        elif isinstance(value, KeyRef):
            if self.version != 1:
                raise ValueError("Key references are only valid in version 1 containers")
            self._keys.add(value.name)
        elif isinstance(value, StreamRef):
            if value.is_bstream and self.version < 4:
                raise ValueError("B-streams require PSB version 4")
            self._refs.append(value)
        elif isinstance(value, (list, tuple)):
            for item in value:
                self._collect(item)
        elif isinstance(value, dict):
            for k, item in value.items():
                if not isinstance(k, str):
                    raise TypeError(f"Object keys must be str, got {type(k).__name__}")
                self._keys.add(k)
                self._collect(item)
        else:
            raise TypeError(f"Cannot encode value of type {type(value).__name__}")

    def _assign_streams(self, is_bstream: bool) -> List[bytes]:
        refs = [r for r in self._refs if r.is_bstream == is_bstream]
        payloads: Dict[int, bytes] = {}
        referenced = {r.index for r in refs if r.index is not None}
        # indices below the highest referenced one must still be present,
        # so unreferenced blobs come from the stream source
        explicit = list(range(max(referenced) + 1)) if referenced else []
        for i in explicit:
            if i in referenced:
                continue
            identifier = StreamRef(i, is_bstream).identifier
            try:
                self._fetch(identifier)
            except (KeyError, OSError, ValueError) as e:
                kind = "b-stream" if is_bstream else "stream"
                raise ValueError(
                    f"Explicit {kind} indices must be contiguous from 0; no data for unreferenced {identifier}"
                ) from e
        next_index = len(explicit)
        for r in refs:
            if r.index is None:
                if id(r) in self._new_ref_index:
                    continue
                if r.data is None:
                    raise ValueError("Stream reference has neither index nor data")
                self._new_ref_index[id(r)] = next_index
                payloads[next_index] = r.data
                next_index += 1
            elif r.index not in payloads and r.data is not None:
                payloads[r.index] = r.data
        for i in explicit:
            if i not in payloads:
                payloads[i] = self._fetch(StreamRef(i, is_bstream).identifier)
        return [payloads[i] for i in range(next_index)]

    def _fetch(self, identifier: str) -> bytes:
        data = self._fetched.get(identifier)
        if data is None:
            if self.stream_source is None:
                raise ValueError(f"No data for {identifier} and no stream source configured")
            data = bytes(self.stream_source.get_stream(identifier))
            self._fetched[identifier] = data
        return data

    # Token encoding

    def encode_value(self, value: Any) -> bytes:
        if value is None:
            return bytes([TYPE_NULL])
        if isinstance(value, bool):
            return bytes([TYPE_TRUE if value else TYPE_FALSE])
        if isinstance(value, int):
            return encode_int(value)
        if isinstance(value, Float32):
            raw = _F32.pack(value.value)
            if raw == b"\x00\x00\x00\x00":
                return bytes([TYPE_FLOAT_ZERO])
            return bytes([TYPE_FLOAT]) + raw
        if isinstance(value, float):
            return bytes([TYPE_DOUBLE]) + _F64.pack(value)
        if isinstance(value, str):
            return _encode_ref(TYPE_STRING, self._string_index[value])
        if isinstance(value, KeyRef):
            return _encode_ref(TYPE_KEY, self._key_index[value.name])
        if isinstance(value, StreamRef):
            index = value.index if value.index is not None else self._new_ref_index[id(value)]
            return _encode_ref(TYPE_BSTREAM if value.is_bstream else TYPE_STREAM, index)
        if isinstance(value, UIntArray):
            return encode_uint_array(value.values)
        if isinstance(value, (list, tuple)):
            children = [self.encode_value(item) for item in value]
            return bytes([TYPE_ARRAY]) + self._pack_children(children)
        if isinstance(value, dict):
            indices = [self._key_index[k] for k in value]
            children = [self.encode_value(item) for item in value.values()]
            return bytes([TYPE_OBJECT]) + encode_uint_array(indices) + self._pack_children(children)
        raise TypeError(f"Cannot encode value of type {type(value).__name__}")

    @staticmethod
    def _pack_children(children: List[bytes]) -> bytes:
        offsets = []
        pos = 0
        for c in children:
            offsets.append(pos)
            pos += len(c)
        return encode_uint_array(offsets) + b"".join(children)

    # Container assembly

    def dumps(self, root: Any) -> bytes:
        self._reset()
        self._collect(root)
        streams = self._assign_streams(False)
        bstreams = self._assign_streams(True) if self.version >= 4 else []

        hdr = PsbHeader(version=self.version)
        if self.filter is not None and self.version >= 3:
            hdr.flags = FLAG_HEADER_FILTERED | FLAG_BODY_FILTERED
        start = HEADER_PREFIX_SIZE + header_length(self.version)
        body = bytearray()

        def here() -> int:
            return start + len(body)

        if self.version == 1:
            names = flat_key_order(self._keys)
            self._key_index = {k: i for i, k in enumerate(names)}
            blob = bytearray()
            offsets = []
            for k in names:
                offsets.append(len(blob))
                blob += k.encode("utf-8") + b"\x00"
            hdr.keys_offsets_offset = here()
            body += encode_uint_array(offsets)
            hdr.keys_blob_offset = here()
            body += blob
        else:
            trie = build_key_trie(self._keys)
            self._key_index = {k: i for i, k in enumerate(trie.keys)}
            hdr.keys_offsets_offset = hdr.keys_blob_offset = here()
            body += encode_uint_array(trie.value_offsets)
            body += encode_uint_array(trie.tree)
            body += encode_uint_array(trie.tails)

        strings = sorted(self._strings, key=lambda s: (len(s.encode("utf-8")), s))
        self._string_index = {s: i for i, s in enumerate(strings)}

        hdr.root_offset = here()
        body += self.encode_value(root)

        blob = bytearray()
        offsets = []
        for s in strings:
            offsets.append(len(blob))
            blob += s.encode("utf-8") + b"\x00"
        hdr.strings_offsets_offset = here()
        body += encode_uint_array(offsets)
        hdr.strings_blob_offset = here()
        body += blob

        (
            hdr.streams_offsets_offset,
            hdr.streams_sizes_offset,
            hdr.streams_blob_offset,
        ) = self._append_blobs(body, here, streams)
        if self.version >= 4:
            (
                hdr.bstreams_offsets_offset,
                hdr.bstreams_sizes_offset,
                hdr.bstreams_blob_offset,
            ) = self._append_blobs(body, here, bstreams)

        head = pack_header(hdr, self.filter)
        if self.filter is not None and (self.version < 3 or hdr.body_filtered):
            lo, hi = hdr.filter_range()
            body[lo - start:hi - start] = self.filter.apply(bytes(body[lo - start:hi - start]))
        return head + bytes(body)

    @staticmethod
    def _append_blobs(body: bytearray, here, payloads: List[bytes]):
        offsets = []
        pos = 0
        for p in payloads:
            offsets.append(pos)
            pos += len(p)
        offsets_at = here()
        body += encode_uint_array(offsets)
        sizes_at = here()
        body += encode_uint_array([len(p) for p in payloads])
        blob_at = here()
        for p in payloads:
            body += p
        return offsets_at, sizes_at, blob_at

    def write(self, root: Any, out: BinaryIO) -> int:
        data = self.dumps(root)
        out.write(data)
        return len(data)


def dump(root: Any, path: str, version: int = DEFAULT_VERSION, psb_filter: Optional[PsbFilter] = None,
         stream_source: Optional[StreamSource] = None) -> int:
    writer = PsbWriter(version=version, psb_filter=psb_filter, stream_source=stream_source)
    with open(path, "wb") as f:
        return writer.write(root, f)


def dumps(root: Any, version: int = DEFAULT_VERSION, psb_filter: Optional[PsbFilter] = None,
          stream_source: Optional[StreamSource] = None) -> bytes:
    return PsbWriter(version=version, psb_filter=psb_filter, stream_source=stream_source).dumps(root)
