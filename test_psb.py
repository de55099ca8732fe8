from __future__ import annotations

import gc
import io
import os
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from marchive.constants import (
    FLAG_HEADER_FILTERED,
    FLAG_BODY_FILTERED,
    HEADER_PREFIX_SIZE,
    TYPE_INT_ZERO,
    TYPE_FLOAT_ZERO,
    TYPE_KEY,
    TYPE_BSTREAM,
    TYPE_INVALID,
    TYPE_OBJECT,
    TYPE_UINT_ARRAY,
    TokenKind,
)
from marchive.errors import (
    BadMagic,
    UnsupportedVersion,
    ChecksumMismatch,
    TruncatedInput,
    InvalidTypeId,
    OffsetOutOfRange,
    FilterRequired,
    FormatError,
)
from marchive.filters import EmoteCryptFilter, PsbFilter, XorShift128
from marchive.header import PsbHeader, header_length, pack_header, read_header
from marchive.jsonconv import to_json, from_json
from marchive.overlay import OverlayReader
from marchive.reader import PsbReader, loads, load
from marchive.sources import StreamSource, MappingStreamSource, DirectoryStreamSource, stream_file_name
from marchive.tokens import Float32, UIntArray, KeyRef, StreamRef, kind_of, type_id_for
from marchive.varint import uint_width, int_width, pack_int, unpack_int
from marchive.writer import PsbWriter, dumps, dump, encode_int, encode_uint_array


class CountingSource(StreamSource):
    def __init__(self, payloads):
        self.payloads = payloads
        self.calls = []

    def get_stream(self, identifier: str) -> bytes:
        self.calls.append(identifier)
        return self.payloads[identifier]


class NonSeekable(io.RawIOBase):
    def readable(self):
        return True

    def seekable(self):
        return False


def _sample_doc():
    return {
        "null": None,
        "t": True,
        "f": False,
        "zero": 0,
        "small": -3,
        "i24": -(1 << 23),
        "i32": (1 << 31) - 1,
        "big": 1 << 40,
        "neg64": -(1 << 63),
        "f32": Float32(1.5),
        "f32z": Float32(0.0),
        "f64": 1.5,
        "s": "héllo",
        "arr": [1, "x", [None]],
        "obj": {"z": 1, "a": 2},
        "u": UIntArray([1, 300, 70000]),
        "empty_arr": [],
        "empty_obj": {},
    }


class VarintTests(unittest.TestCase):
    def test_widths(self):
        self.assertEqual(1, uint_width(0))
        self.assertEqual(1, uint_width(255))
        self.assertEqual(2, uint_width(256))
        self.assertEqual(4, uint_width(0xFFFFFFFF))
        with self.assertRaises(ValueError):
            uint_width(1 << 32)
        with self.assertRaises(ValueError):
            uint_width(-1)
        self.assertEqual(1, int_width(-128))
        self.assertEqual(2, int_width(128))
        self.assertEqual(3, int_width(-(1 << 23)))
        self.assertEqual(8, int_width(-(1 << 63)))

    def test_three_byte_sign_extension(self):
        self.assertEqual(-1, unpack_int(b"\xff\xff\xff"))
        self.assertEqual(-(1 << 23), unpack_int(pack_int(-(1 << 23), 3)))

    def test_kind_of_table(self):
        self.assertEqual((TokenKind.INT, 0), kind_of(TYPE_INT_ZERO))
        self.assertEqual((TokenKind.INT, 3), kind_of(7))
        self.assertEqual((TokenKind.LONG, 5), kind_of(9))
        self.assertEqual((TokenKind.LONG, 8), kind_of(12))
        self.assertEqual((TokenKind.UINT_ARRAY, 1), kind_of(13))
        self.assertEqual((TokenKind.STRING, 4), kind_of(24))
        self.assertEqual((TokenKind.BSTREAM, 1), kind_of(TYPE_BSTREAM))
        self.assertEqual((TokenKind.FLOAT, 0), kind_of(TYPE_FLOAT_ZERO))
        for bad in (TYPE_INVALID, 38, 255):
            with self.assertRaises(InvalidTypeId):
                kind_of(bad)
        self.assertEqual(22, type_id_for(TokenKind.STRING, 2))


class RoundTripTests(unittest.TestCase):
    def test_all_token_kinds_roundtrip(self):
        for version in (2, 3, 4):
            with self.subTest(version=version):
                doc = _sample_doc()
                root = loads(dumps(doc, version=version))
                self.assertEqual(doc, root)
                self.assertEqual(list(doc), list(root))
                self.assertEqual(["z", "a"], list(root["obj"]))
                self.assertIs(root["t"], True)
                self.assertIs(root["f"], False)
                self.assertIsInstance(root["f32"], Float32)
                self.assertIsInstance(root["f64"], float)
                self.assertIsInstance(root["u"], UIntArray)

    def test_float32_and_float64_are_distinct(self):
        root = loads(dumps({"a": Float32(2.0), "b": 2.0}))
        self.assertNotEqual(root["a"], root["b"])
        self.assertEqual(2.0, float(root["a"]))

    def test_scenario_keys_strings_and_small_int(self):
        doc = {"a": "hello", "ab": 5, "b": ["world", None]}
        data = dumps(doc)
        with PsbReader(io.BytesIO(data)) as r:
            self.assertEqual(["a", "ab", "b"], r.keys)
            self.assertEqual(doc, r.root)
            self.assertEqual(5, r.root["ab"])
            self.assertEqual(["world", None], r.root["b"])
            self.assertEqual({"hello", "world"}, {r.get_string(0), r.get_string(1)})
        self.assertEqual(bytes([TYPE_INT_ZERO + 1, 5]), encode_int(5))

    def test_zero_uses_zero_width_id(self):
        self.assertEqual(bytes([TYPE_INT_ZERO]), encode_int(0))
        root = loads(dumps({"z32": 0, "z64": 0, "wide": 1 << 40}))
        self.assertEqual(0, root["z32"])
        self.assertEqual(0, root["z64"])
        self.assertEqual(1 << 40, root["wide"])
        self.assertEqual(TYPE_INT_ZERO + 6, encode_int(1 << 40)[0])

    def test_uint_array_encoding_widths(self):
        raw = encode_uint_array([1, 300])
        self.assertEqual(bytes([13, 2, 14, 1, 0, 0x2C, 0x01]), raw)
        self.assertEqual(bytes([13, 0, 13]), encode_uint_array([]))

    def test_version1_flat_keys_and_key_refs(self):
        doc = {"name": KeyRef("other"), "n": 1, "list": [KeyRef("name")]}
        data = dumps(doc, version=1)
        with PsbReader(io.BytesIO(data)) as r:
            self.assertEqual(1, r.version)
            self.assertEqual(["n", "list", "name", "other"], r.keys)
            self.assertEqual(doc, r.root)

    def test_file_load_and_dump(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "doc.psb")
            dump({"k": [1, 2, 3]}, path, version=4)
            self.assertEqual({"k": [1, 2, 3]}, load(path))

    def test_root_is_memoized(self):
        r = PsbReader(io.BytesIO(dumps({"a": [1]})))
        self.assertIs(r.root, r.root)


class StreamTests(unittest.TestCase):
    def test_inline_stream_roundtrip_and_cache(self):
        payload = os.urandom(300)
        doc = {"img": StreamRef.from_bytes(payload), "again": [StreamRef.from_bytes(b"")]}
        r = PsbReader(io.BytesIO(dumps(doc)))
        self.assertEqual(StreamRef(0), r.root["img"])
        self.assertEqual(StreamRef(1), r.root["again"][0])
        self.assertEqual(2, r.stream_count)
        first = r.resolve_stream(r.root["img"])
        self.assertEqual(payload, first)
        self.assertIs(first, r.get_stream(0))
        self.assertEqual(b"", r.get_stream(1))
        self.assertEqual({0, 1}, set(r.stream_cache))

    def test_stream_source_is_fetched_once(self):
        source = CountingSource({"_stream:0": b"zero", "_stream:1": b"one"})
        doc = {"a": StreamRef(0), "b": StreamRef(1), "c": [StreamRef(0), StreamRef(0)]}
        data = dumps(doc, stream_source=source)
        self.assertEqual(["_stream:0", "_stream:1"], sorted(source.calls))
        self.assertEqual(2, len(source.calls))
        r = PsbReader(io.BytesIO(data))
        self.assertEqual(b"zero", r.get_stream(0))
        self.assertEqual(b"one", r.get_stream(1))

    def test_explicit_indices_must_be_contiguous(self):
        source = MappingStreamSource({"_stream:1": b"x"})
        with self.assertRaises(ValueError):
            dumps({"a": StreamRef(1)}, stream_source=source)

    def test_unreferenced_streams_come_from_source(self):
        source = CountingSource({"_stream:0": b"unused", "_stream:1": b"used", "_stream:2": b"last"})
        data = dumps({"a": StreamRef(1), "b": StreamRef(2)}, stream_source=source)
        self.assertEqual(3, len(source.calls))
        r = PsbReader(io.BytesIO(data))
        self.assertEqual(3, r.stream_count)
        self.assertEqual(b"unused", r.get_stream(0))
        self.assertEqual(b"used", r.resolve_stream(r.root["a"]))

    def test_missing_source_is_rejected(self):
        with self.assertRaises(ValueError):
            dumps({"a": StreamRef(0)})

    def test_bstreams_require_v4(self):
        ref = StreamRef.from_bytes(b"bs", is_bstream=True)
        with self.assertRaises(ValueError):
            dumps({"a": ref}, version=3)
        r = PsbReader(io.BytesIO(dumps({"a": ref, "s": StreamRef.from_bytes(b"st")}, version=4)))
        self.assertEqual(StreamRef(0, is_bstream=True), r.root["a"])
        self.assertEqual(b"bs", r.resolve_stream(r.root["a"]))
        self.assertEqual(b"st", r.get_stream(0))
        self.assertEqual(1, r.bstream_count)

    def test_identifiers(self):
        self.assertEqual("_stream:3", StreamRef(3).identifier)
        self.assertEqual("_bstream:0", StreamRef(0, True).identifier)
        self.assertEqual(StreamRef(7, True), StreamRef.from_identifier("_bstream:7"))
        self.assertEqual("stream_3", stream_file_name("_stream:3"))
        with self.assertRaises(ValueError):
            StreamRef.from_identifier("_stream:x")

    def test_directory_source(self):
        with tempfile.TemporaryDirectory() as tmp:
            Path(tmp, "stream_0").write_bytes(b"disk")
            root = loads(dumps({"a": StreamRef(0)}, stream_source=DirectoryStreamSource(tmp)))
            self.assertEqual(StreamRef(0), root["a"])


class HeaderTests(unittest.TestCase):
    def test_header_lengths(self):
        self.assertEqual(32, header_length(1))
        self.assertEqual(32, header_length(2))
        self.assertEqual(36, header_length(3))
        self.assertEqual(48, header_length(4))
        with self.assertRaises(UnsupportedVersion):
            header_length(5)

    def _flip_all(self, version: int, covered):
        data = dumps({"a": "hello", "b": [1, 2]}, version=version)
        for pos in covered:
            for bit in range(8):
                bad = bytearray(data)
                bad[HEADER_PREFIX_SIZE + pos] ^= 1 << bit
                with self.assertRaises(ChecksumMismatch, msg=f"v{version} byte {pos} bit {bit}"):
                    PsbReader(io.BytesIO(bytes(bad)))

    def test_checksum_sensitivity_v3(self):
        self._flip_all(3, range(0, 36))

    def test_checksum_sensitivity_v4(self):
        self._flip_all(4, range(0, 48))

    def test_v2_has_no_checksum(self):
        data = dumps({"a": 1}, version=2)
        self.assertEqual(HEADER_PREFIX_SIZE + 32, read_header(io.BytesIO(data)).end)

    def test_v4_without_bstream_tables_is_rejected(self):
        end = HEADER_PREFIX_SIZE + header_length(4)
        hdr = PsbHeader(version=4)
        for name in ("keys_offsets_offset", "keys_blob_offset", "strings_offsets_offset", "strings_blob_offset",
                     "streams_offsets_offset", "streams_sizes_offset", "streams_blob_offset", "root_offset"):
            setattr(hdr, name, end)
        data = pack_header(hdr) + b"\x00" * 16
        with self.assertRaises(OffsetOutOfRange):
            PsbReader(io.BytesIO(data))

    def test_bad_magic_version_and_truncation(self):
        data = dumps({"a": 1})
        with self.assertRaises(BadMagic):
            PsbReader(io.BytesIO(b"XSB\x00" + data[4:]))
        with self.assertRaises(UnsupportedVersion):
            PsbReader(io.BytesIO(data[:4] + b"\x05\x00" + data[6:]))
        with self.assertRaises(TruncatedInput):
            PsbReader(io.BytesIO(data[:20]))

    def test_offsets_past_end_are_rejected(self):
        data = dumps({"a": "x" * 40})
        with self.assertRaises(OffsetOutOfRange):
            PsbReader(io.BytesIO(data[:-10]))

    def test_non_seekable_source(self):
        with self.assertRaises(ValueError):
            PsbReader(NonSeekable())


class MalformedTokenTests(unittest.TestCase):
    def _patched_root(self, version: int, type_id: int) -> bytes:
        data = bytearray(dumps({"a": 1}, version=version))
        hdr = read_header(io.BytesIO(bytes(data)))
        data[hdr.root_offset] = type_id
        return bytes(data)

    def test_invalid_type_id(self):
        r = PsbReader(io.BytesIO(self._patched_root(3, TYPE_INVALID)))
        with self.assertRaises(InvalidTypeId):
            r.root

    def test_key_ref_outside_v1(self):
        r = PsbReader(io.BytesIO(self._patched_root(3, TYPE_KEY)))
        with self.assertRaises(InvalidTypeId):
            r.root

    def test_bstream_below_v4(self):
        r = PsbReader(io.BytesIO(self._patched_root(3, TYPE_BSTREAM)))
        with self.assertRaises(InvalidTypeId):
            r.root

    def test_writer_rejects_bad_values(self):
        with self.assertRaises(ValueError):
            dumps({"a": KeyRef("x")}, version=3)
        with self.assertRaises(TypeError):
            dumps({1: "x"})
        with self.assertRaises(TypeError):
            dumps({"a": object()})
        with self.assertRaises(ValueError):
            dumps({"a": 1 << 64})
        with self.assertRaises(UnsupportedVersion):
            PsbWriter(version=7)

    def test_repeated_object_key(self):
        data = bytearray(dumps({"a": 1, "b": 2}))
        hdr = read_header(io.BytesIO(bytes(data)))
        root = hdr.root_offset
        # object id, then the key index array: count width, count, element width, elements
        self.assertEqual([TYPE_OBJECT, TYPE_UINT_ARRAY, 2, TYPE_UINT_ARRAY], list(data[root:root + 4]))
        data[root + 4] = data[root + 5] = 0
        r = PsbReader(io.BytesIO(bytes(data)))
        with self.assertRaises(FormatError):
            r.root

    def test_string_index_out_of_range(self):
        r = PsbReader(io.BytesIO(dumps({"a": "x"})))
        with self.assertRaises(OffsetOutOfRange):
            r.get_string(5)
        with self.assertRaises(OffsetOutOfRange):
            r.get_stream(0)


class FilterTests(unittest.TestCase):
    def test_xorshift_reference_sequence(self):
        rng = XorShift128(88675123)
        self.assertEqual(3701687786, rng.next())

    def test_filter_is_symmetric(self):
        data = os.urandom(1000)
        enc = EmoteCryptFilter(0x1234).apply(data)
        self.assertNotEqual(data, enc)
        self.assertEqual(data, EmoteCryptFilter(0x1234).apply(enc))

    def test_state_carries_across_calls(self):
        data = os.urandom(100)
        whole = EmoteCryptFilter(99).apply(data)
        f = EmoteCryptFilter(99)
        self.assertEqual(whole, f.apply(data[:7]) + f.apply(data[7:50]) + f.apply(data[50:]))

    def test_refill_only_when_word_is_exhausted(self):
        class Stub:
            def __init__(self):
                self.words = [0x000000AB, 0x11223344]

            def next(self):
                return self.words.pop(0)

        f = EmoteCryptFilter(0)
        f._rand = Stub()
        self.assertEqual(bytes([0xAB, 0x44, 0x33, 0x22, 0x11]), f.keystream(5))

    def test_overlay_read_pattern_independence(self):
        plain = bytes(range(256)) * 4
        start, end = 10, 900
        enc = plain[:start] + EmoteCryptFilter(7).apply(plain[start:end]) + plain[end:]
        ov = OverlayReader(io.BytesIO(enc), start, end, EmoteCryptFilter(7))
        ov.seek(500)
        self.assertEqual(plain[500:510], ov.read(10))
        ov.seek(5)
        self.assertEqual(plain[5:15], ov.read(10))
        ov.seek(0)
        self.assertEqual(plain, ov.read())
        ov.seek(-4, io.SEEK_END)
        self.assertEqual(plain[-4:], ov.read(100))

    def test_filtered_container_roundtrip(self):
        doc = {"a": "hello", "list": [1, 2.5, Float32(3.0)], "s": StreamRef.from_bytes(b"payload")}
        for version in (2, 3, 4):
            with self.subTest(version=version):
                data = dumps(doc, version=version, psb_filter=EmoteCryptFilter(0xC0FFEE))
                flags = int.from_bytes(data[6:8], "little")
                if version >= 3:
                    self.assertEqual(FLAG_HEADER_FILTERED | FLAG_BODY_FILTERED, flags)
                else:
                    self.assertEqual(0, flags)
                r = PsbReader(io.BytesIO(data), EmoteCryptFilter(0xC0FFEE))
                self.assertEqual(StreamRef(0), r.root["s"])
                self.assertEqual("hello", r.root["a"])
                self.assertEqual(b"payload", r.get_stream(0))

    def test_filter_required(self):
        data = dumps({"a": 1}, psb_filter=EmoteCryptFilter(5))
        with self.assertRaises(FilterRequired):
            PsbReader(io.BytesIO(data))

    def test_wrong_key_fails_checksum(self):
        data = dumps({"a": 1}, psb_filter=EmoteCryptFilter(5))
        with self.assertRaises(ChecksumMismatch):
            PsbReader(io.BytesIO(data), EmoteCryptFilter(6))

    def test_filtered_reader_leaves_caller_stream_open(self):
        src = io.BytesIO(dumps({"a": "hello"}, psb_filter=EmoteCryptFilter(3)))
        r = PsbReader(src, EmoteCryptFilter(3))
        self.assertIsInstance(r.f, OverlayReader)
        self.assertEqual("hello", r.root["a"])
        del r
        gc.collect()
        self.assertFalse(src.closed)

        with PsbReader(src, EmoteCryptFilter(3)) as r:
            self.assertEqual({"a": "hello"}, r.root)
        self.assertFalse(src.closed)

    def test_open_closes_file_on_any_error(self):
        class Exploding(PsbFilter):
            def apply(self, data):
                raise RuntimeError("boom")

        opened = []

        def tracking_open(*args, **kwargs):
            f = open(*args, **kwargs)
            opened.append(f)
            return f

        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "f.psb")
            dump({"a": 1}, path, psb_filter=EmoteCryptFilter(5))
            with mock.patch("marchive.reader.open", tracking_open, create=True):
                with self.assertRaises(RuntimeError):
                    PsbReader.open(path, Exploding())
            self.assertEqual(1, len(opened))
            self.assertTrue(opened[0].closed)


class JsonBridgeTests(unittest.TestCase):
    def test_to_and_from_json(self):
        doc = {"s": StreamRef(2), "b": StreamRef(0, True), "k": KeyRef("x"), "u": UIntArray([1, 2]),
               "f": Float32(0.5), "plain": "text", "n": [None, True, 3]}
        j = to_json(doc)
        self.assertEqual({"s": "_stream:2", "b": "_bstream:0", "k": "_key:x", "u": [1, 2], "f": 0.5,
                          "plain": "text", "n": [None, True, 3]}, j)
        back = from_json(j)
        self.assertEqual(StreamRef(2), back["s"])
        self.assertEqual(StreamRef(0, True), back["b"])
        self.assertEqual(KeyRef("x"), back["k"])
        self.assertEqual("text", back["plain"])


if __name__ == "__main__":
    unittest.main()
