from __future__ import annotations

import zlib
from typing import Optional

from . import fastlz
from .constants import CODEC_MAGIC_FASTLZ, CODEC_MAGIC_ZLIB, CODEC_MAGIC_ZSTD
from .errors import CodecError, CodecMismatch

_HAS_ZSTD = False
_zstd_mod = None
_ZstdError = RuntimeError
try:
    import zstandard as _zstd_mod  # type: ignore
    from zstandard import ZstdError as _ZstdError  # type: ignore
    _HAS_ZSTD = True
except ImportError:
    _zstd_mod = None
    _HAS_ZSTD = False


class Codec:
    """MArchive payload codec identified by a 4-byte magic."""

    name = ""
    magic = 0

    def __init__(self, level: Optional[int] = None):
        self.level = level

    def compress(self, data: bytes) -> bytes:
        raise NotImplementedError

    def decompress(self, data: bytes, decompressed_length: int) -> bytes:
        raise NotImplementedError


class FastLzCodec(Codec):
    name = "fastlz"
    magic = CODEC_MAGIC_FASTLZ

    def compress(self, data: bytes) -> bytes:
        return fastlz.compress(data)

    def decompress(self, data: bytes, decompressed_length: int) -> bytes:
        return fastlz.decompress(data, decompressed_length)


class ZlibCodec(Codec):
    name = "zlib"
    magic = CODEC_MAGIC_ZLIB

    def compress(self, data: bytes) -> bytes:
        return zlib.compress(data, self.level if self.level is not None else 6)

    def decompress(self, data: bytes, decompressed_length: int) -> bytes:
        try:
            return zlib.decompress(data)
        except zlib.error as e:
            raise CodecError(f"zlib decompression failed: {e}") from e


class ZStandardCodec(Codec):
    name = "zstd"
    magic = CODEC_MAGIC_ZSTD

    def compress(self, data: bytes) -> bytes:
        if not (_HAS_ZSTD and _zstd_mod is not None):
            raise RuntimeError("zstd codec selected but zstandard module is not available")
        try:
            c = _zstd_mod.ZstdCompressor(level=self.level if self.level is not None else 3)
            return c.compress(data)
        except _ZstdError as e:
            raise CodecError(f"zstd compression failed: {e}") from e

    def decompress(self, data: bytes, decompressed_length: int) -> bytes:
        if not (_HAS_ZSTD and _zstd_mod is not None):
            raise RuntimeError("zstd codec not available to decompress")
        try:
            d = _zstd_mod.ZstdDecompressor()
            return d.decompress(data, max_output_size=decompressed_length)
        except _ZstdError as e:
            raise CodecError(f"zstd decompression failed: {e}") from e


CODECS = {c.name: c for c in (FastLzCodec, ZlibCodec, ZStandardCodec)}


def codec_by_name(name: str, level: Optional[int] = None) -> Codec:
    try:
        return CODECS[name.lower()](level)
    except KeyError:
        raise ValueError(f"Unknown codec {name!r} (choose from {', '.join(sorted(CODECS))})") from None


def codec_for_magic(magic: int) -> Codec:
    for cls in CODECS.values():
        if cls.magic == magic:
            return cls()
    raise CodecMismatch(f"Unknown codec magic {magic:#010x}")
