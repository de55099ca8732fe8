from __future__ import annotations

import os
import struct
from typing import Callable, List, Optional, Sequence

from .codec import Codec, codec_for_magic
from .constants import (
    DEFAULT_MARCHIVE_SEED,
    DEFAULT_MARCHIVE_KEY_LENGTH,
    DEFAULT_NO_COMPRESSION_FILTERS,
    MARCHIVE_EXTENSION,
    MARCHIVE_HEADER_SIZE,
)
from .crypto import MArchiveCrypto
from .errors import CodecError, CodecMismatch


_HEADER = struct.Struct("<Ii")


def read_marchive_header(data: bytes):
    if len(data) < MARCHIVE_HEADER_SIZE:
        raise CodecError("MArchive file shorter than its header")
    return _HEADER.unpack_from(data, 0)


class MArchivePacker:
    """Compress and encrypt files into ``.m`` form, and back.

    The cipher key is derived from the ``.m`` file's base name, so a packed
    file has to keep its name to be unpacked.
    """

    def __init__(
        self,
        codec: Codec,
        seed: str = DEFAULT_MARCHIVE_SEED,
        key_length: int = DEFAULT_MARCHIVE_KEY_LENGTH,
        no_compression_filters: Optional[Sequence[str]] = None,
        progress: Optional[Callable[[str], None]] = None,
    ):
        if codec is None:
            raise ValueError("codec is required")
        if seed is None:
            raise ValueError("seed is required")
        self.codec = codec
        self.seed = seed
        self.key_length = key_length
        self.no_compression_filters: List[str] = list(
            DEFAULT_NO_COMPRESSION_FILTERS if no_compression_filters is None else no_compression_filters
        )
        self.progress = progress

    def _report(self, msg: str) -> None:
        if self.progress is not None:
            self.progress(msg)

    # In-memory

    def pack(self, data: bytes, name: str) -> bytes:
        """Return the ``.m`` bytes for ``data``; ``name`` is the ``.m`` file name."""
        body = self.codec.compress(bytes(data))
        head = _HEADER.pack(self.codec.magic, len(data))
        crypto = MArchiveCrypto(name, self.seed, self.key_length)
        return head + crypto.apply(body, MARCHIVE_HEADER_SIZE)

    def unpack(self, data: bytes, name: str) -> bytes:
        magic, expected = read_marchive_header(data)
        if magic != self.codec.magic:
            try:
                found = type(codec_for_magic(magic)).__name__
            except CodecMismatch:
                found = f"{magic:#010x}"
            raise CodecMismatch(f"Codec mismatch: file uses {found}, packer uses {type(self.codec).__name__}")
        crypto = MArchiveCrypto(name, self.seed, self.key_length)
        body = crypto.apply(data[MARCHIVE_HEADER_SIZE:], MARCHIVE_HEADER_SIZE)
        out = self.codec.decompress(body, expected)
        if len(out) != expected:
            raise CodecError(f"Decompressed length {len(out)} is not the expected {expected}")
        return out

    # Files

    def decompress_file(self, path: str, keep: bool = False) -> str:
        if os.path.splitext(path)[1].lower() != MARCHIVE_EXTENSION:
            raise ValueError(f"File is not compressed: {path}")
        with open(path, "rb") as f:
            data = f.read()
        out = self.unpack(data, path)
        dest = os.path.splitext(path)[0]
        with open(dest, "wb") as f:
            f.write(out)
        if not keep:
            os.remove(path)
        return dest

    def compress_file(self, path: str, keep: bool = False) -> str:
        dest = path + MARCHIVE_EXTENSION
        with open(path, "rb") as f:
            data = f.read()
        packed = self.pack(data, dest)
        with open(dest, "wb") as f:
            f.write(packed)
        if not keep:
            os.remove(path)
        return dest

    # Directories

    def _walk(self, root: str):
        for dirpath, _dirs, files in os.walk(root):
            for name in sorted(files):
                yield os.path.join(dirpath, name)

    def compress_directory(self, path: str, keep: bool = False, force: bool = False) -> List[str]:
        done = []
        for file in list(self._walk(path)):
            if os.path.splitext(file)[1].lower() == MARCHIVE_EXTENSION:
                continue
            containing = os.path.basename(os.path.dirname(file))
            if force or containing not in self.no_compression_filters:
                self._report(f"Compressing {file}")
                done.append(self.compress_file(file, keep))
        return done

    def decompress_directory(self, path: str, keep: bool = False) -> List[str]:
        done = []
        for file in list(self._walk(path)):
            if os.path.splitext(file)[1].lower() == MARCHIVE_EXTENSION:
                self._report(f"Decompressing {file}")
                done.append(self.decompress_file(file, keep))
        return done
