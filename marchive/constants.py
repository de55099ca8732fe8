from enum import IntEnum


# Magic and versions
PSB_MAGIC = b"PSB\x00"
SUPPORTED_VERSIONS = (1, 2, 3, 4)
DEFAULT_VERSION = 3

# Header flags
FLAG_HEADER_FILTERED = 1 << 0
FLAG_BODY_FILTERED = 1 << 1

# Header block sizes (bytes after magic/version/flags)
HEADER_BASE_SIZE = 8 * 4
HEADER_CHECKSUM_SIZE = 4
HEADER_BSTREAM_SIZE = 3 * 4
HEADER_PREFIX_SIZE = 8  # magic[4], version u16, flags u16


# Token type ids. Multi-width kinds list their first id; the operand width is
# (type_id - base + 1) bytes, except ints where id 4 carries no payload.
TYPE_INVALID = 0
TYPE_NULL = 1
TYPE_FALSE = 2
TYPE_TRUE = 3
TYPE_INT_ZERO = 4       # 4..8: int32, 0..4 bytes
TYPE_INT_MAX = 8
TYPE_LONG_BASE = 9      # 9..12: int64, 5..8 bytes
TYPE_LONG_MAX = 12
TYPE_UINT_ARRAY = 13    # 13..16: count width 1..4
TYPE_KEY = 17           # 17..20: v1 only
TYPE_STRING = 21        # 21..24
TYPE_STREAM = 25        # 25..28
TYPE_FLOAT_ZERO = 29
TYPE_FLOAT = 30
TYPE_DOUBLE = 31
TYPE_ARRAY = 32
TYPE_OBJECT = 33
TYPE_BSTREAM = 34       # 34..37: v4 only
TYPE_MAX = 37


class TokenKind(IntEnum):
    INVALID = 0
    NULL = 1
    BOOL = 2
    INT = 3
    LONG = 4
    UINT_ARRAY = 5
    KEY = 6
    STRING = 7
    STREAM = 8
    FLOAT = 9
    DOUBLE = 10
    ARRAY = 11
    OBJECT = 12
    BSTREAM = 13


# Blob identifiers handed to stream sources
STREAM_ID_PREFIX = "_stream"
BSTREAM_ID_PREFIX = "_bstream"


# MArchive (.m) container
MARCHIVE_HEADER_SIZE = 8  # codec magic u32, decompressed length i32
CODEC_MAGIC_FASTLZ = 0x006C666D   # "mfl\0"
CODEC_MAGIC_ZLIB = 0x0066646D     # "mdf\0"
CODEC_MAGIC_ZSTD = 0x00737A6D     # "mzs\0"
MARCHIVE_EXTENSION = ".m"

DEFAULT_MARCHIVE_SEED = "nY/RHn+XH8T77"
DEFAULT_MARCHIVE_KEY_LENGTH = 0x40
DEFAULT_NO_COMPRESSION_FILTERS = ("sound",)
