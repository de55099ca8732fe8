"""
marchive: PSB container engine and MArchive (.m) packer.

Features:

- PSB reader/writer for versions 1-4: token tree, double-array key-name trie,
  string and stream tables, Adler-32 header checksum.
- Emote XorShift128 filter overlay for encrypted PSB headers and bodies.
- MArchive file cipher (MD5/MT19937 keystream) with FastLZ, zlib and zstd
  payload codecs.
- CLI to dump PSB files to JSON plus stream files, rebuild them, and
  pack/unpack .m files or whole directories.
"""

__version__ = "0.1"

__all__ = [
    "constants",
    "reader",
    "writer",
    "keynames",
    "filters",
    "packer",
]

from .reader import PsbReader, load, loads
from .writer import PsbWriter, dump, dumps
from .tokens import Float32, UIntArray, KeyRef, StreamRef
