from __future__ import annotations

from Cryptodome.Util.strxor import strxor


_MASK32 = 0xFFFFFFFF


class PsbFilter:
    """Stateful, length-preserving byte transform.

    The same call both encrypts and decrypts, so a fresh instance built from
    the same key undoes what another instance did. State carries over between
    calls: the header block and the body of one container share a keystream.
    """

    def apply(self, data: bytes) -> bytes:
        raise NotImplementedError


class XorShift128:
    """Marsaglia xor128 generator; the seed is the initial ``w`` word."""

    def __init__(self, seed: int):
        self.x = 123456789
        self.y = 362436069
        self.z = 521288629
        self.w = seed & _MASK32

    def next(self) -> int:
        t = (self.x ^ (self.x << 11)) & _MASK32
        self.x = self.y
        self.y = self.z
        self.z = self.w
        self.w = ((self.w ^ (self.w >> 19)) ^ (t ^ (t >> 8))) & _MASK32
        return self.w


class EmoteCryptFilter(PsbFilter):
    """XOR keystream filter used by emote PSB files.

    Each generator draw supplies up to four key bytes, low byte first. A new
    word is drawn only once the remaining word has shifted down to zero, so a
    draw whose high bytes are zero is used for fewer than four bytes.
    """

    def __init__(self, seed: int):
        self.seed = seed & _MASK32
        self._rand = XorShift128(self.seed)
        self._buffer = 0

    def keystream(self, n: int) -> bytes:
        out = bytearray(n)
        buffer = self._buffer
        for i in range(n):
            if buffer == 0:
                buffer = self._rand.next()
            out[i] = buffer & 0xFF
            buffer >>= 8
        self._buffer = buffer
        return bytes(out)

    def apply(self, data: bytes) -> bytes:
        if not data:
            return b""
        return strxor(bytes(data), self.keystream(len(data)))


def filter_from_key(key) -> PsbFilter | None:
    """Build the emote filter from a CLI-style key (int or numeric string)."""
    if key is None:
        return None
    if isinstance(key, str):
        key = int(key, 0)
    return EmoteCryptFilter(int(key))
