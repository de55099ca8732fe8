from __future__ import annotations

"""
FastLZ byte-aligned LZ77.

The first byte of a block carries the level in its top three bits (0 = level
1, 1 = level 2). Level 2 is written here; both levels are read.
"""

from .errors import CodecError


MAX_COPY = 32
MAX_L1_DISTANCE = 8192
MAX_L2_DISTANCE = 8191
MAX_FARDISTANCE = 65535 + MAX_L2_DISTANCE - 1
HASH_LOG = 14
HASH_SIZE = 1 << HASH_LOG
HASH_MASK = HASH_SIZE - 1
MIN_INPUT = 16


def _hash(v: int) -> int:
    return ((v * 2654435769) >> (32 - HASH_LOG)) & HASH_MASK


def _u24(buf, i: int) -> int:
    return buf[i] | (buf[i + 1] << 8) | (buf[i + 2] << 16)


def _literals(runs: int, src, anchor: int, out: bytearray) -> None:
    while runs > MAX_COPY:
        out.append(MAX_COPY - 1)
        out += src[anchor:anchor + MAX_COPY]
        anchor += MAX_COPY
        runs -= MAX_COPY
    if runs > 0:
        out.append(runs - 1)
        out += src[anchor:anchor + runs]


def _cmp(buf, p: int, q: int, bound: int) -> int:
    # Matched length plus one for the byte that broke the run
    start = q
    while q < bound:
        if buf[p] != buf[q]:
            return q - start + 1
        p += 1
        q += 1
    return q - start


def _match2(length: int, distance: int, out: bytearray) -> None:
    distance -= 1
    if distance < MAX_L2_DISTANCE:
        if length < 7:
            out.append((length << 5) | (distance >> 8))
            out.append(distance & 0xFF)
        else:
            out.append((7 << 5) | (distance >> 8))
            length -= 7
            while length >= 0xFF:
                out.append(0xFF)
                length -= 0xFF
            out.append(length)
            out.append(distance & 0xFF)
    else:
        distance -= MAX_L2_DISTANCE
        if length < 7:
            out.append((length << 5) | 0x1F)
        else:
            out.append((7 << 5) | 0x1F)
            length -= 7
            while length >= 0xFF:
                out.append(0xFF)
                length -= 0xFF
            out.append(length)
        out.append(0xFF)
        out.append((distance >> 8) & 0xFF)
        out.append(distance & 0xFF)


def compress(data: bytes) -> bytes:
    """Compress ``data`` as a level 2 block."""
    src = bytes(data)
    n = len(src)
    if n == 0:
        return b""
    out = bytearray()
    if n < MIN_INPUT:
        _literals(n, src, 0, out)
        out[0] |= 1 << 5
        return bytes(out)

    ip_bound = n - 4
    ip_limit = n - 12 - 1
    htab = [0] * HASH_SIZE
    anchor = 0
    ip = 2

    while ip < ip_limit:
        while True:
            seq = _u24(src, ip)
            h = _hash(seq)
            ref = htab[h]
            htab[h] = ip
            distance = ip - ref
            cmp = _u24(src, ref) if distance < MAX_FARDISTANCE else 0x1000000
            if ip >= ip_limit:
                break
            ip += 1
            if seq == cmp:
                break
        if ip >= ip_limit:
            break
        ip -= 1

        if distance >= MAX_L2_DISTANCE:
            if src[ref + 3] != src[ip + 3] or src[ref + 4] != src[ip + 4]:
                ip += 1
                continue

        if ip > anchor:
            _literals(ip - anchor, src, anchor, out)

        length = _cmp(src, ref + 3, ip + 3, ip_bound)
        _match2(length, distance, out)

        ip += length
        htab[_hash(_u24(src, ip))] = ip
        ip += 1
        htab[_hash(_u24(src, ip))] = ip
        ip += 1
        anchor = ip

    _literals(n - anchor, src, anchor, out)
    out[0] |= 1 << 5
    return bytes(out)


def _copy_match(out: bytearray, ref: int, length: int) -> None:
    if ref < 0:
        raise CodecError("FastLZ match reference before start of output")
    if ref + length <= len(out):
        out += out[ref:ref + length]
    else:
        for i in range(length):
            out.append(out[ref + i])


def decompress(data: bytes, max_length: int) -> bytes:
    """Decompress one FastLZ block (level 1 or 2), refusing to grow past ``max_length``."""
    src = bytes(data)
    if not src:
        return b""
    level = (src[0] >> 5) + 1
    if level == 1:
        out = _decompress1(src, max_length)
    elif level == 2:
        out = _decompress2(src, max_length)
    else:
        raise CodecError(f"Unknown FastLZ level {level}")
    return bytes(out)


def _need(ip: int, n: int, limit: int) -> None:
    if ip + n > limit:
        raise CodecError("FastLZ input truncated")


def _decompress1(src: bytes, max_length: int) -> bytearray:
    ip_limit = len(src)
    ip_bound = ip_limit - 2
    out = bytearray()
    ctrl = src[0] & 0x1F
    ip = 1
    while True:
        if ctrl >= 0x20:
            length = (ctrl >> 5) - 1
            ofs = (ctrl & 0x1F) << 8
            ref = len(out) - ofs - 1
            if length == 7 - 1:
                _need(ip, 1, ip_limit)
                length += src[ip]
                ip += 1
            _need(ip, 1, ip_limit)
            ref -= src[ip]
            ip += 1
            length += 3
            if len(out) + length > max_length:
                raise CodecError("FastLZ output exceeds expected length")
            _copy_match(out, ref, length)
        else:
            ctrl += 1
            _need(ip, ctrl, ip_limit)
            if len(out) + ctrl > max_length:
                raise CodecError("FastLZ output exceeds expected length")
            out += src[ip:ip + ctrl]
            ip += ctrl
        if ip > ip_bound:
            break
        ctrl = src[ip]
        ip += 1
    return out


def _decompress2(src: bytes, max_length: int) -> bytearray:
    ip_limit = len(src)
    out = bytearray()
    ctrl = src[0] & 0x1F
    ip = 1
    while True:
        if ctrl >= 0x20:
            length = (ctrl >> 5) - 1
            ofs = (ctrl & 0x1F) << 8
            ref = len(out) - ofs - 1
            if length == 7 - 1:
                while True:
                    _need(ip, 1, ip_limit)
                    code = src[ip]
                    ip += 1
                    length += code
                    if code != 0xFF:
                        break
            _need(ip, 1, ip_limit)
            code = src[ip]
            ip += 1
            ref -= code
            length += 3
            if code == 0xFF and ofs == 31 << 8:
                _need(ip, 2, ip_limit)
                ofs = (src[ip] << 8) | src[ip + 1]
                ip += 2
                ref = len(out) - ofs - MAX_L2_DISTANCE - 1
            if len(out) + length > max_length:
                raise CodecError("FastLZ output exceeds expected length")
            _copy_match(out, ref, length)
        else:
            ctrl += 1
            _need(ip, ctrl, ip_limit)
            if len(out) + ctrl > max_length:
                raise CodecError("FastLZ output exceeds expected length")
            out += src[ip:ip + ctrl]
            ip += ctrl
        if ip >= ip_limit:
            break
        ctrl = src[ip]
        ip += 1
    return out
