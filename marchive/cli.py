from __future__ import annotations

import os
import sys
import argparse
import json as _json

from typing import Iterable, List, Optional

from marchive.codec import codec_by_name, CODECS
from marchive.constants import (
    DEFAULT_VERSION,
    DEFAULT_MARCHIVE_SEED,
    DEFAULT_MARCHIVE_KEY_LENGTH,
    FLAG_HEADER_FILTERED,
    FLAG_BODY_FILTERED,
    SUPPORTED_VERSIONS,
)
from marchive.errors import MArchiveError, FilterRequired
from marchive.filters import filter_from_key
from marchive.jsonconv import to_json, from_json
from marchive.packer import MArchivePacker
from marchive.reader import PsbReader
from marchive.sources import DirectoryStreamSource, stream_file_name
from marchive.tokens import StreamRef
from marchive.writer import PsbWriter


PSB_EXTENSION = ".psb"
JSON_EXTENSION = ".json"
STREAMS_SUFFIX = ".streams"


def _iter_psb_files(path: str) -> Iterable[str]:
    """Yield .psb files under ``path`` (or ``path`` itself when it is a file)."""
    if os.path.isdir(path):
        for root, _dirs, files in os.walk(path):
            for fn in sorted(files):
                if fn.lower().endswith(PSB_EXTENSION):
                    yield os.path.join(root, fn)
    else:
        yield path


def _strip_ext(path: str, ext: str) -> str:
    if path.lower().endswith(ext):
        return path[: -len(ext)]
    return path


# -------- PSB --------

def cmd_dump(path: str, *, emote_key: Optional[str] = None, quiet: bool = False) -> bool:
    """Write ``<file>.json`` and ``<file>.streams/`` for each PSB under ``path``."""
    count = 0
    for file in _iter_psb_files(path):
        if not quiet:
            print(f"Dumping {file}")
        with PsbReader.open(file, filter_from_key(emote_key)) as r:
            doc = to_json(r.root)
            streams_dir = file + STREAMS_SUFFIX
            blobs = [(StreamRef(i).identifier, r.get_stream(i)) for i in range(r.stream_count)]
            blobs += [(StreamRef(i, True).identifier, r.get_bstream(i)) for i in range(r.bstream_count)]
            if blobs:
                os.makedirs(streams_dir, exist_ok=True)
                for identifier, data in blobs:
                    with open(os.path.join(streams_dir, stream_file_name(identifier)), "wb") as f:
                        f.write(data)
        with open(file + JSON_EXTENSION, "w", encoding="utf-8") as f:
            _json.dump(doc, f, ensure_ascii=False, indent=2)
            f.write("\n")
        count += 1
    if not quiet:
        print(f"Dumped {count} file(s)")
    return True


def cmd_build(json_path: str, *, output: Optional[str] = None, version: int = DEFAULT_VERSION,
              emote_key: Optional[str] = None, quiet: bool = False) -> bool:
    """Build a PSB from a dumped ``.json`` and its sibling ``.streams/`` directory."""
    base = _strip_ext(json_path, JSON_EXTENSION)
    out_path = output or base
    with open(json_path, "r", encoding="utf-8") as f:
        doc = from_json(_json.load(f))
    writer = PsbWriter(
        version=version,
        psb_filter=filter_from_key(emote_key),
        stream_source=DirectoryStreamSource(base + STREAMS_SUFFIX),
    )
    with open(out_path, "wb") as f:
        size = writer.write(doc, f)
    if not quiet:
        print(f"Wrote {out_path} ({size} bytes, version {version})")
    return True


def cmd_info(path: str, *, emote_key: Optional[str] = None) -> bool:
    with PsbReader.open(path, filter_from_key(emote_key)) as r:
        hdr = r.header
        flags = []
        if hdr.flags & FLAG_HEADER_FILTERED:
            flags.append("header-filtered")
        if hdr.flags & FLAG_BODY_FILTERED:
            flags.append("body-filtered")
        print(f"PSB: {path}")
        print(f"  Version: {hdr.version}")
        print(f"  Flags: {hdr.flags} ({', '.join(flags) or 'none'})")
        if hdr.version >= 3:
            print(f"  Checksum: {hdr.checksum:#010x}")
        for name, value in hdr.offsets().items():
            print(f"  {name}: {value:#x}")
        print(f"  Keys: {len(r.key_names)}")
        print(f"  Streams: {r.stream_count}")
        if hdr.version >= 4:
            print(f"  B-streams: {r.bstream_count}")
    return True


# -------- MArchive --------

def _packer(codec: str, seed: str, key_length: int, quiet: bool) -> MArchivePacker:
    return MArchivePacker(
        codec_by_name(codec),
        seed=seed,
        key_length=key_length,
        progress=None if quiet else print,
    )


def cmd_unpack(path: str, *, codec: str = "zlib", seed: str = DEFAULT_MARCHIVE_SEED,
               key_length: int = DEFAULT_MARCHIVE_KEY_LENGTH, keep: bool = False, quiet: bool = False) -> bool:
    packer = _packer(codec, seed, key_length, quiet)
    if os.path.isdir(path):
        done = packer.decompress_directory(path, keep)
    else:
        if not quiet:
            print(f"Decompressing {path}")
        done = [packer.decompress_file(path, keep)]
    if not quiet:
        print(f"Decompressed {len(done)} file(s)")
    return True


def cmd_pack(path: str, *, codec: str = "zlib", seed: str = DEFAULT_MARCHIVE_SEED,
             key_length: int = DEFAULT_MARCHIVE_KEY_LENGTH, keep: bool = False, force: bool = False,
             quiet: bool = False) -> bool:
    packer = _packer(codec, seed, key_length, quiet)
    if os.path.isdir(path):
        done = packer.compress_directory(path, keep, force)
    else:
        if not quiet:
            print(f"Compressing {path}")
        done = [packer.compress_file(path, keep)]
    if not quiet:
        print(f"Compressed {len(done)} file(s)")
    return True


def _add_marchive_options(ap: argparse.ArgumentParser) -> None:
    ap.add_argument("path", help="File or directory")
    ap.add_argument("--codec", choices=sorted(CODECS), default="zlib", help="Payload codec (default zlib)")
    ap.add_argument("--seed", default=DEFAULT_MARCHIVE_SEED, help="Key derivation seed")
    ap.add_argument("--key-length", type=lambda s: int(s, 0), default=DEFAULT_MARCHIVE_KEY_LENGTH,
                    help=f"Key buffer length (default {DEFAULT_MARCHIVE_KEY_LENGTH:#x})")
    ap.add_argument("--keep", action="store_true", help="Keep the source file")
    ap.add_argument("--quiet", help="limit outputs to summaries only", action="store_true")


def main(argv: List[str] | None = None):
    ap = argparse.ArgumentParser(
        prog="marchive",
        description="PSB container and MArchive (.m) tool",
    )
    sub = ap.add_subparsers(dest="cmd", required=True)

    ap_dump = sub.add_parser("dump", help="Dump PSB files to JSON plus stream files")
    ap_dump.add_argument("path", help="PSB file or directory")
    ap_dump.add_argument("--emote-key", help="Emote filter key (integer)")
    ap_dump.add_argument("--quiet", help="limit outputs to summaries only", action="store_true")

    ap_build = sub.add_parser("build", help="Build a PSB file from dumped JSON")
    ap_build.add_argument("json", help="Input .json path")
    ap_build.add_argument("--output", "-o", help="Output PSB path (default: input without .json)")
    ap_build.add_argument("--version", type=int, choices=SUPPORTED_VERSIONS, default=DEFAULT_VERSION,
                          help=f"PSB version to write (default {DEFAULT_VERSION})")
    ap_build.add_argument("--emote-key", help="Emote filter key (integer)")
    ap_build.add_argument("--quiet", help="limit outputs to summaries only", action="store_true")

    ap_info = sub.add_parser("info", help="Show PSB header information")
    ap_info.add_argument("path", help="PSB path")
    ap_info.add_argument("--emote-key", help="Emote filter key (integer)")

    ap_unpack = sub.add_parser("unpack", help="Decrypt and decompress .m files")
    _add_marchive_options(ap_unpack)

    ap_pack = sub.add_parser("pack", help="Compress and encrypt files into .m form")
    _add_marchive_options(ap_pack)
    ap_pack.add_argument("--force", action="store_true", help="Also compress files in no-compression directories")

    args = ap.parse_args(argv)
    try:
        if args.cmd == "dump":
            cmd_dump(args.path, emote_key=args.emote_key, quiet=args.quiet)
        elif args.cmd == "build":
            cmd_build(args.json, output=args.output, version=args.version, emote_key=args.emote_key, quiet=args.quiet)
        elif args.cmd == "info":
            cmd_info(args.path, emote_key=args.emote_key)
        elif args.cmd == "unpack":
            cmd_unpack(args.path, codec=args.codec, seed=args.seed, key_length=args.key_length,
                       keep=args.keep, quiet=args.quiet)
        elif args.cmd == "pack":
            cmd_pack(args.path, codec=args.codec, seed=args.seed, key_length=args.key_length,
                     keep=args.keep, force=args.force, quiet=args.quiet)
        else:
            raise RuntimeError("Unknown command")
    except FilterRequired as e:
        print(f"Error: {e}. Provide --emote-key.", file=sys.stderr)
        sys.exit(2)
    except FileNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)
    except (ValueError, TypeError, RuntimeError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)
    except (MArchiveError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)


if __name__ == "__main__":
    main()
