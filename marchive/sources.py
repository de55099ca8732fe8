from __future__ import annotations

import os
from typing import Mapping

from .tokens import StreamRef


class StreamSource:
    """Supplies blob payloads to the writer, keyed by ``"_stream:<i>"`` style ids."""

    def get_stream(self, identifier: str) -> bytes:
        raise NotImplementedError


def stream_file_name(identifier: str) -> str:
    """``"_stream:3"`` -> ``"stream_3"``; ``"_bstream:0"`` -> ``"bstream_0"``."""
    ref = StreamRef.from_identifier(identifier)
    prefix = "bstream" if ref.is_bstream else "stream"
    return f"{prefix}_{ref.index}"


class DirectoryStreamSource(StreamSource):
    def __init__(self, base_dir: str):
        self.base_dir = base_dir

    def path_for(self, identifier: str) -> str:
        return os.path.join(self.base_dir, stream_file_name(identifier))

    def get_stream(self, identifier: str) -> bytes:
        with open(self.path_for(identifier), "rb") as f:
            return f.read()


class MappingStreamSource(StreamSource):
    def __init__(self, mapping: Mapping[str, bytes]):
        self.mapping = mapping

    def get_stream(self, identifier: str) -> bytes:
        try:
            return bytes(self.mapping[identifier])
        except KeyError:
            raise KeyError(f"No payload for {identifier}") from None
