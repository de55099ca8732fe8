from __future__ import annotations

from typing import Any

from .tokens import Float32, UIntArray, KeyRef, StreamRef, is_stream_identifier


KEY_REF_PREFIX = "_key:"


def to_json(value: Any) -> Any:
    """Convert a document tree to plain JSON types.

    Stream refs become their ``"_stream:<i>"`` identifiers and key refs become
    ``"_key:<name>"``. ``Float32`` and ``UIntArray`` lose their width class
    and come back from :func:`from_json` as ``float`` and ``list``.
    """
    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, Float32):
        return float(value.value)
    if isinstance(value, float):
        return value
    if isinstance(value, UIntArray):
        return list(value.values)
    if isinstance(value, StreamRef):
        if value.index is None:
            raise ValueError("Inline stream data has no JSON form; write the container first")
        return value.identifier
    if isinstance(value, KeyRef):
        return KEY_REF_PREFIX + value.name
    if isinstance(value, (list, tuple)):
        return [to_json(v) for v in value]
    if isinstance(value, dict):
        return {k: to_json(v) for k, v in value.items()}
    raise TypeError(f"Cannot convert {type(value).__name__} to JSON")


def from_json(value: Any) -> Any:
    if isinstance(value, str):
        if is_stream_identifier(value):
            return StreamRef.from_identifier(value)
        if value.startswith(KEY_REF_PREFIX):
            return KeyRef(value[len(KEY_REF_PREFIX):])
        return value
    if isinstance(value, list):
        return [from_json(v) for v in value]
    if isinstance(value, dict):
        return {k: from_json(v) for k, v in value.items()}
    return value
