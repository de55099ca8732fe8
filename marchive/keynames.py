from __future__ import annotations

"""
Key-name tables.

Version 2+ containers store object keys in a double-array byte trie made of
three parallel u32 arrays:

- ``tree[slot]``: parent slot of the node at ``slot``.
- ``value_offsets[slot]``: for an inner node, the base that is added to a
  child's byte to find the child's slot; for a terminal node, the key index.
- ``tails[i]``: slot of the terminal node for key ``i``.

A key is recovered by walking parent links from its terminal node; every hop
yields ``slot - value_offsets[parent]``, which is the byte that selected
``slot``. Version 1 containers store a flat table of NUL-terminated strings
instead.
"""

from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence

from .errors import DuplicateKeyOnWrite, FormatError, OffsetOutOfRange


class KeyNames:
    """Resolve key indices from a decoded trie. Names are cached."""

    def __init__(self, value_offsets: Sequence[int], tree: Sequence[int], tails: Sequence[int]):
        self.value_offsets = value_offsets
        self.tree = tree
        self.tails = tails
        self._cache: Dict[int, str] = {}

    def __len__(self) -> int:
        return len(self.tails)

    def __getitem__(self, index: int) -> str:
        name = self._cache.get(index)
        if name is None:
            name = self._resolve(index)
            self._cache[index] = name
        return name

    def _slot(self, table: Sequence[int], i: int, what: str) -> int:
        if not 0 <= i < len(table):
            raise OffsetOutOfRange(f"Key trie {what} index {i} out of range")
        return table[i]

    def _resolve(self, index: int) -> str:
        if not 0 <= index < len(self.tails):
            raise OffsetOutOfRange(f"Key index {index} out of range ({len(self.tails)} keys)")
        out = bytearray()
        node = self._slot(self.tree, self._slot(self.tails, index, "tail"), "tree")
        steps = 0
        while node != 0:
            parent = self._slot(self.tree, node, "tree")
            b = node - self._slot(self.value_offsets, parent, "value offset")
            if not 0 <= b <= 0xFF:
                raise FormatError(f"Key trie walk for key {index} produced byte {b}")
            out.append(b)
            node = parent
            steps += 1
            if steps > len(self.tree):
                raise FormatError(f"Key trie walk for key {index} does not reach the root")
        out.reverse()
        try:
            return out.decode("utf-8")
        except UnicodeDecodeError as e:
            raise FormatError(f"Key {index} is not valid UTF-8") from e

    def names(self) -> List[str]:
        return [self[i] for i in range(len(self))]


class FlatKeyNames:
    """Version 1 key table: an offsets array into a NUL-terminated blob."""

    def __init__(self, offsets: Sequence[int], read_cstring: Callable[[int], str]):
        self.offsets = offsets
        self._read_cstring = read_cstring
        self._cache: Dict[int, str] = {}

    def __len__(self) -> int:
        return len(self.offsets)

    def __getitem__(self, index: int) -> str:
        if not 0 <= index < len(self.offsets):
            raise OffsetOutOfRange(f"Key index {index} out of range ({len(self.offsets)} keys)")
        name = self._cache.get(index)
        if name is None:
            name = self._read_cstring(self.offsets[index])
            self._cache[index] = name
        return name

    def names(self) -> List[str]:
        return [self[i] for i in range(len(self))]


@dataclass
class TrieNode:
    byte: int
    parent: int = -1
    # byte -> node id; the terminal child is keyed by 0
    children: Dict[int, int] = field(default_factory=dict)
    tail: Optional[int] = None
    slot: int = -1
    value_offset: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.tail is not None


@dataclass
class KeyTrie:
    keys: List[str]
    value_offsets: List[int]
    tree: List[int]
    tails: List[int]
    nodes: List[TrieNode] = field(default_factory=list, repr=False)
    _lookup: Dict[str, int] = field(default_factory=dict, repr=False)

    def __post_init__(self):
        self._lookup = {k: i for i, k in enumerate(self.keys)}

    def index_of(self, name: str) -> int:
        try:
            return self._lookup[name]
        except KeyError:
            raise KeyError(f"Key {name!r} is not in the key table") from None


def _encode_keys(keys) -> List[bytes]:
    encoded = []
    seen = set()
    for k in keys:
        if not isinstance(k, str):
            raise TypeError(f"Object keys must be str, got {type(k).__name__}")
        if "\x00" in k:
            raise ValueError(f"Key {k!r} contains a NUL character")
        raw = k.encode("utf-8")
        if raw in seen:
            raise DuplicateKeyOnWrite(f"Duplicate key {k!r}")
        seen.add(raw)
        encoded.append(raw)
    return encoded


class _SlotAllocator:
    def __init__(self, nodes: List[TrieNode]):
        self.nodes = nodes
        self.used = [False] * len(nodes)
        self.min_free = 0

    def claim(self, slot: int) -> None:
        if slot >= len(self.used):
            self.used.extend([False] * (slot + 1 - len(self.used)))
        self.used[slot] = True

    def advance(self) -> None:
        while self.min_free < len(self.used) and self.used[self.min_free]:
            self.min_free += 1

    def find_base(self, start: int, offsets: Sequence[int]) -> int:
        base = start
        while True:
            for o in offsets:
                t = base + o
                if t < len(self.used) and self.used[t]:
                    break
            else:
                return base
            base += 1

    def place(self, node_id: int) -> None:
        node = self.nodes[node_id]
        if not node.children:
            return
        order = [node.children[b] for b in sorted(node.children)]
        min_byte = self.nodes[order[0]].byte
        offsets = [self.nodes[c].byte - min_byte for c in order]
        base = self.find_base(max(self.min_free, min_byte + 1), offsets)
        for c, o in zip(order, offsets):
            child = self.nodes[c]
            child.slot = base + o
            self.claim(child.slot)
        node.value_offset = base - min_byte
        self.advance()
        for c in order:
            if not self.nodes[c].is_terminal:
                self.place(c)


def build_key_trie(keys) -> KeyTrie:
    """Build the double-array trie for ``keys``.

    Keys are sorted byte-wise on their UTF-8 encoding and the list index in
    the result is the key index used by object tokens. Slot allocation is a
    first-fit packing: each node's children are placed at the lowest base
    whose slots are all free, with the base never below ``min_child_byte + 1``
    so every ``value_offset`` is at least 1.
    """
    encoded = sorted(_encode_keys(keys))
    nodes: List[TrieNode] = [TrieNode(byte=0)]
    for index, raw in enumerate(encoded):
        cur = 0
        for b in raw:
            nxt = nodes[cur].children.get(b)
            if nxt is None:
                nxt = len(nodes)
                nodes.append(TrieNode(byte=b, parent=cur))
                nodes[cur].children[b] = nxt
            cur = nxt
        term = len(nodes)
        nodes.append(TrieNode(byte=0, parent=cur, tail=index))
        nodes[cur].children[0] = term

    alloc = _SlotAllocator(nodes)
    nodes[0].slot = 0
    alloc.claim(0)
    alloc.advance()
    alloc.place(0)

    size = len(alloc.used)
    value_offsets = [0] * size
    tree = [0] * size
    tails = [0] * len(encoded)
    for node in nodes:
        if node.parent >= 0:
            tree[node.slot] = nodes[node.parent].slot
        if node.is_terminal:
            value_offsets[node.slot] = node.tail
            tails[node.tail] = node.slot
        else:
            value_offsets[node.slot] = node.value_offset
    return KeyTrie(
        keys=[raw.decode("utf-8") for raw in encoded],
        value_offsets=value_offsets,
        tree=tree,
        tails=tails,
        nodes=nodes,
    )


def flat_key_order(keys) -> List[str]:
    """Key order for version 1 flat tables: shortest first, then by bytes."""
    encoded = _encode_keys(keys)
    encoded.sort(key=lambda raw: (len(raw), raw))
    return [raw.decode("utf-8") for raw in encoded]
