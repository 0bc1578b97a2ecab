"""HAMT node layout and its canonical byte encoding.

A node is one level of the trie: a bitmap of populated slots and, per set
bit (ascending slot order), either a Bucket of inline entries or a Link to a
child node.

Wire form (canonical JSON, see ``hamtmap.core.canonical_json_bytes``):

    {"bitmap":"<hex>","slots":[{"bucket":[["<key hex>","<value hex>"],...]},
                               {"link":"<cid>"}],"v":1}

The node identifier is the SHA-256 hex digest of exactly these bytes.
Decoding accepts only the canonical form, so one logical node always has one
identifier.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Iterator, Optional, Tuple, Union

from hamtmap.core import canonical_json_bytes, sha256_bytes
from hamtmap.errors import DecodeError
from hamtmap.hashing import bitmap_has, bitmap_indices, bitmap_position
from hamtmap.schema import NODE_SCHEMA, is_valid, validate_with_schema

NODE_FORMAT_VERSION = 1


@dataclass(frozen=True)
class Entry:
    """One key/value pair; the value is opaque encoded bytes."""
    key: bytes
    value: bytes


@dataclass(frozen=True)
class Bucket:
    """Inline entries of one slot, sorted by key bytes."""
    entries: Tuple[Entry, ...]

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self) -> Iterator[Entry]:
        return iter(self.entries)

    def find(self, key: bytes) -> Optional[Entry]:
        for entry in self.entries:
            if entry.key == key:
                return entry
        return None

    def put(self, entry: Entry) -> "Bucket":
        """New bucket with ``entry`` inserted, replacing any entry with its key."""
        out = []
        placed = False
        for existing in self.entries:
            if not placed and entry.key <= existing.key:
                out.append(entry)
                placed = True
                if entry.key == existing.key:
                    continue
            out.append(existing)
        if not placed:
            out.append(entry)
        return Bucket(tuple(out))

    def remove(self, key: bytes) -> "Bucket":
        return Bucket(tuple(e for e in self.entries if e.key != key))


@dataclass(frozen=True)
class Link:
    """Reference to a child node.

    A flushed child is referenced by ``cid`` alone. A child created during a
    mutation has no identifier yet and is held in ``node`` until flush.
    """
    cid: Optional[str] = None
    node: Optional["Node"] = field(default=None, compare=False, repr=False)

    def __post_init__(self) -> None:
        if self.cid is None and self.node is None:
            raise ValueError("Link needs a cid or an in-memory node")

    @property
    def dirty(self) -> bool:
        return self.cid is None


Slot = Union[Bucket, Link]


@dataclass(frozen=True)
class Node:
    bitmap: int = 0
    slots: Tuple[Slot, ...] = ()

    def __post_init__(self) -> None:
        if self.bitmap < 0:
            raise ValueError("bitmap must be non-negative")
        if bin(self.bitmap).count("1") != len(self.slots):
            raise ValueError(
                f"bitmap has {bin(self.bitmap).count('1')} bits set but node has {len(self.slots)} slots"
            )

    @property
    def is_empty(self) -> bool:
        return self.bitmap == 0

    @property
    def dirty(self) -> bool:
        return any(isinstance(s, Link) and s.dirty for s in self.slots)

    def slot(self, index: int) -> Optional[Slot]:
        if not bitmap_has(self.bitmap, index):
            return None
        return self.slots[bitmap_position(self.bitmap, index)]

    def with_slot(self, index: int, slot: Slot) -> "Node":
        """Copy of this node with slot ``index`` set to ``slot``."""
        pos = bitmap_position(self.bitmap, index)
        if bitmap_has(self.bitmap, index):
            slots = self.slots[:pos] + (slot,) + self.slots[pos + 1:]
            return Node(self.bitmap, slots)
        slots = self.slots[:pos] + (slot,) + self.slots[pos:]
        return Node(self.bitmap | (1 << index), slots)

    def without_slot(self, index: int) -> "Node":
        if not bitmap_has(self.bitmap, index):
            return self
        pos = bitmap_position(self.bitmap, index)
        return Node(self.bitmap & ~(1 << index), self.slots[:pos] + self.slots[pos + 1:])

    def items(self) -> Iterator[Tuple[int, Slot]]:
        """(slot index, slot) pairs in ascending slot order."""
        return zip(bitmap_indices(self.bitmap), self.slots)

    def links(self) -> Iterator[Link]:
        return (s for s in self.slots if isinstance(s, Link))

    def inline_entries(self) -> Iterator[Entry]:
        for s in self.slots:
            if isinstance(s, Bucket):
                yield from s.entries


EMPTY_NODE = Node()


def node_to_dict(node: Node) -> dict:
    """Document form of a fully flushed node."""
    slots = []
    for slot in node.slots:
        if isinstance(slot, Bucket):
            slots.append({"bucket": [[e.key.hex(), e.value.hex()] for e in slot.entries]})
        elif slot.dirty:
            raise ValueError("cannot encode a node with an unflushed child; flush children first")
        else:
            slots.append({"link": slot.cid})
    return {
        "v": NODE_FORMAT_VERSION,
        "bitmap": format(node.bitmap, "x"),
        "slots": slots,
    }


def encode_node(node: Node) -> bytes:
    """Deterministic byte encoding of a node."""
    return canonical_json_bytes(node_to_dict(node))


def node_cid(node: Node) -> str:
    return sha256_bytes(encode_node(node))


def decode_node(data: bytes, bit_width: Optional[int] = None, cid: Optional[str] = None) -> Node:
    """Parse canonical node bytes.

    Raises DecodeError on anything that is not the canonical encoding of a
    well-formed node. When ``bit_width`` is given the bitmap must fit in
    ``2 ** bit_width`` slots.
    """
    try:
        doc = json.loads(bytes(data).decode("utf-8"))
    except (UnicodeDecodeError, ValueError, TypeError) as e:
        raise DecodeError(f"node bytes are not UTF-8 JSON: {e}", cid=cid) from e

    if not is_valid(doc, NODE_SCHEMA):
        problems = "; ".join(validate_with_schema(doc, NODE_SCHEMA)[:3])
        raise DecodeError(f"node document failed schema validation: {problems}", cid=cid)

    bitmap = int(doc["bitmap"], 16)
    if bit_width is not None and bitmap >> (1 << bit_width):
        raise DecodeError(f"bitmap exceeds {1 << bit_width} slots", cid=cid)

    slots = []
    for raw in doc["slots"]:
        if "link" in raw:
            slots.append(Link(cid=raw["link"]))
            continue
        entries = tuple(Entry(bytes.fromhex(k), bytes.fromhex(v)) for k, v in raw["bucket"])
        for prev, cur in zip(entries, entries[1:]):
            if not prev.key < cur.key:
                raise DecodeError("bucket keys are not strictly ascending", cid=cid, key=cur.key)
        slots.append(Bucket(entries))

    try:
        node = Node(bitmap, tuple(slots))
    except ValueError as e:
        raise DecodeError(str(e), cid=cid) from e

    if encode_node(node) != bytes(data):
        raise DecodeError("node bytes are not in canonical form", cid=cid)
    return node
