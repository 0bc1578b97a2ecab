"""HAMT engine: lookup, copy-on-write mutation, flush and traversal.

The engine works on in-memory ``Node`` values and a ``Store``. It never
mutates a node: ``set`` and ``delete`` record the path from the root to the
terminal slot, build a replacement for the last node on it, then clone each
ancestor bottom-up with the one changed slot. Every slot off the path is
carried over as-is, so untouched subtrees keep their identifiers.

Canonical shape
───────────────

For a slot of a node at depth ``d`` holding the key set ``S``:

    slot is a Bucket  iff  |S| <= bucket_size  or  d is the last hashable depth
    slot is a Link    otherwise (to the node built from S at depth d + 1)

Insertion splits a bucket exactly when it would overflow, and deletion
pulls a child back into its parent as soon as the child holds no links and
at most ``bucket_size`` entries. The shape is therefore a function of the
key set alone, and equal contents always flush to the same root.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Callable, Dict, Iterator, List, Optional, Sequence, Tuple

from hamtmap.core import short_cid
from hamtmap.errors import HamtError, StoreLoadError, StoreWriteError, TraversalError
from hamtmap.hashing import KeyPath, TrieOptions
from hamtmap.node import EMPTY_NODE, Bucket, Entry, Link, Node, decode_node, encode_node
from hamtmap.observability import HamtLayer, get_logger
from hamtmap.store import Store

logger = get_logger("engine", HamtLayer.TRIE)

Visitor = Callable[[bytes, bytes], None]
Trail = List[Tuple[Node, int]]


@dataclass
class TrieStats:
    """Shape summary of one tree."""
    nodes: int = 0
    links: int = 0
    buckets: int = 0
    entries: int = 0
    max_depth: int = 0
    max_bucket: int = 0

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


class Trie:
    """Algorithms over nodes held in ``store`` and shaped by ``options``."""

    def __init__(self, store: Store, options: Optional[TrieOptions] = None):
        self.store = store
        self.options = options or TrieOptions()

    # ------------------------------------------------------------------
    # loading and persisting

    def load(self, cid: str) -> Node:
        """Fetch and decode the node named ``cid``."""
        try:
            data = self.store.get(cid)
        except HamtError:
            raise
        except Exception as e:
            raise StoreLoadError(f"store failed to load node: {e}", cid=cid) from e
        return decode_node(data, bit_width=self.options.bit_width, cid=cid)

    def child(self, link: Link) -> Node:
        if link.node is not None:
            return link.node
        return self.load(link.cid)

    def persist(self, node: Node) -> str:
        """Encode and store a node whose children are all flushed."""
        data = encode_node(node)
        try:
            cid = self.store.put(data)
        except HamtError:
            raise
        except Exception as e:
            raise StoreWriteError(f"store rejected node write: {e}") from e
        return cid

    def flush(self, node: Node) -> str:
        """Persist ``node`` and every unflushed descendant, children first.

        Links that already carry an identifier are left alone: shared
        subtrees are neither re-encoded nor rewritten.
        """
        written: List[str] = []
        cid = self._flush(node, written)
        logger.debug("Flushed trie", root=short_cid(cid), nodes_written=len(written))
        return cid

    def _flush(self, node: Node, written: List[str]) -> str:
        if node.dirty:
            slots = []
            for slot in node.slots:
                if isinstance(slot, Link) and slot.dirty:
                    slot = Link(cid=self._flush(slot.node, written))
                elif isinstance(slot, Link):
                    slot = Link(cid=slot.cid)
                slots.append(slot)
            node = Node(node.bitmap, tuple(slots))
        cid = self.persist(node)
        written.append(cid)
        return cid

    # ------------------------------------------------------------------
    # lookup

    def find(self, root: Node, key: bytes) -> Optional[bytes]:
        """Value bytes stored under ``key``, or None when absent."""
        path = self.options.path(key)
        node = root
        depth = 0
        while True:
            slot = node.slot(path.index(depth))
            if slot is None:
                return None
            if isinstance(slot, Bucket):
                entry = slot.find(key)
                return entry.value if entry is not None else None
            node = self.child(slot)
            depth += 1

    def _descend(self, root: Node, path: KeyPath) -> Tuple[Trail, Node, int, int]:
        """Follow links for ``path``; returns (ancestors, node, depth, slot index).

        ``ancestors`` lists (node, slot index) for every link taken, root first.
        """
        trail: Trail = []
        node = root
        depth = 0
        while True:
            index = path.index(depth)
            slot = node.slot(index)
            if not isinstance(slot, Link):
                return trail, node, depth, index
            trail.append((node, index))
            node = self.child(slot)
            depth += 1

    @staticmethod
    def _rebuild(trail: Trail, node: Node) -> Node:
        """Clone ancestors bottom-up so each points at its modified child."""
        for parent, index in reversed(trail):
            node = parent.with_slot(index, Link(node=node))
        return node

    # ------------------------------------------------------------------
    # insert / update

    def set(self, root: Node, key: bytes, value: bytes) -> Node:
        """New root with ``key`` bound to ``value``.

        Returns ``root`` itself when the key already holds exactly ``value``.
        """
        path = self.options.path(key)
        trail, node, depth, index = self._descend(root, path)
        slot = node.slot(index)
        entry = Entry(key, value)

        if slot is None:
            new_slot: object = Bucket((entry,))
        else:
            assert isinstance(slot, Bucket)
            existing = slot.find(key)
            if existing is not None:
                if existing.value == value:
                    return root
                new_slot = slot.put(entry)
            elif len(slot) < self.options.bucket_size or not path.can_split_at(depth):
                new_slot = slot.put(entry)
            else:
                members = [(self.options.path(e.key), e) for e in slot.entries]
                members.append((path, entry))
                new_slot = Link(node=self._split(members, depth + 1))
                logger.debug("Split bucket", depth=depth, slot=index, entries=len(members))

        return self._rebuild(trail, node.with_slot(index, new_slot))  # type: ignore[arg-type]

    def _split(self, members: Sequence[Tuple[KeyPath, Entry]], depth: int) -> Node:
        """Build the node at ``depth`` holding ``members``, splitting recursively."""
        groups: Dict[int, List[Tuple[KeyPath, Entry]]] = {}
        for path, entry in members:
            groups.setdefault(path.index(depth), []).append((path, entry))

        node = EMPTY_NODE
        for index in sorted(groups):
            group = groups[index]
            if len(group) > self.options.bucket_size and group[0][0].can_split_at(depth):
                slot: object = Link(node=self._split(group, depth + 1))
            else:
                slot = Bucket(tuple(sorted((e for _, e in group), key=lambda e: e.key)))
            node = node.with_slot(index, slot)  # type: ignore[arg-type]
        return node

    # ------------------------------------------------------------------
    # delete

    def delete(self, root: Node, key: bytes) -> Optional[Node]:
        """New root without ``key``, or None when the key is absent."""
        path = self.options.path(key)
        trail, node, depth, index = self._descend(root, path)
        slot = node.slot(index)
        if slot is None or slot.find(key) is None:  # type: ignore[union-attr]
            return None

        remaining = slot.remove(key)  # type: ignore[union-attr]
        node = node.with_slot(index, remaining) if len(remaining) else node.without_slot(index)

        for parent, parent_index in reversed(trail):
            collapsed = self._collapse(node)
            if collapsed is None:
                node = parent.with_slot(parent_index, Link(node=node))
            elif len(collapsed):
                node = parent.with_slot(parent_index, collapsed)
            else:
                node = parent.without_slot(parent_index)
        return node

    def _collapse(self, node: Node) -> Optional[Bucket]:
        """Bucket replacing ``node`` in its parent, or None if it must stay a node."""
        entries: List[Entry] = []
        for slot in node.slots:
            if isinstance(slot, Link):
                return None
            entries.extend(slot.entries)
            if len(entries) > self.options.bucket_size:
                return None
        return Bucket(tuple(sorted(entries, key=lambda e: e.key)))

    # ------------------------------------------------------------------
    # traversal

    def iter_nodes(self, root: Node) -> Iterator[Tuple[int, Node]]:
        """(depth, node) pairs, depth-first in slot order."""
        stack: List[Tuple[int, Node]] = [(0, root)]
        while stack:
            depth, node = stack.pop()
            yield depth, node
            children = [(depth + 1, self.child(link)) for link in node.links()]
            stack.extend(reversed(children))

    def iter_entries(self, root: Node) -> Iterator[Entry]:
        """Every entry exactly once, in slot order then key order."""
        for slot in root.slots:
            if isinstance(slot, Bucket):
                yield from slot.entries
            else:
                yield from self.iter_entries(self.child(slot))

    def for_each(self, root: Node, visitor: Visitor) -> None:
        """Call ``visitor(key, value)`` per entry; stop at the first failure."""
        for entry in self.iter_entries(root):
            try:
                visitor(entry.key, entry.value)
            except Exception as e:
                raise TraversalError(f"visitor failed: {e}", key=entry.key) from e

    def stats(self, root: Node) -> TrieStats:
        stats = TrieStats()
        for depth, node in self.iter_nodes(root):
            stats.nodes += 1
            stats.max_depth = max(stats.max_depth, depth)
            for slot in node.slots:
                if isinstance(slot, Link):
                    stats.links += 1
                else:
                    stats.buckets += 1
                    stats.entries += len(slot)
                    stats.max_bucket = max(stats.max_bucket, len(slot))
        return stats


__all__ = [
    "Trie",
    "TrieStats",
    "Visitor",
]
