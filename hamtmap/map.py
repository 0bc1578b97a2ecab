"""
Persistent content-addressed map.

A ``Map`` is a root identifier plus the store holding the nodes it names.
Every successful mutation flushes the changed path and replaces the root;
the previous root stays readable, so any number of versions can be held at
once::

    store = MemoryStore()
    m = Map.empty(store)
    m.put("a", b"1")
    v1 = m.root()
    m.put("b", b"2")
    m.at(v1).has("b")    # False

Keys are ``str``/``bytes`` or objects with ``key()``; values are ``bytes``
or objects with ``marshal()``. Lookups decode into any object with
``unmarshal(data)``.
"""

from __future__ import annotations

from typing import Any, Callable, Iterator, List, Optional, Tuple

from hamtmap.capabilities import key_bytes, value_bytes
from hamtmap.config import default_trie_options
from hamtmap.core import normalize_cid, short_cid
from hamtmap.errors import DecodeError, HamtError, KeyNotFoundError, TraversalError
from hamtmap.hashing import TrieOptions
from hamtmap.node import EMPTY_NODE, Node
from hamtmap.observability import HamtLayer, get_logger, timed_operation
from hamtmap.store import Store
from hamtmap.trie import Trie, TrieStats

logger = get_logger("map", HamtLayer.MAP)


def _with_context(err: HamtError, context: str, key: Optional[bytes] = None) -> HamtError:
    """Same error class, message prefixed with the failing operation."""
    return type(err)(
        f"{context}: {err.message}",
        cid=err.cid,
        key=err.key if err.key is not None else key,
    )


class Map:
    """Handle onto one version of a persistent map.

    Not safe for concurrent mutation; give each writer its own handle.
    """

    def __init__(self, store: Store, root: str, options: Optional[TrieOptions] = None):
        try:
            self._root = normalize_cid(root)
        except ValueError as e:
            raise ValueError(f"invalid map root {root!r}: {e}") from e
        self._store = store
        self._options = options or default_trie_options()
        self._trie = Trie(store, self._options)

    @classmethod
    def empty(cls, store: Store, options: Optional[TrieOptions] = None) -> "Map":
        """Persist the empty node and return a map rooted at it."""
        options = options or default_trie_options()
        try:
            root = Trie(store, options).flush(EMPTY_NODE)
        except HamtError as e:
            raise _with_context(e, "failed to create empty map") from e
        return cls(store, root, options)

    def __repr__(self) -> str:
        return f"Map(root={short_cid(self._root)}, store={type(self._store).__name__})"

    @property
    def store(self) -> Store:
        return self._store

    @property
    def options(self) -> TrieOptions:
        return self._options

    def root(self) -> str:
        """Identifier of the current version."""
        return self._root

    def at(self, root: str) -> "Map":
        """Handle onto another version sharing this map's store and options."""
        return Map(self._store, root, self._options)

    def _load_root(self, operation: str, key: Optional[bytes] = None) -> Node:
        try:
            return self._trie.load(self._root)
        except HamtError as e:
            raise _with_context(
                e, f"{operation} failed to load root {short_cid(self._root)}", key
            ) from e

    # -- mutation ----------------------------------------------------------

    @timed_operation(logger, "map.put")
    def put(self, k: Any, v: Any) -> None:
        """Bind ``k`` to ``v``, replacing any previous value."""
        key = key_bytes(k)
        value = value_bytes(v)
        root = self._load_root("put", key)
        try:
            new_root = self._trie.set(root, key, value)
            if new_root is root:
                return
            cid = self._trie.flush(new_root)
        except HamtError as e:
            raise _with_context(e, f"failed to put key in map {short_cid(self._root)}", key) from e
        self._root = cid

    @timed_operation(logger, "map.delete")
    def delete(self, k: Any) -> bool:
        """Remove ``k``; False (root unchanged) when it was absent."""
        key = key_bytes(k)
        root = self._load_root("delete", key)
        try:
            new_root = self._trie.delete(root, key)
            if new_root is None:
                return False
            cid = self._trie.flush(new_root)
        except HamtError as e:
            raise _with_context(e, f"failed to delete key in map {short_cid(self._root)}", key) from e
        self._root = cid
        return True

    def must_delete(self, k: Any) -> None:
        """Remove ``k``, raising KeyNotFoundError when it is absent."""
        if not self.delete(k):
            raise KeyNotFoundError(
                f"failed to delete key in map {short_cid(self._root)}: not found",
                cid=self._root,
                key=key_bytes(k),
            )

    # -- lookup ------------------------------------------------------------

    def get_bytes(self, k: Any) -> Optional[bytes]:
        """Raw value bytes of ``k``, or None when absent."""
        key = key_bytes(k)
        root = self._load_root("get", key)
        try:
            return self._trie.find(root, key)
        except HamtError as e:
            raise _with_context(e, f"failed to get key in map {short_cid(self._root)}", key) from e

    @timed_operation(logger, "map.get")
    def get(self, k: Any, out: Any = None) -> bool:
        """Look ``k`` up, decoding into ``out.unmarshal`` when found.

        Returns whether the key is present; absence is not an error.
        """
        data = self.get_bytes(k)
        if data is None:
            return False
        if out is not None:
            try:
                out.unmarshal(data)
            except HamtError:
                raise
            except Exception as e:
                raise DecodeError(
                    f"failed to decode value in map {short_cid(self._root)}: {e}",
                    cid=self._root,
                    key=key_bytes(k),
                ) from e
        return True

    def has(self, k: Any) -> bool:
        return self.get_bytes(k) is not None

    def __contains__(self, k: Any) -> bool:
        return self.has(k)

    # -- traversal ---------------------------------------------------------

    @timed_operation(logger, "map.for_each")
    def for_each(self, visitor: Callable[[bytes, bytes], None]) -> None:
        """Call ``visitor(key, value)`` for every entry in deterministic order."""
        root = self._load_root("for_each")
        try:
            self._trie.for_each(root, visitor)
        except TraversalError:
            raise
        except HamtError as e:
            raise _with_context(e, f"failed to iterate map {short_cid(self._root)}") from e

    def items(self) -> Iterator[Tuple[bytes, bytes]]:
        root = self._load_root("items")
        for entry in self._trie.iter_entries(root):
            yield entry.key, entry.value

    def keys(self) -> Iterator[bytes]:
        for key, _ in self.items():
            yield key

    def collect_keys(self) -> List[bytes]:
        """All keys, in traversal order."""
        out: List[bytes] = []
        self.for_each(lambda key, _value: out.append(key))
        return out

    def __len__(self) -> int:
        return sum(1 for _ in self.items())

    def stats(self) -> TrieStats:
        return self._trie.stats(self._load_root("stats"))


def make_empty_map(store: Store, options: Optional[TrieOptions] = None) -> Map:
    """Create a map with no entries, persisting its root node."""
    return Map.empty(store, options)
