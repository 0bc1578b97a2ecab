"""hamtmap: a persistent, content-addressed key-value map on a hash-array-mapped trie."""

__version__ = "0.1.0"

from hamtmap.capabilities import (
    BytesKey,
    BytesSink,
    BytesValue,
    IntKey,
    JSONSink,
    JSONValue,
    StringKey,
    UIntKey,
)
from hamtmap.errors import (
    DecodeError,
    HamtError,
    KeyNotFoundError,
    StoreLoadError,
    StoreWriteError,
    TraversalError,
)
from hamtmap.hashing import TrieOptions
from hamtmap.map import Map, make_empty_map
from hamtmap.store import CachingStore, FileStore, MemoryStore, RuntimeStore, Store
from hamtmap.trie import TrieStats

__all__ = [
    "__version__",
    "BytesKey",
    "BytesSink",
    "BytesValue",
    "CachingStore",
    "DecodeError",
    "FileStore",
    "HamtError",
    "IntKey",
    "JSONSink",
    "JSONValue",
    "KeyNotFoundError",
    "Map",
    "MemoryStore",
    "RuntimeStore",
    "Store",
    "StoreLoadError",
    "StoreWriteError",
    "StringKey",
    "TraversalError",
    "TrieOptions",
    "TrieStats",
    "UIntKey",
    "make_empty_map",
]
