#!/usr/bin/env python3
"""Content-addressed blob stores backing the trie.

Every store implements the same contract:

  ``put(data) -> cid``  where ``cid == sha256(data).hexdigest()``
  ``get(cid) -> data``  raising ``StoreLoadError`` when the blob is unavailable

Repeated ``put`` of identical bytes is harmless. Implementations:

- ``MemoryStore``: a dict behind a lock; counts reads and writes.
- ``FileStore``: one file per blob under ``<root>/<type>/<cid>``, written
  atomically and re-hashed on read.
- ``CachingStore``: read-through LRU cache in front of any other store.
- ``RuntimeStore``: adapts an execution runtime exposing ``ipld_get`` /
  ``ipld_put``; a missing blob becomes an exception instead of an abort.
"""

from __future__ import annotations

import os
import pathlib
import re
import tempfile
import threading
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from typing import Any, Dict, Iterator, Optional, Protocol, Union

from hamtmap.cache import CacheMetrics, LRUCache
from hamtmap.core import is_valid_cid, normalize_cid, sha256_bytes, short_cid
from hamtmap.errors import StoreLoadError, StoreWriteError
from hamtmap.observability import HamtLayer, get_logger

logger = get_logger("store", HamtLayer.STORE)

BLOB_TYPE_RE = re.compile(r"^[a-z0-9][a-z0-9-]{0,63}$")
DEFAULT_BLOB_TYPE = "hamt-node"


@dataclass
class StoreStats:
    """I/O counters of a store."""
    reads: int = 0
    writes: int = 0
    duplicate_writes: int = 0
    bytes_written: int = 0

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


class Store(ABC):
    """Abstract content-addressed blob store."""

    @abstractmethod
    def get(self, cid: str) -> bytes:
        """Return the bytes named by ``cid``."""

    @abstractmethod
    def put(self, data: bytes) -> str:
        """Persist ``data`` and return its identifier."""

    def has(self, cid: str) -> bool:
        try:
            self.get(cid)
        except StoreLoadError:
            return False
        return True


def _checked_cid(cid: str) -> str:
    try:
        return normalize_cid(cid)
    except ValueError as e:
        raise StoreLoadError(f"malformed identifier {cid!r}", cid=str(cid)) from e


class MemoryStore(Store):
    """In-process store; thread-safe."""

    def __init__(self) -> None:
        self._blobs: Dict[str, bytes] = {}
        self._lock = threading.RLock()
        self.stats = StoreStats()

    def get(self, cid: str) -> bytes:
        cid = _checked_cid(cid)
        with self._lock:
            self.stats.reads += 1
            data = self._blobs.get(cid)
        if data is None:
            raise StoreLoadError("blob not found", cid=cid)
        return data

    def put(self, data: bytes) -> str:
        data = bytes(data)
        cid = sha256_bytes(data)
        with self._lock:
            self.stats.writes += 1
            if cid in self._blobs:
                self.stats.duplicate_writes += 1
            else:
                self._blobs[cid] = data
                self.stats.bytes_written += len(data)
        return cid

    def has(self, cid: str) -> bool:
        try:
            cid = normalize_cid(cid)
        except ValueError:
            return False
        with self._lock:
            return cid in self._blobs

    def __len__(self) -> int:
        with self._lock:
            return len(self._blobs)

    def __iter__(self) -> Iterator[str]:
        with self._lock:
            return iter(sorted(self._blobs))

    def reset_stats(self) -> None:
        with self._lock:
            self.stats = StoreStats()


def normalize_blob_type(t: str) -> str:
    """Normalize and validate a blob type directory name."""
    tt = str(t or "").strip().lower()
    if not tt:
        raise ValueError("blob_type is required")
    if not BLOB_TYPE_RE.match(tt):
        raise ValueError(
            "blob_type must match ^[a-z0-9][a-z0-9-]{0,63}$ (lowercase, no slashes)"
        )
    return tt


class FileStore(Store):
    """Content-addressed directory store.

    Layout: ``<root>/<blob_type>/<cid>``. Files are written once via a
    temporary file and ``os.replace``; an existing file is never rewritten.
    """

    def __init__(
        self,
        root: Union[str, pathlib.Path],
        blob_type: str = DEFAULT_BLOB_TYPE,
        verify_reads: bool = True,
    ):
        self.root = pathlib.Path(root).resolve()
        self.blob_type = normalize_blob_type(blob_type)
        self.verify_reads = verify_reads
        self.stats = StoreStats()
        self._lock = threading.Lock()

    @property
    def type_dir(self) -> pathlib.Path:
        return self.root / self.blob_type

    def path_for(self, cid: str) -> pathlib.Path:
        return self.type_dir / normalize_cid(cid)

    def get(self, cid: str) -> bytes:
        cid = _checked_cid(cid)
        path = self.type_dir / cid
        with self._lock:
            self.stats.reads += 1
        try:
            data = path.read_bytes()
        except FileNotFoundError as e:
            raise StoreLoadError(f"blob not found in {self.type_dir}", cid=cid) from e
        except OSError as e:
            raise StoreLoadError(f"failed to read {path}: {e}", cid=cid) from e

        if self.verify_reads:
            actual = sha256_bytes(data)
            if actual != cid:
                raise StoreLoadError(
                    f"integrity check failed: content hash {actual} does not match {path.name}",
                    cid=cid,
                )
        return data

    def has(self, cid: str) -> bool:
        try:
            cid = normalize_cid(cid)
        except ValueError:
            return False
        return (self.type_dir / cid).is_file()

    def put(self, data: bytes) -> str:
        data = bytes(data)
        cid = sha256_bytes(data)
        dest = self.type_dir / cid
        with self._lock:
            self.stats.writes += 1

        try:
            if dest.exists():
                existing = sha256_bytes(dest.read_bytes())
                if existing != cid:
                    raise StoreWriteError(
                        f"existing blob at {dest} has content hash {existing}",
                        cid=cid,
                    )
                with self._lock:
                    self.stats.duplicate_writes += 1
                return cid

            self.type_dir.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(prefix=f".{cid[:8]}.", dir=str(self.type_dir))
            try:
                with os.fdopen(fd, "wb") as f:
                    f.write(data)
                os.replace(tmp, dest)
            except BaseException:
                if os.path.exists(tmp):
                    os.unlink(tmp)
                raise
        except OSError as e:
            raise StoreWriteError(f"failed to write blob: {e}", cid=cid) from e

        with self._lock:
            self.stats.bytes_written += len(data)
        logger.debug("Stored blob", cid=short_cid(cid), size=len(data), root=str(self.root))
        return cid

    def __iter__(self) -> Iterator[str]:
        if not self.type_dir.is_dir():
            return iter(())
        return iter(sorted(p.name for p in self.type_dir.iterdir() if is_valid_cid(p.name)))


class CachingStore(Store):
    """Read-through, write-through LRU cache in front of another store."""

    def __init__(self, inner: Store, max_size: int = 1024, max_bytes: Optional[int] = None):
        self.inner = inner
        self._cache: LRUCache[str, bytes] = LRUCache(max_size=max_size, max_bytes=max_bytes)

    def get(self, cid: str) -> bytes:
        data = self._cache.get(cid)
        if data is not None:
            return data
        data = self.inner.get(cid)
        self._cache.set(cid, data)
        return data

    def put(self, data: bytes) -> str:
        cid = self.inner.put(data)
        self._cache.set(cid, bytes(data))
        return cid

    def has(self, cid: str) -> bool:
        return cid in self._cache or self.inner.has(cid)

    @property
    def metrics(self) -> CacheMetrics:
        return self._cache.metrics

    def clear_cache(self) -> None:
        self._cache.clear()


class Runtime(Protocol):
    """Execution context able to load and persist content-addressed blobs."""

    def ipld_get(self, cid: str) -> Optional[bytes]:
        ...

    def ipld_put(self, data: bytes) -> str:
        ...


class RuntimeStore(Store):
    """Store view over an execution runtime.

    A runtime that cannot find a blob returns ``None``; that becomes a
    ``StoreLoadError`` so the caller, not the engine, decides whether the
    failure is fatal.
    """

    def __init__(self, runtime: Runtime):
        self.runtime = runtime

    def get(self, cid: str) -> bytes:
        cid = _checked_cid(cid)
        try:
            data = self.runtime.ipld_get(cid)
        except Exception as e:
            raise StoreLoadError(f"runtime failed to load blob: {e}", cid=cid) from e
        if data is None:
            raise StoreLoadError("not found", cid=cid)
        return bytes(data)

    def put(self, data: bytes) -> str:
        data = bytes(data)
        expected = sha256_bytes(data)
        try:
            cid = self.runtime.ipld_put(data)
        except Exception as e:
            raise StoreWriteError(f"runtime failed to persist blob: {e}", cid=expected) from e
        if cid != expected:
            raise StoreWriteError(
                f"runtime returned identifier {cid!r}, expected content address {expected}",
                cid=expected,
            )
        return cid


def open_store(root: Union[str, pathlib.Path, None] = None, cache_size: Optional[int] = None) -> Store:
    """Open the configured file store, wrapped in a read cache."""
    from hamtmap.config import get_config

    cfg = get_config().store
    store_root = root if root is not None else cfg.root_dir.get()
    size = cache_size if cache_size is not None else cfg.cache_size.get()
    inner = FileStore(store_root, verify_reads=cfg.verify_reads.get())
    return CachingStore(inner, max_size=size)


def describe_store(store: Store) -> Dict[str, Any]:
    """Summary used by the CLI ``stats`` command."""
    if isinstance(store, CachingStore):
        out = describe_store(store.inner)
        out["cache"] = store.metrics.to_dict()
        return out
    out: Dict[str, Any] = {"type": type(store).__name__}
    stats = getattr(store, "stats", None)
    if isinstance(stats, StoreStats):
        out["io"] = stats.to_dict()
    if isinstance(store, FileStore):
        out["root"] = str(store.root)
    return out
