"""Path derivation for the hash-array-mapped trie.

Each key is hashed once. The digest is read most-significant-bit first in
chunks of ``bit_width`` bits; chunk ``d`` selects the slot at depth ``d``:

    digest  = H(key)
    slot(d) = bits[d * bit_width : (d + 1) * bit_width]

A digest of ``n`` bits provides ``n // bit_width`` chunks. Nodes at the last
reachable depth never split, so keys whose digests agree on every chunk share
a single bucket there.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable

from hamtmap.core import sha256_digest

HashFunction = Callable[[bytes], bytes]

DEFAULT_BIT_WIDTH = 5
DEFAULT_BUCKET_SIZE = 3
MAX_BIT_WIDTH = 8


def default_hash(key: bytes) -> bytes:
    """SHA-256 of the key bytes."""
    return sha256_digest(key)


def extract_bits(digest: bytes, depth: int, bit_width: int) -> int:
    """Return the ``bit_width``-bit chunk of ``digest`` selected by ``depth``."""
    total = len(digest) * 8
    start = depth * bit_width
    if depth < 0 or start + bit_width > total:
        raise IndexError(
            f"hash of {total} bits has no chunk at depth {depth} (bit_width={bit_width})"
        )
    shift = total - start - bit_width
    return (int.from_bytes(digest, "big") >> shift) & ((1 << bit_width) - 1)


def bitmap_has(bitmap: int, index: int) -> bool:
    return bool(bitmap & (1 << index))


def bitmap_position(bitmap: int, index: int) -> int:
    """Position of slot ``index`` within the packed slot tuple."""
    return bin(bitmap & ((1 << index) - 1)).count("1")


def bitmap_indices(bitmap: int) -> list[int]:
    """Populated slot indices in ascending order."""
    out = []
    i = 0
    while bitmap:
        if bitmap & 1:
            out.append(i)
        bitmap >>= 1
        i += 1
    return out


@dataclass(frozen=True)
class TrieOptions:
    """Shape parameters of a trie.

    Every map reading or writing a given tree must use the same options:
    they decide both where keys live and when buckets split.
    """
    bit_width: int = DEFAULT_BIT_WIDTH
    bucket_size: int = DEFAULT_BUCKET_SIZE
    hash_fn: HashFunction = field(default=default_hash, compare=False)

    def __post_init__(self) -> None:
        if not 1 <= self.bit_width <= MAX_BIT_WIDTH:
            raise ValueError(f"bit_width must be in 1..{MAX_BIT_WIDTH}, got {self.bit_width}")
        if self.bucket_size < 1:
            raise ValueError(f"bucket_size must be >= 1, got {self.bucket_size}")

    @property
    def slot_count(self) -> int:
        return 1 << self.bit_width

    def path(self, key: bytes) -> "KeyPath":
        return KeyPath(key, self.hash_fn(key), self.bit_width)


class KeyPath:
    """The hashed form of one key: its slot index at every depth."""

    __slots__ = ("key", "digest", "bit_width", "max_depth")

    def __init__(self, key: bytes, digest: bytes, bit_width: int):
        if not digest:
            raise ValueError("hash function returned an empty digest")
        self.key = key
        self.digest = digest
        self.bit_width = bit_width
        self.max_depth = (len(digest) * 8) // bit_width
        if self.max_depth < 1:
            raise ValueError(
                f"digest of {len(digest) * 8} bits is shorter than bit_width {bit_width}"
            )

    def index(self, depth: int) -> int:
        return extract_bits(self.digest, depth, self.bit_width)

    def can_split_at(self, depth: int) -> bool:
        """Whether a bucket held by a node at ``depth`` may move one level down."""
        return depth + 1 < self.max_depth

    def __repr__(self) -> str:
        return f"KeyPath(key={self.key!r}, digest={self.digest.hex()[:16]}...)"
