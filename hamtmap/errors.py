"""
hamtmap error types.

Store and codec failures abort the current operation and propagate to the
caller; the map's root is never updated on failure. Absence of a key is not
an error and is reported through return values, except by ``must_delete``.
"""

from __future__ import annotations

from typing import Optional


class HamtError(Exception):
    """Base exception for all hamtmap failures."""

    def __init__(
        self,
        message: str,
        cid: Optional[str] = None,
        key: Optional[bytes] = None,
    ):
        self.message = message
        self.cid = cid
        self.key = key
        super().__init__(message)

    def __str__(self) -> str:
        parts = [self.message]
        if self.cid:
            parts.append(f"cid={self.cid}")
        if self.key is not None:
            parts.append(f"key={self.key!r}")
        return " ".join(parts)


class StoreLoadError(HamtError):
    """The store could not produce bytes for an identifier."""
    pass


class StoreWriteError(HamtError):
    """The store rejected a write."""
    pass


class DecodeError(HamtError):
    """Bytes do not parse as a valid node or value."""
    pass


class TraversalError(HamtError):
    """A for_each visitor failed; the original exception is the __cause__."""
    pass


class KeyNotFoundError(HamtError, KeyError):
    """Key absent where the caller required it to exist."""

    def __str__(self) -> str:
        return HamtError.__str__(self)
