"""Key and value capabilities.

The map accepts any object with ``key() -> str | bytes`` as a key, any
object with ``marshal() -> bytes`` as a value, and any object with
``unmarshal(data: bytes)`` as an output sink for lookups. No base class is
required; the protocols below only document the shape.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Optional, Protocol, Tuple, Union, runtime_checkable

from hamtmap.core import canonical_json_bytes
from hamtmap.errors import DecodeError


@runtime_checkable
class Keyer(Protocol):
    def key(self) -> Union[str, bytes]:
        ...


@runtime_checkable
class Marshaler(Protocol):
    def marshal(self) -> bytes:
        ...


@runtime_checkable
class Unmarshaler(Protocol):
    def unmarshal(self, data: bytes) -> None:
        ...


def key_bytes(k: Any) -> bytes:
    """Raw bytes of a key capability; plain ``str``/``bytes`` are accepted too."""
    if isinstance(k, str):
        return k.encode("utf-8")
    if isinstance(k, (bytes, bytearray)):
        return bytes(k)
    if not isinstance(k, Keyer):
        raise TypeError(f"{type(k).__name__} does not provide key()")
    raw = k.key()
    if isinstance(raw, str):
        return raw.encode("utf-8")
    if isinstance(raw, (bytes, bytearray, memoryview)):
        return bytes(raw)
    raise TypeError(f"key() must return str or bytes, got {type(raw).__name__}")


def value_bytes(v: Any) -> bytes:
    """Encoded bytes of a value capability; plain ``bytes`` pass through."""
    if isinstance(v, (bytes, bytearray)):
        return bytes(v)
    if not isinstance(v, Marshaler):
        raise TypeError(f"{type(v).__name__} does not provide marshal()")
    data = v.marshal()
    if not isinstance(data, (bytes, bytearray, memoryview)):
        raise TypeError(f"marshal() must return bytes, got {type(data).__name__}")
    return bytes(data)


# -- varints ----------------------------------------------------------------

def encode_uvarint(n: int) -> bytes:
    """Unsigned LEB128."""
    if n < 0:
        raise ValueError("uvarint requires a non-negative integer")
    out = bytearray()
    while True:
        byte = n & 0x7F
        n >>= 7
        if n:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def decode_uvarint(data: bytes) -> Tuple[int, int]:
    """Returns (value, bytes consumed)."""
    n = 0
    shift = 0
    for i, byte in enumerate(data):
        n |= (byte & 0x7F) << shift
        if not byte & 0x80:
            return n, i + 1
        shift += 7
    raise ValueError("truncated uvarint")


def encode_varint(n: int) -> bytes:
    """Zig-zag signed varint: 0, -1, 1, -2 ... map to 0, 1, 2, 3 ..."""
    return encode_uvarint(n << 1 if n >= 0 else ((-n) << 1) - 1)


def decode_varint(data: bytes) -> Tuple[int, int]:
    ux, used = decode_uvarint(data)
    return (ux >> 1) if not ux & 1 else -((ux + 1) >> 1), used


# -- keys -------------------------------------------------------------------

@dataclass(frozen=True)
class StringKey:
    value: str

    def key(self) -> str:
        return self.value


@dataclass(frozen=True)
class BytesKey:
    value: bytes

    def key(self) -> bytes:
        return self.value


@dataclass(frozen=True)
class UIntKey:
    value: int

    def key(self) -> bytes:
        return encode_uvarint(self.value)

    @classmethod
    def parse(cls, raw: bytes) -> "UIntKey":
        n, used = decode_uvarint(raw)
        if used != len(raw):
            raise ValueError("trailing bytes after uvarint key")
        return cls(n)


@dataclass(frozen=True)
class IntKey:
    value: int

    def key(self) -> bytes:
        return encode_varint(self.value)

    @classmethod
    def parse(cls, raw: bytes) -> "IntKey":
        n, used = decode_varint(raw)
        if used != len(raw):
            raise ValueError("trailing bytes after varint key")
        return cls(n)


# -- values and sinks -------------------------------------------------------

@dataclass(frozen=True)
class BytesValue:
    data: bytes

    def marshal(self) -> bytes:
        return self.data


@dataclass(frozen=True)
class JSONValue:
    """Any canonical-JSON-serializable value (no floats)."""
    value: Any

    def marshal(self) -> bytes:
        return canonical_json_bytes(self.value)


class BytesSink:
    """Receives the raw value bytes of a lookup."""

    def __init__(self) -> None:
        self.data: Optional[bytes] = None

    def unmarshal(self, data: bytes) -> None:
        self.data = bytes(data)


class JSONSink:
    """Decodes a JSONValue."""

    def __init__(self) -> None:
        self.value: Any = None

    def unmarshal(self, data: bytes) -> None:
        try:
            self.value = json.loads(data.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as e:
            raise DecodeError(f"value is not JSON: {e}") from e
