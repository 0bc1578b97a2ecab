"""Core primitives for hamtmap.

This module provides the foundational utilities used throughout the package:
- Cryptographic hashing (SHA-256)
- Canonical JSON serialization (JCS/RFC8785 subset)
- Content identifier validation
- YAML/JSON loading with consistent encoding

Design principles:
- Pure functions where possible
- No global mutable state
- Explicit error handling
"""

from __future__ import annotations

import hashlib
import json
import pathlib
import re
from typing import Any

import yaml

# Package root, computed once at module load
PACKAGE_ROOT = pathlib.Path(__file__).resolve().parent

SHA256_HEX_RE = re.compile(r"^[a-f0-9]{64}$")


def sha256_bytes(data: bytes) -> str:
    """Compute SHA-256 hash of bytes, returning lowercase hex string."""
    return hashlib.sha256(data).hexdigest()


def sha256_digest(data: bytes) -> bytes:
    """Compute the raw 32-byte SHA-256 digest."""
    return hashlib.sha256(data).digest()


def load_yaml(path: pathlib.Path) -> Any:
    """Load YAML file with UTF-8 encoding."""
    return yaml.safe_load(pathlib.Path(path).read_text(encoding="utf-8"))


def load_json(path: pathlib.Path) -> Any:
    """Load JSON file with UTF-8 encoding."""
    return json.loads(pathlib.Path(path).read_text(encoding="utf-8"))


def canonical_json_bytes(obj: Any) -> bytes:
    """Serialize object to canonical JSON bytes (JCS/RFC8785 subset).

    Properties:
    - Keys sorted lexicographically
    - No whitespace
    - UTF-8 encoded
    - Floats rejected (use strings/ints)

    This ensures byte-for-byte reproducibility for content addressing.
    """
    def _reject_floats(o: Any, path: str = "") -> None:
        if isinstance(o, float):
            raise ValueError(f"Float not allowed in canonical JSON at {path}")
        if isinstance(o, dict):
            for k, v in o.items():
                _reject_floats(v, f"{path}.{k}")
        if isinstance(o, (list, tuple)):
            for i, v in enumerate(o):
                _reject_floats(v, f"{path}[{i}]")

    _reject_floats(obj)
    return json.dumps(
        obj,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    ).encode("utf-8")


def is_valid_cid(cid: str) -> bool:
    """Check if string is a valid content identifier (SHA-256 hex digest)."""
    return isinstance(cid, str) and bool(SHA256_HEX_RE.match(cid))


def normalize_cid(cid: str) -> str:
    """Normalize a content identifier, raising ValueError when malformed."""
    cc = str(cid or "").strip().lower()
    if not SHA256_HEX_RE.match(cc):
        raise ValueError("cid must be 64 lowercase hex chars")
    return cc


def short_cid(cid: str) -> str:
    """Abbreviated identifier for log lines."""
    return cid[:12] if cid else "<unflushed>"
