"""Canonical JSON bytes for hashing, signing and the wire form.

Properties:
- keys sorted lexicographically
- no insignificant whitespace
- UTF-8
- floats rejected (use int or Decimal; Decimal is emitted as a string)
- bytes emitted as arrays of integers, identifiers as base-58 text

One definition is shared by the transition signer, the transition id and the
in-memory platform so every party hashes the same bytes.
"""

from __future__ import annotations

import hashlib
import json
from decimal import Decimal
from enum import Enum
from typing import Any, Dict

from docstate.identifier import Identifier


def to_json_types(obj: Any, path: str = "$") -> Any:
    """Coerce Python objects into strict JSON types."""
    if obj is None or isinstance(obj, (str, bool, int)):
        return obj
    if isinstance(obj, float):
        raise ValueError(f"Float not allowed in canonical JSON at {path}; use int or Decimal")
    if isinstance(obj, Decimal):
        return str(obj)
    if isinstance(obj, Identifier):
        return obj.to_string()
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, (bytes, bytearray)):
        return list(bytes(obj))
    if isinstance(obj, (list, tuple)):
        return [to_json_types(x, f"{path}[{i}]") for i, x in enumerate(obj)]
    if isinstance(obj, dict):
        out: Dict[str, Any] = {}
        for k, v in obj.items():
            out[str(k)] = to_json_types(v, f"{path}.{k}")
        return out
    raise ValueError(f"Unsupported type {type(obj).__name__} in canonical JSON at {path}")


def canonical_json_bytes(obj: Any) -> bytes:
    return json.dumps(
        to_json_types(obj),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    ).encode("utf-8")


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()
