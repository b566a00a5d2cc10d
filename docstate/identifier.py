"""docstate.identifier

32-byte platform identifiers and their base-58 text form.

Contract ids, document ids and identity ids are all 32 raw bytes rendered in
the Bitcoin base-58 alphabet. Leading zero bytes map to leading ``1``
characters, so the mapping is a bijection between 32-byte values and the
strings that decode to exactly 32 bytes.

Base58Check (payload + 4-byte double-SHA256 checksum) lives here too because
the Wallet-Import-Format private key form is built on it.
"""

from __future__ import annotations

import hashlib
import hmac
from functools import total_ordering
from typing import Union

from docstate.errors import ConfigurationError, InvalidIdentifier


IDENTIFIER_LENGTH = 32

B58_ALPHABET = b"123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"
B58_MAP = {c: i for i, c in enumerate(B58_ALPHABET)}


def b58decode(s: Union[str, bytes]) -> bytes:
    if isinstance(s, str):
        try:
            s_bytes = s.encode("ascii")
        except UnicodeEncodeError as ex:
            raise ValueError("Invalid base58 character") from ex
    else:
        s_bytes = s
    num = 0
    for c in s_bytes:
        if c not in B58_MAP:
            raise ValueError("Invalid base58 character")
        num = num * 58 + B58_MAP[c]
    # Count leading zeros
    n_pad = 0
    for c in s_bytes:
        if c == B58_ALPHABET[0]:
            n_pad += 1
        else:
            break
    full = num.to_bytes((num.bit_length() + 7) // 8, "big") if num else b""
    return b"\x00" * n_pad + full


def b58encode(b: bytes) -> str:
    n_pad = 0
    for c in b:
        if c == 0:
            n_pad += 1
        else:
            break
    num = int.from_bytes(b, "big")
    out = bytearray()
    while num > 0:
        num, rem = divmod(num, 58)
        out.append(B58_ALPHABET[rem])
    out.extend(B58_ALPHABET[0] for _ in range(n_pad))
    out.reverse()
    return out.decode("ascii")


def sha256d(data: bytes) -> bytes:
    """Double SHA-256."""
    return hashlib.sha256(hashlib.sha256(data).digest()).digest()


def b58check_encode(payload: bytes) -> str:
    return b58encode(payload + sha256d(payload)[:4])


def b58check_decode(text: str) -> bytes:
    """Decode Base58Check text and verify its checksum."""
    try:
        raw = b58decode(text.strip())
    except ValueError as ex:
        raise ConfigurationError(f"not base58: {ex}") from ex
    if len(raw) < 5:
        raise ConfigurationError("base58check payload too short")
    payload, checksum = raw[:-4], raw[-4:]
    if not hmac.compare_digest(sha256d(payload)[:4], checksum):
        raise ConfigurationError("base58check checksum mismatch")
    return payload


def encode(raw: bytes) -> str:
    """Encode a 32-byte identifier as base-58 text."""
    if not isinstance(raw, (bytes, bytearray)) or len(raw) != IDENTIFIER_LENGTH:
        raise InvalidIdentifier(raw, f"identifiers are exactly {IDENTIFIER_LENGTH} bytes")
    return b58encode(bytes(raw))


def decode(text: str) -> bytes:
    """Decode base-58 text into exactly 32 bytes."""
    if not isinstance(text, str) or not text:
        raise InvalidIdentifier(text, "empty or non-string identifier")
    try:
        raw = b58decode(text)
    except ValueError as ex:
        raise InvalidIdentifier(text, str(ex)) from ex
    if len(raw) != IDENTIFIER_LENGTH:
        raise InvalidIdentifier(text, f"decodes to {len(raw)} bytes, expected {IDENTIFIER_LENGTH}")
    return raw


@total_ordering
class Identifier:
    """Immutable 32-byte identifier."""

    __slots__ = ("_raw",)

    def __init__(self, raw: Union[bytes, bytearray]):
        if not isinstance(raw, (bytes, bytearray)) or len(raw) != IDENTIFIER_LENGTH:
            raise InvalidIdentifier(raw, f"identifiers are exactly {IDENTIFIER_LENGTH} bytes")
        object.__setattr__(self, "_raw", bytes(raw))

    def __setattr__(self, name, value):
        raise AttributeError("Identifier is immutable")

    @classmethod
    def from_string(cls, text: str) -> "Identifier":
        return cls(decode(text))

    @classmethod
    def from_bytes(cls, raw: Union[bytes, bytearray]) -> "Identifier":
        return cls(raw)

    @classmethod
    def coerce(cls, value: Union["Identifier", bytes, bytearray, str]) -> "Identifier":
        """Accept an Identifier, its raw bytes or its base-58 text."""
        if isinstance(value, Identifier):
            return value
        if isinstance(value, str):
            return cls.from_string(value)
        return cls(value)

    def to_bytes(self) -> bytes:
        return self._raw

    def to_string(self) -> str:
        return b58encode(self._raw)

    def __bytes__(self) -> bytes:
        return self._raw

    def __str__(self) -> str:
        return self.to_string()

    def __repr__(self) -> str:
        return f"Identifier({self.to_string()!r})"

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Identifier):
            return self._raw == other._raw
        return NotImplemented

    def __lt__(self, other: "Identifier") -> bool:
        if not isinstance(other, Identifier):
            return NotImplemented
        return self._raw < other._raw

    def __hash__(self) -> int:
        return hash(self._raw)
