"""Content-addressed document identifiers.

    document_id = SHA256(SHA256(contract_id || owner_id || utf8(type_name) || entropy))

Contract id, owner id and entropy are fixed 32-byte fields, so the only
variable-length input is unambiguous. Any party holding the four inputs can
recompute the id without a central allocator.

Entropy is the only source of uniqueness across documents created by the
same (contract, owner, type). It comes from the operating system CSPRNG via
``secrets``, is drawn fresh for every document and is never logged.
"""

from __future__ import annotations

import hashlib
import secrets
from typing import Protocol, Union

from docstate.errors import ValidationError
from docstate.identifier import Identifier

ENTROPY_LENGTH = 32

IdLike = Union[Identifier, bytes, str]


class EntropyGenerator(Protocol):
    def generate(self) -> bytes:
        ...


class DefaultEntropyGenerator:
    """32 bytes from the operating system CSPRNG per call."""

    def generate(self) -> bytes:
        return secrets.token_bytes(ENTROPY_LENGTH)


def check_entropy(entropy: bytes) -> bytes:
    if not isinstance(entropy, (bytes, bytearray)) or len(entropy) != ENTROPY_LENGTH:
        raise ValidationError(
            "$entropy",
            f"entropy must be exactly {ENTROPY_LENGTH} bytes",
            None,
        )
    return bytes(entropy)


def generate_document_id(
    contract_id: IdLike,
    owner_id: IdLike,
    type_name: str,
    entropy: bytes,
) -> Identifier:
    """Derive the document id; deterministic for identical inputs."""
    if not type_name:
        raise ValidationError("$type", "document type name must not be empty", type_name)
    contract = Identifier.coerce(contract_id).to_bytes()
    owner = Identifier.coerce(owner_id).to_bytes()
    buf = contract + owner + type_name.encode("utf-8") + check_entropy(entropy)
    digest = hashlib.sha256(hashlib.sha256(buf).digest()).digest()
    return Identifier(digest)


def verify_document_id(
    document_id: IdLike,
    contract_id: IdLike,
    owner_id: IdLike,
    type_name: str,
    entropy: bytes,
) -> bool:
    """Recompute and compare a claimed document id."""
    return Identifier.coerce(document_id) == generate_document_id(contract_id, owner_id, type_name, entropy)
