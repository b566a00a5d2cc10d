"""Document state transitions and their wire form.

A transition carries the full resulting document version plus what the
platform needs to check it: the create entropy, the price being set or paid,
and the signing key id. Properties travel as an ordered list of
``[name, value]`` pairs in schema position order so the signed bytes never
depend on dict ordering.

Signing input is the canonical JSON of the transition with ``signature``
removed. The transition id is the SHA-256 hex digest of that same input.
"""

from __future__ import annotations

import dataclasses
import json
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, List, Optional

from docstate.canonical import canonical_json_bytes, sha256_hex
from docstate.document import Document
from docstate.errors import ValidationError
from docstate.identifier import Identifier
from docstate.keys import Identity, IdentityPublicKey
from docstate.schema import DocumentType, FieldKind

WIRE_VERSION = 1


class TransitionKind(Enum):
    CREATE = "create"
    UPDATE_PRICE = "update_price"
    PURCHASE = "purchase"


@dataclass(frozen=True)
class DocumentTransition:
    kind: TransitionKind
    document: Document
    identity_id: Identifier
    entropy: Optional[bytes] = None
    price: Optional[int] = None
    signature_public_key_id: Optional[int] = None
    signature: Optional[bytes] = None

    @classmethod
    def create(cls, document: Document, entropy: bytes) -> "DocumentTransition":
        return cls(TransitionKind.CREATE, document, document.owner_id, entropy=entropy)

    @classmethod
    def update_price(cls, document: Document) -> "DocumentTransition":
        return cls(TransitionKind.UPDATE_PRICE, document, document.owner_id, price=document.price)

    @classmethod
    def purchase(cls, document: Document, price: int) -> "DocumentTransition":
        # the resulting version is already owned by the purchaser
        return cls(TransitionKind.PURCHASE, document, document.owner_id, price=price)

    @property
    def is_signed(self) -> bool:
        return self.signature is not None and self.signature_public_key_id is not None

    def to_wire(self, include_signature: bool = True) -> Dict[str, Any]:
        doc = self.document
        wire: Dict[str, Any] = {
            "version": WIRE_VERSION,
            "kind": self.kind.value,
            "identityId": self.identity_id,
            "dataContractId": doc.data_contract_id,
            "documentType": doc.document_type_name,
            "documentId": doc.id,
            "ownerId": doc.owner_id,
            "revision": doc.revision,
            "properties": [[name, value] for name, value in doc.properties.items()],
            "createdAt": doc.created_at,
            "updatedAt": doc.updated_at,
            "transferredAt": doc.transferred_at,
            "entropy": self.entropy,
            "price": self.price,
            "signaturePublicKeyId": self.signature_public_key_id,
        }
        if include_signature:
            wire["signature"] = self.signature
        return wire

    def signable_bytes(self) -> bytes:
        return canonical_json_bytes(self.to_wire(include_signature=False))

    @property
    def transition_id(self) -> str:
        return sha256_hex(self.signable_bytes())

    def serialize(self) -> bytes:
        return canonical_json_bytes(self.to_wire())

    @classmethod
    def deserialize(cls, raw: bytes, document_type: Optional[DocumentType] = None) -> "DocumentTransition":
        """Parse wire bytes.

        With ``document_type`` the property values are restored to their
        Python types (byte arrays to ``bytes``, numeric strings to
        ``Decimal``); without it they stay in JSON form.
        """
        try:
            wire = json.loads(raw.decode("utf-8") if isinstance(raw, (bytes, bytearray)) else raw)
        except (UnicodeDecodeError, ValueError) as ex:
            raise ValidationError("$transition", f"not valid JSON: {ex}") from ex
        if not isinstance(wire, dict):
            raise ValidationError("$transition", "must be a JSON object")
        if wire.get("version") != WIRE_VERSION:
            raise ValidationError("version", "unsupported transition wire version", wire.get("version"))

        try:
            kind = TransitionKind(wire["kind"])
            pairs = wire["properties"]
            if not isinstance(pairs, list) or not all(isinstance(p, list) and len(p) == 2 for p in pairs):
                raise ValidationError("properties", "must be a list of [name, value] pairs")
            properties = {str(name): value for name, value in pairs}
            if document_type is not None:
                properties = _restore_types(document_type, properties)
            document = Document(
                id=Identifier.coerce(wire["documentId"]),
                owner_id=Identifier.coerce(wire["ownerId"]),
                data_contract_id=Identifier.coerce(wire["dataContractId"]),
                document_type_name=str(wire["documentType"]),
                properties=properties,
                revision=int(wire["revision"]),
                created_at=wire.get("createdAt"),
                updated_at=wire.get("updatedAt"),
                transferred_at=wire.get("transferredAt"),
            )
            return cls(
                kind=kind,
                document=document,
                identity_id=Identifier.coerce(wire["identityId"]),
                entropy=_bytes_or_none(wire.get("entropy")),
                price=wire.get("price"),
                signature_public_key_id=wire.get("signaturePublicKeyId"),
                signature=_bytes_or_none(wire.get("signature")),
            )
        except KeyError as ex:
            raise ValidationError(str(ex.args[0]), "required field is missing") from ex
        except (TypeError, ValueError) as ex:
            raise ValidationError("$transition", f"malformed transition: {ex}") from ex


def _bytes_or_none(value: Any) -> Optional[bytes]:
    if value is None:
        return None
    return bytes(value)


def _restore_types(document_type: DocumentType, properties: Dict[str, Any]) -> Dict[str, Any]:
    defs = document_type.field_map
    out: Dict[str, Any] = {}
    for name, value in properties.items():
        fdef = defs.get(name)
        if fdef is not None and fdef.kind == FieldKind.BYTE_ARRAY and isinstance(value, list):
            try:
                value = bytes(value)
            except (TypeError, ValueError):
                pass  # left for schema validation to report
        elif fdef is not None and fdef.kind == FieldKind.NUMBER and isinstance(value, str):
            try:
                value = Decimal(value)
            except InvalidOperation:
                pass
        out[name] = value
    return out


def sign_with_key(
    transition: DocumentTransition,
    public_key: IdentityPublicKey,
    signer: Any,
) -> DocumentTransition:
    """Bind ``public_key.id`` and sign as ``transition.identity_id``."""
    unsigned = dataclasses.replace(transition, signature_public_key_id=public_key.id, signature=None)
    signature = signer.sign(transition.identity_id, public_key, unsigned.signable_bytes())
    return dataclasses.replace(unsigned, signature=signature)


def sign_transition(
    transition: DocumentTransition,
    identity: Identity,
    public_key: IdentityPublicKey,
    signer: Any,
) -> DocumentTransition:
    """Bind the signing key id and signature to a transition."""
    if identity.id != transition.identity_id:
        raise ValidationError(
            "identityId",
            f"transition must be signed by {transition.identity_id}, not {identity.id}",
        )
    if identity.get_public_key_by_id(public_key.id) != public_key:
        raise ValidationError("signaturePublicKeyId", f"key {public_key.id} does not belong to identity {identity.id}")
    return sign_with_key(transition, public_key, signer)


def describe(transition: DocumentTransition) -> Dict[str, Any]:
    """Log-safe summary; entropy and signature are omitted."""
    return {
        "transition_id": transition.transition_id,
        "kind": transition.kind.value,
        "document_id": str(transition.document.id),
        "revision": transition.document.revision,
    }


__all__: List[str] = [
    "DocumentTransition",
    "TransitionKind",
    "WIRE_VERSION",
    "describe",
    "sign_transition",
    "sign_with_key",
]
