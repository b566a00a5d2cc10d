"""Documents and the builder that produces the next version of one.

A ``Document`` is a value: every transition produces a new instance via the
builder and the previous one is left untouched. Timestamps are integer
seconds since the Unix epoch. Block heights are only ever set from a
platform confirmation, never by the builder.
"""

from __future__ import annotations

import base64
import dataclasses
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Mapping, Optional, Tuple, Union

from docstate.document_id import (
    DefaultEntropyGenerator,
    EntropyGenerator,
    check_entropy,
    generate_document_id,
)
from docstate.errors import TransitionNotAllowed, ValidationError
from docstate.identifier import Identifier
from docstate.runtime.observability import Layer, get_logger
from docstate.schema import PRICE_FIELD, DocumentType, FieldKind, validate_price

INITIAL_REVISION = 1

IdLike = Union[Identifier, bytes, str]

_log = get_logger("builder", Layer.BUILDER)

# Wire names of the metadata carried next to user properties.
_META_KEYS: Dict[str, str] = {
    "id": "$id",
    "owner_id": "$ownerId",
    "data_contract_id": "$dataContractId",
    "document_type_name": "$type",
    "revision": "$revision",
    "created_at": "$createdAt",
    "updated_at": "$updatedAt",
    "transferred_at": "$transferredAt",
    "created_at_block_height": "$createdAtBlockHeight",
    "updated_at_block_height": "$updatedAtBlockHeight",
    "transferred_at_block_height": "$transferredAtBlockHeight",
    "created_at_core_block_height": "$createdAtCoreBlockHeight",
    "updated_at_core_block_height": "$updatedAtCoreBlockHeight",
    "transferred_at_core_block_height": "$transferredAtCoreBlockHeight",
}
_ID_ATTRS = ("id", "owner_id", "data_contract_id")


@dataclass(frozen=True)
class Document:
    id: Identifier
    owner_id: Identifier
    data_contract_id: Identifier
    document_type_name: str
    properties: Mapping[str, Any] = field(default_factory=dict)
    revision: int = INITIAL_REVISION
    created_at: Optional[int] = None
    updated_at: Optional[int] = None
    transferred_at: Optional[int] = None
    created_at_block_height: Optional[int] = None
    updated_at_block_height: Optional[int] = None
    transferred_at_block_height: Optional[int] = None
    created_at_core_block_height: Optional[int] = None
    updated_at_core_block_height: Optional[int] = None
    transferred_at_core_block_height: Optional[int] = None

    @property
    def price(self) -> Optional[int]:
        return self.properties.get(PRICE_FIELD)

    @property
    def user_properties(self) -> Dict[str, Any]:
        return {k: v for k, v in self.properties.items() if not k.startswith("$")}

    def replace(self, **changes: Any) -> "Document":
        return dataclasses.replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        """Flat platform-style form: ids base-58, byte arrays base-64."""
        out: Dict[str, Any] = {}
        for attr, key in _META_KEYS.items():
            value = getattr(self, attr)
            if value is None:
                continue
            out[key] = str(value) if attr in _ID_ATTRS else value
        for name, value in self.properties.items():
            if isinstance(value, (bytes, bytearray)):
                value = base64.b64encode(bytes(value)).decode("ascii")
            out[name] = value
        return out

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], document_type: Optional[DocumentType] = None) -> "Document":
        """Inverse of ``to_dict``; byte-array fields are decoded when the type is known."""
        kwargs: Dict[str, Any] = {}
        keys = {v: k for k, v in _META_KEYS.items()}
        properties: Dict[str, Any] = {}
        for key, value in data.items():
            attr = keys.get(key)
            if attr is None:
                properties[key] = value
            elif attr in _ID_ATTRS:
                kwargs[attr] = Identifier.coerce(value)
            else:
                kwargs[attr] = value
        for attr in ("id", "owner_id", "data_contract_id", "document_type_name"):
            if attr not in kwargs:
                raise ValidationError(_META_KEYS[attr], "required field is missing")
        if document_type is not None:
            for fdef in document_type.fields:
                raw = properties.get(fdef.name)
                if fdef.kind == FieldKind.BYTE_ARRAY and isinstance(raw, str):
                    try:
                        properties[fdef.name] = base64.b64decode(raw, validate=True)
                    except ValueError as ex:
                        raise ValidationError(fdef.name, "invalid base64 byte array", raw) from ex
        return cls(properties=properties, **kwargs)


class DocumentBuilder:
    """
    Builds new documents and their next versions.

    All checks happen locally before anything is signed or sent. The builder
    has no knowledge of the network; it only needs an entropy source and a
    clock.
    """

    def __init__(
        self,
        entropy_generator: Optional[EntropyGenerator] = None,
        clock: Optional[Callable[[], float]] = None,
        initial_revision: int = INITIAL_REVISION,
    ):
        self.entropy_generator = entropy_generator or DefaultEntropyGenerator()
        self.clock = clock or time.time
        self.initial_revision = initial_revision

    def now(self) -> int:
        return int(self.clock())

    def build(
        self,
        document_type: DocumentType,
        owner_id: IdLike,
        properties: Mapping[str, Any],
        now: Optional[int] = None,
        entropy: Optional[bytes] = None,
    ) -> Tuple[Document, bytes]:
        """Validate properties and assemble a brand new document.

        Returns the document together with the entropy used for its id; the
        create transition must carry that entropy.
        """
        if PRICE_FIELD in properties:
            raise ValidationError(PRICE_FIELD, "a price can only be set on an existing document")
        props = document_type.validate_properties(properties)
        owner = Identifier.coerce(owner_id)
        entropy = check_entropy(entropy) if entropy is not None else self.entropy_generator.generate()
        ts = self.now() if now is None else int(now)

        document = Document(
            id=generate_document_id(document_type.data_contract_id, owner, document_type.name, entropy),
            owner_id=owner,
            data_contract_id=document_type.data_contract_id,
            document_type_name=document_type.name,
            properties=props,
            revision=self.initial_revision,
            created_at=ts,
            updated_at=ts,
        )
        document_type.validate_document(document)
        _log.debug(
            "built document",
            document_id=str(document.id),
            document_type=document_type.name,
            revision=document.revision,
        )
        return document, entropy

    def build_price_update(
        self,
        document: Document,
        document_type: DocumentType,
        price: int,
        now: Optional[int] = None,
    ) -> Document:
        """Next version of ``document`` with ``$price`` set."""
        _check_type(document, document_type)
        if not document_type.documents_mutable:
            raise TransitionNotAllowed("$type", f"documents of type '{document_type.name}' are immutable")
        if not document_type.supports_direct_purchase:
            raise TransitionNotAllowed(
                "$type", f"document type '{document_type.name}' does not allow direct purchase"
            )
        try:
            price = validate_price(price)
        except ValidationError as ex:
            raise TransitionNotAllowed(ex.field, ex.message, ex.value) from ex

        props = dict(document.properties)
        props[PRICE_FIELD] = price
        return document.replace(
            properties=document_type.validate_properties(props),
            revision=document.revision + 1,
            updated_at=self._next_timestamp(document, now),
        )

    def build_purchase(
        self,
        document: Document,
        document_type: DocumentType,
        purchaser_id: IdLike,
        now: Optional[int] = None,
    ) -> Document:
        """Next version of ``document`` owned by ``purchaser_id``, price cleared."""
        _check_type(document, document_type)
        purchaser = Identifier.coerce(purchaser_id)
        if not document_type.is_transferable:
            raise TransitionNotAllowed(
                "$type", f"documents of type '{document_type.name}' are not transferable"
            )
        if document.price is None:
            raise TransitionNotAllowed(PRICE_FIELD, "document has no price and cannot be purchased")
        if purchaser == document.owner_id:
            raise TransitionNotAllowed("$ownerId", "purchaser already owns the document", str(purchaser))

        ts = self._next_timestamp(document, now)
        props = {k: v for k, v in document.properties.items() if k != PRICE_FIELD}
        return document.replace(
            owner_id=purchaser,
            properties=props,
            revision=document.revision + 1,
            updated_at=ts,
            transferred_at=ts,
        )

    def _next_timestamp(self, document: Document, now: Optional[int]) -> int:
        ts = self.now() if now is None else int(now)
        # never move updated_at backwards relative to the stored version
        return max(ts, document.updated_at or 0)


def _check_type(document: Document, document_type: DocumentType) -> None:
    if (
        document.document_type_name != document_type.name
        or document.data_contract_id != document_type.data_contract_id
    ):
        raise ValidationError(
            "$type",
            f"document is a '{document.document_type_name}', not a '{document_type.name}'",
        )
