"""Schema registry: declarative document-type schemas compiled to typed fields.

A data contract schema is a tree keyed by document-type name. Each type is
checked against ``schemas/document-type.schema.json`` first (shape only),
then compiled into ``FieldDefinition`` objects ordered by ``position``. The
position order is the canonical serialization order of a document's
properties.

Parse problems are ``SchemaError`` and fatal at startup. Property problems
found while building a document are ``ValidationError`` naming the field.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum, IntEnum
from functools import lru_cache
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional, Tuple

from jsonschema import Draft202012Validator

from docstate.canonical import to_json_types
from docstate.errors import NotFoundError, SchemaError, ValidationError
from docstate.identifier import Identifier
from docstate.runtime.observability import Layer, get_logger

if TYPE_CHECKING:
    from docstate.document import Document

SCHEMAS_DIR = Path(__file__).resolve().parent / "schemas"

PRICE_FIELD = "$price"

# System fields that may appear in `required`, mapped to Document attributes.
SYSTEM_FIELDS: Dict[str, str] = {
    "$createdAt": "created_at",
    "$updatedAt": "updated_at",
    "$transferredAt": "transferred_at",
    "$createdAtBlockHeight": "created_at_block_height",
    "$updatedAtBlockHeight": "updated_at_block_height",
    "$transferredAtBlockHeight": "transferred_at_block_height",
    "$createdAtCoreBlockHeight": "created_at_core_block_height",
    "$updatedAtCoreBlockHeight": "updated_at_core_block_height",
    "$transferredAtCoreBlockHeight": "transferred_at_core_block_height",
}

_log = get_logger("schema", Layer.SCHEMA)


class FieldKind(Enum):
    STRING = "string"
    NUMBER = "number"
    INTEGER = "integer"
    BOOLEAN = "boolean"
    BYTE_ARRAY = "byte_array"
    ENUM = "enum"


class TransferMode(IntEnum):
    NEVER = 0
    ALWAYS = 1


class TradeMode(IntEnum):
    NONE = 0
    DIRECT_PURCHASE = 1


@dataclass(frozen=True)
class FieldDefinition:
    name: str
    position: int
    kind: FieldKind
    description: str = ""
    max_length: Optional[int] = None
    min_length: Optional[int] = None
    pattern: Optional[str] = None
    min_items: Optional[int] = None
    max_items: Optional[int] = None
    minimum: Optional[Any] = None
    maximum: Optional[Any] = None
    enum_values: Tuple[str, ...] = ()

    def validate(self, value: Any) -> Any:
        """Check one value; returns the normalized value."""
        if self.kind in (FieldKind.STRING, FieldKind.ENUM):
            return self._validate_string(value)
        if self.kind == FieldKind.BYTE_ARRAY:
            return self._validate_bytes(value)
        if self.kind == FieldKind.BOOLEAN:
            if not isinstance(value, bool):
                raise ValidationError(self.name, "must be a boolean", value)
            return value
        return self._validate_number(value)

    def _validate_string(self, value: Any) -> str:
        if not isinstance(value, str):
            raise ValidationError(self.name, "must be a string", value)
        if self.kind == FieldKind.ENUM and value not in self.enum_values:
            raise ValidationError(
                self.name, f"must be one of {list(self.enum_values)}", value
            )
        if self.max_length is not None and len(value) > self.max_length:
            raise ValidationError(
                self.name, f"length {len(value)} exceeds maxLength {self.max_length}", value
            )
        if self.min_length is not None and len(value) < self.min_length:
            raise ValidationError(
                self.name, f"length {len(value)} is below minLength {self.min_length}", value
            )
        if self.pattern is not None and not re.search(self.pattern, value):
            raise ValidationError(self.name, f"does not match pattern {self.pattern!r}", value)
        return value

    def _validate_bytes(self, value: Any) -> bytes:
        if isinstance(value, Identifier):
            raw = value.to_bytes()
        elif isinstance(value, (bytes, bytearray)):
            raw = bytes(value)
        elif isinstance(value, list):
            if not all(isinstance(b, int) and not isinstance(b, bool) and 0 <= b <= 255 for b in value):
                raise ValidationError(self.name, "byte array items must be integers 0..255", value)
            raw = bytes(value)
        else:
            raise ValidationError(self.name, "must be a byte array", value)
        lo = self.min_items or 0
        hi = self.max_items
        if len(raw) < lo or (hi is not None and len(raw) > hi):
            bound = f"exactly {lo}" if lo == hi else f"between {lo} and {hi}"
            raise ValidationError(self.name, f"byte array length {len(raw)} must be {bound}", value)
        return raw

    def _validate_number(self, value: Any) -> Any:
        if isinstance(value, bool) or isinstance(value, float):
            raise ValidationError(
                self.name, "must be an integer or Decimal (floats and booleans are not allowed)", value
            )
        if self.kind == FieldKind.INTEGER:
            if not isinstance(value, int):
                raise ValidationError(self.name, "must be an integer", value)
        elif not isinstance(value, (int, Decimal)):
            raise ValidationError(self.name, "must be a number", value)
        if self.minimum is not None and value < self.minimum:
            raise ValidationError(self.name, f"must be >= {self.minimum}", value)
        if self.maximum is not None and value > self.maximum:
            raise ValidationError(self.name, f"must be <= {self.maximum}", value)
        return value


@dataclass(frozen=True)
class DocumentType:
    name: str
    data_contract_id: Identifier
    fields: Tuple[FieldDefinition, ...]
    required: Tuple[str, ...] = ()
    additional_properties: bool = False
    documents_mutable: bool = True
    transferable: TransferMode = TransferMode.NEVER
    trade_mode: TradeMode = TradeMode.NONE

    @property
    def field_map(self) -> Dict[str, FieldDefinition]:
        return {f.name: f for f in self.fields}

    @property
    def required_properties(self) -> Tuple[str, ...]:
        return tuple(r for r in self.required if not r.startswith("$"))

    @property
    def required_system_fields(self) -> Tuple[str, ...]:
        return tuple(r for r in self.required if r.startswith("$"))

    @property
    def is_transferable(self) -> bool:
        return self.transferable == TransferMode.ALWAYS

    @property
    def supports_direct_purchase(self) -> bool:
        return self.is_transferable and self.trade_mode == TradeMode.DIRECT_PURCHASE

    def validate_properties(
        self,
        properties: Mapping[str, Any],
        *,
        allow_system: Tuple[str, ...] = (PRICE_FIELD,),
    ) -> Dict[str, Any]:
        """Validate user properties; returns them normalized and position-ordered.

        ``$price`` is the only system field carried in the property map.
        """
        if not isinstance(properties, Mapping):
            raise ValidationError("$properties", "must be a mapping", properties)

        defs = self.field_map
        normalized: Dict[str, Any] = {}
        for name, value in properties.items():
            if name.startswith("$"):
                if name not in allow_system:
                    raise ValidationError(name, "system field cannot be set as a property", value)
                if name == PRICE_FIELD:
                    normalized[name] = validate_price(value)
                continue
            fdef = defs.get(name)
            if fdef is None:
                if not self.additional_properties:
                    raise ValidationError(name, f"unknown field for document type '{self.name}'", value)
                try:
                    normalized[name] = to_json_types(value, name)
                except ValueError as ex:
                    raise ValidationError(name, str(ex), value) from ex
                continue
            if value is None:
                if name in self.required:
                    raise ValidationError(name, "required field is missing", value)
                continue
            normalized[name] = fdef.validate(value)

        for name in self.required_properties:
            if name not in normalized:
                raise ValidationError(name, "required field is missing")

        return canonical_properties(self, normalized)

    def validate_document(self, document: "Document") -> Dict[str, Any]:
        """Validate a built document, including required audit fields."""
        props = self.validate_properties(document.properties)
        for name in self.required_system_fields:
            if getattr(document, SYSTEM_FIELDS[name]) is None:
                raise ValidationError(name, "required field is missing")
        return props


def validate_price(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(PRICE_FIELD, "price must be an integer number of credits", value)
    if value < 0:
        raise ValidationError(PRICE_FIELD, "price must not be negative", value)
    return value


def canonical_properties(document_type: DocumentType, properties: Mapping[str, Any]) -> Dict[str, Any]:
    """Order properties by field position; unknown then system fields follow sorted by name."""
    positions = {f.name: f.position for f in document_type.fields}

    def sort_key(name: str) -> Tuple[int, int, str]:
        if name in positions:
            return (0, positions[name], name)
        return (2 if name.startswith("$") else 1, 0, name)

    return {name: properties[name] for name in sorted(properties, key=sort_key)}


@lru_cache(maxsize=1)
def _document_type_validator() -> Draft202012Validator:

    schema = json.loads((SCHEMAS_DIR / "document-type.schema.json").read_text(encoding="utf-8"))
    return Draft202012Validator(schema)


def _compile_field(type_name: str, name: str, raw: Mapping[str, Any]) -> FieldDefinition:
    json_type = raw["type"]
    common = dict(name=name, position=int(raw["position"]), description=str(raw.get("description") or ""))

    if json_type == "string":
        enum_values = tuple(raw.get("enum") or ())
        if raw.get("pattern") is not None:
            try:
                re.compile(raw["pattern"])
            except re.error as ex:
                raise SchemaError(type_name, f"field '{name}' has an invalid pattern: {ex}") from ex
        return FieldDefinition(
            kind=FieldKind.ENUM if enum_values else FieldKind.STRING,
            max_length=raw.get("maxLength"),
            min_length=raw.get("minLength"),
            pattern=raw.get("pattern"),
            enum_values=enum_values,
            **common,
        )
    if json_type == "array":
        if not raw.get("byteArray"):
            raise SchemaError(type_name, f"field '{name}': only byte arrays are supported")
        if raw.get("maxItems") is None:
            raise SchemaError(type_name, f"field '{name}': byte arrays must declare maxItems")
        min_items = int(raw.get("minItems") or 0)
        max_items = int(raw["maxItems"])
        if min_items > max_items:
            raise SchemaError(type_name, f"field '{name}': minItems {min_items} exceeds maxItems {max_items}")
        return FieldDefinition(kind=FieldKind.BYTE_ARRAY, min_items=min_items, max_items=max_items, **common)
    if raw.get("enum") is not None:
        raise SchemaError(type_name, f"field '{name}': enum is only supported on strings")
    if json_type == "boolean":
        return FieldDefinition(kind=FieldKind.BOOLEAN, **common)
    return FieldDefinition(
        kind=FieldKind.INTEGER if json_type == "integer" else FieldKind.NUMBER,
        minimum=raw.get("minimum"),
        maximum=raw.get("maximum"),
        **common,
    )


def parse_document_type(
    data_contract_id: Identifier,
    type_name: str,
    schema: Mapping[str, Any],
) -> DocumentType:
    """Compile one document-type schema."""
    if not isinstance(schema, Mapping):
        raise SchemaError(type_name, "document type schema must be an object")

    errs = sorted(_document_type_validator().iter_errors(dict(schema)), key=lambda e: e.json_path)
    if errs:
        raise SchemaError(type_name, f"{errs[0].json_path}: {errs[0].message}")

    fields: List[FieldDefinition] = []
    seen_positions: Dict[int, str] = {}
    for name, raw in schema["properties"].items():
        fdef = _compile_field(type_name, name, raw)
        if fdef.position in seen_positions:
            raise SchemaError(
                type_name,
                f"position {fdef.position} used by both '{seen_positions[fdef.position]}' and '{name}'",
            )
        seen_positions[fdef.position] = name
        fields.append(fdef)
    fields.sort(key=lambda f: f.position)

    required = tuple(schema.get("required") or ())
    declared = {f.name for f in fields}
    for name in required:
        if name.startswith("$"):
            if name not in SYSTEM_FIELDS:
                raise SchemaError(type_name, f"unknown system field in required: {name}")
        elif name not in declared:
            raise SchemaError(type_name, f"required field '{name}' is not declared in properties")

    return DocumentType(
        name=type_name,
        data_contract_id=data_contract_id,
        fields=tuple(fields),
        required=required,
        additional_properties=bool(schema.get("additionalProperties", False)),
        documents_mutable=bool(schema.get("documentsMutable", True)),
        transferable=TransferMode(int(schema.get("transferable", 0))),
        trade_mode=TradeMode(int(schema.get("tradeMode", 0))),
    )


def parse_document_types(
    data_contract_id: Identifier,
    schema: Mapping[str, Any],
) -> Dict[str, DocumentType]:
    """Compile every document type in a contract schema tree."""
    if not isinstance(schema, Mapping) or not schema:
        raise SchemaError("<contract>", "contract schema must be a non-empty object keyed by type name")
    types = {name: parse_document_type(data_contract_id, name, raw) for name, raw in schema.items()}
    _log.debug(
        "compiled document types",
        data_contract_id=str(data_contract_id),
        document_types=sorted(types),
    )
    return types


@dataclass(frozen=True)
class DataContract:
    """An immutable, identified collection of document types."""
    id: Identifier
    owner_id: Identifier
    document_types: Mapping[str, DocumentType]
    schema: Mapping[str, Any] = field(default_factory=dict, repr=False)
    version: int = 1

    @classmethod
    def from_schema(
        cls,
        contract_id: Identifier,
        owner_id: Identifier,
        schema: Mapping[str, Any],
        version: int = 1,
    ) -> "DataContract":
        return cls(
            id=contract_id,
            owner_id=owner_id,
            document_types=parse_document_types(contract_id, schema),
            schema=schema,
            version=version,
        )

    def document_type(self, name: str) -> DocumentType:
        try:
            return self.document_types[name]
        except KeyError:
            raise NotFoundError("document type", f"{self.id}/{name}") from None


def load_contract_schema(path: Path) -> Dict[str, Any]:
    """Read a contract schema tree from a JSON file."""

    try:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, ValueError) as ex:
        raise SchemaError("<contract>", f"cannot read {path}: {ex}") from ex
    if not isinstance(data, dict):
        raise SchemaError("<contract>", f"{path} must contain a JSON object")
    return data


def example_contract_schema() -> Dict[str, Any]:
    """The bundled Project / Tasks / Claim contract."""
    return load_contract_schema(SCHEMAS_DIR / "claims.contract.json")
