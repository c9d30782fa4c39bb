"""
Core type definitions for the model registry.

This module defines the immutable descriptors built from a declarative
model structure:
- FieldKind: Storage kind of a field
- FieldOption: One enumerated choice of an option field
- ForeignKey: Directed edge from a local field to a related model
- FieldDef: Individual field of a model
- Relationship: Materialized parent or child edge, addressed by alias
- Model: A storage collection/table with derived field lists

Invariants:
    - Descriptors are frozen; mappings are exposed read-only
    - The primary key is always "_id"; "id" is its public alias
    - Relationship maps are complete before a Model leaves the registry

How to change safely:
    - Add new FieldKind values with their aliases in _KIND_ALIASES
    - Keep to_dict output sorted and JSON-safe (it feeds the fingerprint)

Example:
    >>> title = FieldDef(name="title", kind=FieldKind.STRING, required=True)
    >>> title.to_dict()["kind"]
    'string'
"""

from __future__ import annotations

import copy
from dataclasses import dataclass
from dataclasses import field as dataclass_field
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping

PRIMARY_KEY = "_id"
PUBLIC_ID = "id"
COLLECTION_KEY = "_collection"
MODEL_KEY = "_model"
IDENTITY_KEYS = (PUBLIC_ID, PRIMARY_KEY, COLLECTION_KEY, MODEL_KEY)


class FieldKind(Enum):
    """Supported field kinds.

    These map to storage representations and input coercion rules.
    """

    ID = "id"
    STRING = "string"
    NUMBER = "number"  # Integer
    FLOAT = "float"
    DATE = "date"  # Naive UTC datetime
    BOOL = "bool"
    OBJECT = "object"  # Arbitrary JSON object
    ARRAY = "array"
    FILE = "file"  # URL or storage path

    @classmethod
    def from_str(cls, value: str) -> FieldKind:
        """Convert a declared type name to FieldKind.

        Args:
            value: Declared type, case-insensitive, aliases accepted

        Returns:
            Corresponding FieldKind enum value

        Raises:
            ValueError: If value is not a known type
        """
        normalized = str(value).strip().lower()
        normalized = _KIND_ALIASES.get(normalized, normalized)
        for kind in cls:
            if kind.value == normalized:
                return kind
        valid = sorted(set(_KIND_ALIASES) | {k.value for k in cls})
        raise ValueError(f"Invalid field type '{value}'. Valid types: {valid}")

    def default_value(self) -> Any:
        """Implicit default when a field declares none."""
        if self == FieldKind.BOOL:
            return False
        if self == FieldKind.FLOAT:
            return 0.0
        if self == FieldKind.NUMBER:
            return 0
        if self == FieldKind.ARRAY:
            return []
        return None


_KIND_ALIASES = {
    "time": "date",
    "datetime": "date",
    "timestamp": "date",
    "boolean": "bool",
    "int": "number",
    "integer": "number",
    "text": "string",
    "str": "string",
    "any": "object",
    "json": "object",
    "list": "array",
    "url": "file",
}


@dataclass(frozen=True)
class FieldOption:
    """An enumerated choice of an option field."""

    value: Any
    label: str

    def to_dict(self) -> dict[str, Any]:
        return {"value": self.value, "label": self.label}


@dataclass(frozen=True)
class ForeignKey:
    """Directed edge declared as ``foreignKey: "collection.key"``.

    Attributes:
        related_model: Name of the referenced model
        related_collection: Collection as written in the declaration
        related_key: Referenced field on the related model ("_id" by default)
        local_key: Field on the owning model that stores the reference
    """

    related_model: str
    related_collection: str
    related_key: str
    local_key: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "related_model": self.related_model,
            "related_collection": self.related_collection,
            "related_key": self.related_key,
            "local_key": self.local_key,
        }


@dataclass(frozen=True)
class FieldDef:
    """Definition of a single field of a model.

    Attributes:
        name: Field name as stored
        kind: Storage kind
        required: Whether the field must be provided on create
        protected: Whether the field is redacted from every output
        primary_key: Whether the field was declared as the primary key
        default: Default used on create when the input omits the field
        foreign_key: Optional edge to a related model
        options: Enumerated choices (empty when unrestricted)
    """

    name: str
    kind: FieldKind
    required: bool = False
    protected: bool = False
    primary_key: bool = False
    default: Any = None
    foreign_key: ForeignKey | None = None
    options: tuple[FieldOption, ...] = ()

    def __post_init__(self) -> None:
        """Validate field definition."""
        if not self.name:
            raise ValueError("Field name cannot be empty")

    @property
    def is_identifier(self) -> bool:
        """Whether values of this field are native identifiers."""
        return self.kind == FieldKind.ID or self.foreign_key is not None

    def default_for_input(self) -> Any:
        """Fresh copy of the default so callers can mutate it safely."""
        value = self.default if self.default is not None else self.kind.default_value()
        return copy.deepcopy(value)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary representation."""
        result: dict[str, Any] = {
            "name": self.name,
            "kind": self.kind.value,
        }
        if self.required:
            result["required"] = True
        if self.protected:
            result["protected"] = True
        if self.primary_key:
            result["primary_key"] = True
        if self.default is not None:
            result["default"] = self.default
        if self.foreign_key is not None:
            result["foreign_key"] = self.foreign_key.to_dict()
        if self.options:
            result["options"] = [o.to_dict() for o in self.options]
        return result


@dataclass(frozen=True)
class Relationship:
    """A materialized edge reachable from a model under an alias.

    Traversal always runs a subquery on ``model`` and collects the values
    of ``foreign_key`` from the matches; the result becomes an ``in``
    predicate on ``local_key`` of the owning model.

    Attributes:
        alias: Synthetic filter key on the owning model
        model: Related model name
        local_key: Field on the owning model
        foreign_key: Field on the related model
        many: True for the child side (one parent, many children)
    """

    alias: str
    model: str
    local_key: str
    foreign_key: str
    many: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "alias": self.alias,
            "model": self.model,
            "local_key": self.local_key,
            "foreign_key": self.foreign_key,
            "many": self.many,
        }


def _frozen_map(values: Mapping[str, Any] | None = None) -> Mapping[str, Any]:
    return MappingProxyType(dict(values or {}))


@dataclass(frozen=True)
class Model:
    """Immutable descriptor of one storage collection/table.

    Attributes:
        name: Model name (PascalCase singular)
        collection: Storage collection/table name (snake_case plural)
        fields: Field name -> FieldDef, in declaration order
        primary_key: Stored primary key ("_id")
        primary_name: Human-readable label field
        parent_fields: Alias -> Relationship towards parents
        children_fields: Alias -> Relationship towards children
        tenant_scoped: Whether tenant scoping applies to this model
    """

    name: str
    collection: str
    fields: Mapping[str, FieldDef] = dataclass_field(default_factory=_frozen_map)
    primary_key: str = PRIMARY_KEY
    primary_name: str | None = None
    parent_fields: Mapping[str, Relationship] = dataclass_field(default_factory=_frozen_map)
    children_fields: Mapping[str, Relationship] = dataclass_field(default_factory=_frozen_map)
    tenant_scoped: bool = False

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("Model name cannot be empty")
        if not self.collection:
            raise ValueError(f"Collection name cannot be empty for model '{self.name}'")
        # Normalize to read-only views even when callers pass plain dicts
        for attr in ("fields", "parent_fields", "children_fields"):
            value = getattr(self, attr)
            if not isinstance(value, MappingProxyType):
                object.__setattr__(self, attr, _frozen_map(value))

    def _names(self, predicate) -> tuple[str, ...]:
        return tuple(name for name, f in self.fields.items() if predicate(f))

    @property
    def valid_fields(self) -> tuple[str, ...]:
        """Sorted field names, always including "id"."""
        names = set(self.fields) - {PRIMARY_KEY}
        names.add(PUBLIC_ID)
        return tuple(sorted(names))

    @property
    def required_fields(self) -> tuple[str, ...]:
        return self._names(lambda f: f.required)

    @property
    def protected_fields(self) -> tuple[str, ...]:
        return self._names(lambda f: f.protected)

    @property
    def date_fields(self) -> tuple[str, ...]:
        return self._names(lambda f: f.kind == FieldKind.DATE)

    @property
    def file_fields(self) -> tuple[str, ...]:
        return self._names(lambda f: f.kind == FieldKind.FILE)

    @property
    def bool_fields(self) -> tuple[str, ...]:
        return self._names(lambda f: f.kind == FieldKind.BOOL)

    @property
    def number_fields(self) -> tuple[str, ...]:
        return self._names(lambda f: f.kind == FieldKind.NUMBER)

    @property
    def float_fields(self) -> tuple[str, ...]:
        return self._names(lambda f: f.kind == FieldKind.FLOAT)

    @property
    def option_fields(self) -> tuple[str, ...]:
        return self._names(lambda f: bool(f.options))

    @property
    def parent_keys(self) -> tuple[str, ...]:
        """Fields carrying a foreign key."""
        return self._names(lambda f: f.foreign_key is not None)

    def get_field(self, name: str) -> FieldDef | None:
        if name == PUBLIC_ID:
            name = PRIMARY_KEY
        return self.fields.get(name)

    def is_identifier_field(self, name: str) -> bool:
        """Whether filter/input values for ``name`` are native identifiers."""
        if name in (PUBLIC_ID, PRIMARY_KEY):
            return True
        field_def = self.fields.get(name)
        return field_def is not None and field_def.is_identifier

    def relationship(self, alias: str) -> Relationship | None:
        """Look up a parent or child relationship by alias."""
        if alias in self.fields:
            return None
        return self.parent_fields.get(alias) or self.children_fields.get(alias)

    def storage_columns(self) -> tuple[str, ...]:
        """Stored columns: the primary key followed by declared fields."""
        columns = [PRIMARY_KEY]
        columns.extend(name for name in self.fields if name not in (PRIMARY_KEY, PUBLIC_ID))
        return tuple(columns)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "name": self.name,
            "collection": self.collection,
            "primary_key": self.primary_key,
            "primary_name": self.primary_name,
            "tenant_scoped": self.tenant_scoped,
            "fields": [f.to_dict() for f in self.fields.values()],
            "parent_fields": {k: r.to_dict() for k, r in sorted(self.parent_fields.items())},
            "children_fields": {
                k: r.to_dict() for k, r in sorted(self.children_fields.items())
            },
        }
