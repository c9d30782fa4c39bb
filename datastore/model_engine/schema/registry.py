"""
Model Registry.

The ModelRegistry is the central authority for model descriptors. It
provides:
- Building models from a declarative structure (build_models)
- Lookup by model name or collection name
- Fingerprinting for consistency checks
- Freeze mechanism to prevent runtime modifications

Structure format:
    {
        "clients": {
            "name": {"type": "string", "required": true},
            "password": {"type": "string", "protected": true}
        },
        "invoices": {
            "clientId": {"type": "id", "foreignKey": "clients.id"},
            "status": {"type": "string", "options": ["draft", "paid"]}
        }
    }

Invariants:
    - Registry is mutable while building, frozen before serving
    - Relationship maps are fully wired before freeze; never lazily
    - A foreign key to an unknown collection is logged, never fatal
    - Fingerprint changes when any model changes

How to change safely:
    - Keep build_models a pure function of its input
    - Never modify registered models after freeze; rebuild instead
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
from dataclasses import replace
from typing import Any, Dict, Iterator, List, Mapping, Optional

from ..errors import ConfigurationError, DuplicateModelError, RegistryFrozenError
from .naming import (
    child_relative_name,
    collection_name,
    model_name,
    parent_relative_name,
)
from .types import (
    PRIMARY_KEY,
    PUBLIC_ID,
    FieldDef,
    FieldKind,
    FieldOption,
    ForeignKey,
    Model,
    Relationship,
)

logger = logging.getLogger(__name__)

_PRIMARY_NAME_CANDIDATES = ("name", "title", "label")


class ModelRegistry:
    """Registry of model descriptors.

    Thread-safety:
        - Registration is thread-safe (uses internal lock)
        - Lookups after freeze are lock-free
        - Freeze is atomic and irreversible

    Example:
        >>> registry = build_models({"clients": {"name": {"type": "string"}}})
        >>> registry.get("Client").collection
        'clients'
    """

    def __init__(self) -> None:
        """Initialize an empty, mutable registry."""
        self._models: Dict[str, Model] = {}
        self._by_collection: Dict[str, Model] = {}
        self._frozen = False
        self._fingerprint: Optional[str] = None
        self._lock = threading.Lock()

    @property
    def frozen(self) -> bool:
        """Whether the registry is frozen."""
        return self._frozen

    @property
    def fingerprint(self) -> Optional[str]:
        """Registry fingerprint (available after freeze)."""
        return self._fingerprint

    def register(self, model: Model) -> None:
        """Register a model descriptor.

        Raises:
            RegistryFrozenError: If registry is frozen
            DuplicateModelError: If name or collection is already registered
        """
        with self._lock:
            if self._frozen:
                raise RegistryFrozenError(
                    f"Cannot register model '{model.name}': registry is frozen"
                )
            if model.name in self._models:
                raise DuplicateModelError(
                    f"Model '{model.name}' already registered", model=model.name
                )
            if model.collection in self._by_collection:
                existing = self._by_collection[model.collection]
                raise DuplicateModelError(
                    f"Collection '{model.collection}' already registered as '{existing.name}'",
                    model=model.name,
                )
            self._models[model.name] = model
            self._by_collection[model.collection] = model
            logger.debug(f"Registered model: {model.name} (collection={model.collection})")

    def replace(self, model: Model) -> None:
        """Swap an already registered model for an updated descriptor.

        Used by the relationship wiring pass before freeze.
        """
        with self._lock:
            if self._frozen:
                raise RegistryFrozenError(
                    f"Cannot replace model '{model.name}': registry is frozen"
                )
            if model.name not in self._models:
                raise KeyError(model.name)
            self._models[model.name] = model
            self._by_collection[model.collection] = model

    def get(self, name: str) -> Optional[Model]:
        """Get a model by name, falling back to collection name."""
        return self._models.get(name) or self._by_collection.get(name)

    def get_by_collection(self, collection: str) -> Optional[Model]:
        return self._by_collection.get(collection)

    def resolve(self, declared: str) -> Optional[Model]:
        """Resolve a collection as written in a declaration.

        Accepts a model name, a storage name, or any spelling that
        normalizes to one of them ("client", "Clients", "clients").
        """
        return (
            self._models.get(declared)
            or self._by_collection.get(declared)
            or self._models.get(model_name(declared))
            or self._by_collection.get(collection_name(declared))
        )

    def require(self, name: str) -> Model:
        """Get a model or raise ConfigurationError."""
        model = self.get(name)
        if model is None:
            raise ConfigurationError(f"Unknown model '{name}'", model=name)
        return model

    def names(self) -> List[str]:
        return sorted(self._models)

    def models(self) -> Iterator[Model]:
        for name in sorted(self._models):
            yield self._models[name]

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and self.get(name) is not None

    def __len__(self) -> int:
        return len(self._models)

    def freeze(self) -> str:
        """Freeze the registry and compute its fingerprint.

        Returns:
            The fingerprint, "sha256:<hex>"
        """
        with self._lock:
            if self._frozen:
                return self._fingerprint or ""
            self._fingerprint = generate_fingerprint(self.to_dict())
            self._frozen = True
            logger.info(
                f"Model registry frozen with {len(self._models)} models",
                extra={"fingerprint": self._fingerprint},
            )
            return self._fingerprint

    def to_dict(self) -> Dict[str, Any]:
        """Canonical JSON-safe form, sorted by model name."""
        return {"models": [m.to_dict() for m in self.models()]}


def generate_fingerprint(data: Mapping[str, Any]) -> str:
    """SHA-256 of the canonical JSON form."""
    canonical = json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)
    return "sha256:" + hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def _parse_options(raw: Any, model: str, name: str) -> tuple[FieldOption, ...]:
    if not raw:
        return ()
    if isinstance(raw, dict):
        return tuple(FieldOption(value=k, label=str(v)) for k, v in raw.items())
    if isinstance(raw, (list, tuple)):
        options = []
        for item in raw:
            if isinstance(item, dict):
                value = item.get("value")
                label = item.get("label", item.get("title", value))
                options.append(FieldOption(value=value, label=str(label)))
            else:
                options.append(FieldOption(value=item, label=str(item)))
        return tuple(options)
    raise ConfigurationError(
        f"Options of '{model}.{name}' must be a list or a map", model=model, field_name=name
    )


def _parse_foreign_key(raw: Any, model: str, name: str) -> ForeignKey:
    if not isinstance(raw, str) or not raw.strip():
        raise ConfigurationError(
            f"foreignKey of '{model}.{name}' must be 'collection.key'",
            model=model,
            field_name=name,
        )
    collection, _, key = raw.strip().partition(".")
    key = key or PRIMARY_KEY
    if key == PUBLIC_ID:
        key = PRIMARY_KEY
    return ForeignKey(
        related_model=model_name(collection),
        related_collection=collection,
        related_key=key,
        local_key=name,
    )


def parse_field(model: str, name: str, spec: Any) -> FieldDef:
    """Build a FieldDef from its declaration.

    A bare string is shorthand for ``{"type": <string>}``.

    Raises:
        ConfigurationError: Unknown type or malformed attribute
    """
    if isinstance(spec, str):
        spec = {"type": spec}
    if not isinstance(spec, dict):
        raise ConfigurationError(
            f"Field '{model}.{name}' must be declared as a map", model=model, field_name=name
        )
    try:
        kind = FieldKind.from_str(spec.get("type", "string"))
    except ValueError as e:
        raise ConfigurationError(str(e), model=model, field_name=name) from e

    foreign_key = None
    if spec.get("foreignKey"):
        foreign_key = _parse_foreign_key(spec["foreignKey"], model, name)

    default = spec.get("default", spec.get("defaultValue"))
    return FieldDef(
        name=name,
        kind=kind,
        required=bool(spec.get("required", False)),
        protected=bool(spec.get("protected", False)),
        primary_key=bool(spec.get("primaryKey", False)),
        default=default,
        foreign_key=foreign_key,
        options=_parse_options(spec.get("options"), model, name),
    )


def _primary_name(fields: Mapping[str, FieldDef]) -> Optional[str]:
    for candidate in _PRIMARY_NAME_CANDIDATES:
        if candidate in fields:
            return candidate
    for name in fields:
        if name not in (PUBLIC_ID, PRIMARY_KEY):
            return name
    return None


def parse_model(collection: str, spec: Mapping[str, Any], tenant_key: Optional[str] = None) -> Model:
    """Build a Model (without relationships) from one collection declaration."""
    if not isinstance(spec, Mapping):
        raise ConfigurationError(f"Collection '{collection}' must be a map of fields")
    name = model_name(collection)
    fields: Dict[str, FieldDef] = {}
    for field_name, field_spec in spec.items():
        if field_name in (PUBLIC_ID, PRIMARY_KEY):
            continue
        fields[field_name] = parse_field(name, field_name, field_spec)
    return Model(
        name=name,
        collection=collection_name(collection),
        fields=fields,
        primary_name=_primary_name(fields),
        tenant_scoped=bool(tenant_key) and tenant_key in fields,
    )


def _wire_relationships(registry: ModelRegistry) -> None:
    """Second pass: materialize every foreign key in both directions."""
    parents: Dict[str, Dict[str, Relationship]] = {m.name: {} for m in registry.models()}
    children: Dict[str, Dict[str, Relationship]] = {m.name: {} for m in registry.models()}

    for model in list(registry.models()):
        for field_def in model.fields.values():
            fk = field_def.foreign_key
            if fk is None:
                continue
            related = registry.resolve(fk.related_collection)
            if related is None:
                logger.warning(
                    f"Foreign key {model.name}.{field_def.name} references unknown "
                    f"collection '{fk.related_collection}'; relationship disabled",
                    extra={"model": model.name, "field": field_def.name},
                )
                continue

            parent_alias = parent_relative_name(field_def.name)
            child_alias = child_relative_name(related.name, model.name, field_def.name)

            if parent_alias in model.fields or parent_alias in parents[model.name]:
                logger.warning(
                    f"Parent alias '{parent_alias}' on {model.name} collides; keeping the first"
                )
            else:
                parents[model.name][parent_alias] = Relationship(
                    alias=parent_alias,
                    model=related.name,
                    local_key=field_def.name,
                    foreign_key=fk.related_key,
                )

            if child_alias in related.fields or child_alias in children[related.name]:
                logger.warning(
                    f"Child alias '{child_alias}' on {related.name} collides; keeping the first"
                )
            else:
                children[related.name][child_alias] = Relationship(
                    alias=child_alias,
                    model=model.name,
                    local_key=fk.related_key,
                    foreign_key=field_def.name,
                    many=True,
                )

    for model in list(registry.models()):
        registry.replace(
            replace(
                model,
                parent_fields=parents[model.name],
                children_fields=children[model.name],
            )
        )


def build_models(
    structure: Mapping[str, Any],
    tenant_key: Optional[str] = "tenantId",
    freeze: bool = True,
) -> ModelRegistry:
    """Build a registry from a declarative structure.

    Args:
        structure: Mapping of collection -> field -> declaration
        tenant_key: Field that marks a model as tenant-scoped
        freeze: Freeze the registry once wired

    Returns:
        ModelRegistry with every relationship wired

    Raises:
        ConfigurationError: On malformed declarations
        DuplicateModelError: If two collections normalize to the same model
    """
    if not isinstance(structure, Mapping):
        raise ConfigurationError("Model structure must be a map of collections")

    registry = ModelRegistry()
    for collection, spec in structure.items():
        registry.register(parse_model(collection, spec or {}, tenant_key))

    _wire_relationships(registry)

    if freeze:
        registry.freeze()
    return registry
