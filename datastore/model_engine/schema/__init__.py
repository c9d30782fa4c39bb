"""
Schema module for the model engine.

This module turns a declarative structure into immutable model descriptors:
- Type definitions (Model, FieldDef, FieldKind, Relationship)
- Model registry with relationship wiring
- Naming helpers shared with relationship aliases
- Structure loading from JSON/YAML

Invariants:
    - Models are immutable once the registry is frozen
    - Every relationship is wired in both directions before any query runs
"""

from .loader import load_registry, load_structure, parse_json, parse_yaml
from .registry import ModelRegistry, build_models, generate_fingerprint, parse_field
from .types import (
    COLLECTION_KEY,
    IDENTITY_KEYS,
    MODEL_KEY,
    PRIMARY_KEY,
    PUBLIC_ID,
    FieldDef,
    FieldKind,
    FieldOption,
    ForeignKey,
    Model,
    Relationship,
)

__all__ = [
    # Types
    "FieldDef",
    "FieldKind",
    "FieldOption",
    "ForeignKey",
    "Model",
    "Relationship",
    "PRIMARY_KEY",
    "PUBLIC_ID",
    "COLLECTION_KEY",
    "MODEL_KEY",
    "IDENTITY_KEYS",
    # Registry
    "ModelRegistry",
    "build_models",
    "parse_field",
    "generate_fingerprint",
    # Loading
    "load_structure",
    "load_registry",
    "parse_json",
    "parse_yaml",
]
