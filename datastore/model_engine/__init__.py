"""
Model Engine - backend-agnostic query and persistence for declared models.

This package turns a declarative model structure into a query engine:
- A frozen Model Registry with relationships wired in both directions
- A fluent Query Specification (where/order/group/page) per operation
- Filter compilers for the document store, SQL dialects and in-process evaluation
- Storage backends for MongoDB, MySQL, PostgreSQL and an embedded SQLite file
- Before/after trigger hooks and post-mutation change notifications
- Grouped aggregation and chart series building

Architecture:
    ┌─────────────┐     ┌─────────────┐     ┌──────────────────┐
    │   Caller    │────▶│  QuerySpec  │────▶│ Trigger pipeline │
    └─────────────┘     └──────┬──────┘     └──────────────────┘
                               │
                               ▼
                        ┌─────────────┐
                        │ BaseBackend │
                        └──────┬──────┘
              ┌──────────┬─────┴─────┬───────────┐
              ▼          ▼           ▼           ▼
         ┌─────────┐ ┌───────┐ ┌──────────┐ ┌─────────┐
         │ MongoDB │ │ MySQL │ │ Postgres │ │  Local  │
         └─────────┘ └───────┘ └──────────┘ └─────────┘

Invariants:
    - The registry is immutable once queries are served
    - One QuerySpec per logical operation, never shared
    - Every read is tenant-scoped for tenant-scoped models
    - Delete never runs with an empty filter

How to change safely:
    - New backends subclass BaseBackend and implement the raw primitives only
    - New filter operators must be added to every compiler together
    - Keep output stamping (id, _collection, _model) identical across backends
"""

from ._version import __version__
from .backends import BaseBackend, LocalBackend, MongoBackend, MySQLBackend, PostgresBackend
from .config import DatabaseKind, EngineConfig
from .context import QueryContext, RequestContext, TokenPayload
from .engine import Engine, setup_logging
from .errors import (
    BackendError,
    ConfigurationError,
    EmptyFilterError,
    EngineError,
    PolicyError,
    TriggerError,
    TriggerVetoError,
    UnsupportedFilterError,
)
from .notify import ChangeNotifier, CollectingNotifier, NullNotifier
from .query import QuerySpec
from .schema import Model, ModelRegistry, build_models, load_registry
from .triggers import TriggerAction, TriggerRegistry

__all__ = [
    "__version__",
    "Engine",
    "setup_logging",
    "EngineConfig",
    "DatabaseKind",
    "ModelRegistry",
    "Model",
    "build_models",
    "load_registry",
    "QuerySpec",
    "QueryContext",
    "RequestContext",
    "TokenPayload",
    "TriggerAction",
    "TriggerRegistry",
    "ChangeNotifier",
    "CollectingNotifier",
    "NullNotifier",
    "BaseBackend",
    "LocalBackend",
    "MongoBackend",
    "MySQLBackend",
    "PostgresBackend",
    "EngineError",
    "ConfigurationError",
    "BackendError",
    "PolicyError",
    "EmptyFilterError",
    "TriggerError",
    "TriggerVetoError",
    "UnsupportedFilterError",
]
