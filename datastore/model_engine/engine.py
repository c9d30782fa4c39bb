"""
Engine: the dependency-injection root of the model engine.

One Engine is built at startup from configuration and passed to every
caller. It owns the frozen model registry, the driver connections, the
storage backend, the trigger registry and the change notifier, and hands
out a fresh QuerySpec per operation:

    engine = Engine.from_env()
    invoices = engine.query("Invoice", request).where("status", "open").find()

Invariants:
    - The registry is frozen before the engine serves any query
    - Each query() call returns a new QuerySpec; instances are never reused
    - close() releases driver handles; the engine is unusable afterwards
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import json_log_formatter

from .backends import BaseBackend, create_backend
from .config import EngineConfig
from .connections import DatabaseConnections
from .context import QueryContext, RequestContext
from .errors import ConfigurationError
from .notify import ChangeNotifier, NullNotifier
from .query.spec import QuerySpec
from .schema.loader import load_registry
from .schema.registry import ModelRegistry, build_models
from .triggers import TriggerRegistry

logger = logging.getLogger(__name__)


# Request-scoped fields the engine passes through ``extra=``
ENGINE_LOG_FIELDS = ("model", "backend", "operation", "action")

TEXT_LOG_FORMAT = (
    "%(asctime)s - %(name)s - %(levelname)s - "
    "[%(backend)s %(model)s %(operation)s] %(message)s"
)


class EngineJSONFormatter(json_log_formatter.JSONFormatter):
    """JSON lines carrying the logger name, level and engine fields."""

    def json_record(
        self, message: str, extra: Dict[str, Any], record: logging.LogRecord
    ) -> Dict[str, Any]:
        payload = super().json_record(message, extra, record)
        payload["logger"] = record.name
        payload["level"] = record.levelname
        for name in ENGINE_LOG_FIELDS:
            payload.setdefault(name, getattr(record, name, None))
        return payload


class EngineFieldsFilter(logging.Filter):
    """Fills missing engine fields so the text format always renders."""

    def filter(self, record: logging.LogRecord) -> bool:
        for name in ENGINE_LOG_FIELDS:
            if not hasattr(record, name):
                setattr(record, name, "-")
        return True


def setup_logging(config: EngineConfig) -> None:
    """Route engine logs to stderr in the configured format.

    Records gain the model, backend, operation and action fields that
    backends and query specs attach through ``extra=``; absent fields
    render as "-" in text mode and null in JSON mode.

    Args:
        config: Engine configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    handler = logging.StreamHandler()
    if config.observability.log_format == "json":
        handler.setFormatter(EngineJSONFormatter())
    else:
        handler.addFilter(EngineFieldsFilter())
        handler.setFormatter(logging.Formatter(TEXT_LOG_FORMAT))

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Driver chatter stays at WARNING unless the engine runs at DEBUG
    driver_level = logging.DEBUG if level <= logging.DEBUG else logging.WARNING
    for name in ("pymongo", "pymysql", "psycopg", "psycopg.pool"):
        logging.getLogger(name).setLevel(driver_level)


class Engine:
    """Model engine context.

    Args:
        config: Engine configuration
        registry: Model registry (frozen here if it is not yet)
        backend: Storage backend; built from config when omitted
        connections: Driver handles; built from config when omitted
        triggers: Trigger registry; an empty one when omitted
        notifier: Change notifier; NullNotifier when omitted
    """

    def __init__(
        self,
        config: EngineConfig,
        registry: ModelRegistry,
        backend: Optional[BaseBackend] = None,
        connections: Optional[DatabaseConnections] = None,
        triggers: Optional[TriggerRegistry] = None,
        notifier: Optional[ChangeNotifier] = None,
    ) -> None:
        if not registry.frozen:
            registry.freeze()
        self.config = config
        self.registry = registry
        self.connections = connections
        if backend is None:
            if self.connections is None:
                self.connections = DatabaseConnections(config)
            backend = create_backend(config, registry, self.connections)
        self.backend = backend
        self.triggers = triggers if triggers is not None else TriggerRegistry()
        self.notifier = notifier if notifier is not None else NullNotifier()

    @classmethod
    def from_env(
        cls,
        structure: Optional[Dict[str, Any]] = None,
        notifier: Optional[ChangeNotifier] = None,
    ) -> Engine:
        """Build an engine from environment configuration.

        Models come from ``structure`` when given, else from the file at
        MODEL_STRUCTURE_PATH.

        Raises:
            ConfigurationError: If no model structure is available
            ValueError: If the configuration is invalid
        """
        config = EngineConfig.from_env()
        setup_logging(config)
        config.log_config()

        tenant_key = config.tenancy.tenant_key if config.tenancy.enabled else None
        if structure is not None:
            registry = build_models(structure, tenant_key=tenant_key)
        elif config.structure_path:
            registry = load_registry(config.structure_path, tenant_key=tenant_key)
        else:
            raise ConfigurationError("No model structure: set MODEL_STRUCTURE_PATH")

        logger.info(
            f"Engine ready with {len(registry)} models",
            extra={"fingerprint": registry.fingerprint, "database": config.database.value},
        )
        return cls(config, registry, notifier=notifier)

    def query(
        self,
        model: str,
        request: Optional[RequestContext] = None,
        access_role: str = "",
        route: str = "",
    ) -> QuerySpec:
        """Fresh query specification for one operation on ``model``.

        Args:
            model: Model name (or collection name)
            request: Caller context used for tenant scoping and triggers
            access_role: Selects per-model triggers registered for a role
            route: Selects per-model triggers registered for a route

        Raises:
            ConfigurationError: If the model is unknown
        """
        resolved = self.registry.get(model)
        if resolved is None:
            raise ConfigurationError(f"Unknown model '{model}'", model=model)
        return QuerySpec(
            resolved,
            self.backend,
            triggers=self.triggers,
            notifier=self.notifier,
            request=request,
            context=QueryContext(access_role=access_role, route=route),
            limit=self.config.query.default_limit,
        )

    def close(self) -> None:
        if self.connections is not None:
            self.connections.close()
