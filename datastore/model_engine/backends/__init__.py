"""
Storage backends.

Every backend implements the same StorageBackend contract on top of
BaseBackend; create_backend picks one from the engine configuration:

- MongoBackend: pymongo, native aggregation pipelines
- MySQLBackend / PostgresBackend: RelationalBackend with a SqlDialect
- LocalBackend: embedded SQLite file with in-process evaluation
"""

from __future__ import annotations

import logging

from ..config import DatabaseKind, EngineConfig
from ..connections import DatabaseConnections
from ..schema.registry import ModelRegistry
from .base import BaseBackend, ReadPlan, StorageBackend
from .local import LocalBackend
from .mongodb import MongoBackend
from .mysql import MySQLBackend, MySQLDialect
from .postgres import PostgresBackend, PostgresDialect
from .sql import RelationalBackend, SqlDialect

logger = logging.getLogger(__name__)


def create_backend(
    config: EngineConfig,
    registry: ModelRegistry,
    connections: DatabaseConnections,
) -> BaseBackend:
    """Build the backend selected by config.database.

    Args:
        config: Engine configuration
        registry: Frozen model registry
        connections: Driver handles for the configured database

    Returns:
        Backend instance

    Raises:
        ValueError: If the database kind is not supported
    """
    kind = config.database
    common = {"tenancy": config.tenancy, "query_config": config.query}
    if kind == DatabaseKind.MONGODB:
        backend: BaseBackend = MongoBackend(connections.mongo_database(), registry, **common)
    elif kind == DatabaseKind.MYSQL:
        backend = MySQLBackend(connections.mysql_connection, registry, **common)
    elif kind == DatabaseKind.POSTGRES:
        backend = PostgresBackend(connections.postgres_connection, registry, **common)
    elif kind == DatabaseKind.LOCAL:
        backend = LocalBackend.from_config(config.local, registry, **common)
    else:
        raise ValueError(f"Unsupported database kind: {kind}")
    logger.info(f"Using {backend.name} backend")
    return backend


__all__ = [
    "BaseBackend",
    "ReadPlan",
    "StorageBackend",
    "LocalBackend",
    "MongoBackend",
    "MySQLBackend",
    "MySQLDialect",
    "PostgresBackend",
    "PostgresDialect",
    "RelationalBackend",
    "SqlDialect",
    "create_backend",
]
