"""
PostgreSQL dialect.

Regex matching uses the POSIX operators: ``~`` and ``~*`` for the
case-insensitive form. Object and array fields are stored as TEXT holding
JSON, not JSONB, so equality filters compare the serialized text exactly
as the other relational engines do.
"""

from __future__ import annotations

from typing import Any, List, Optional, Tuple

from ..config import QueryConfig, TenancyConfig
from ..schema.registry import ModelRegistry
from .sql import ConnectionFactory, RelationalBackend, SqlDialect


class PostgresDialect(SqlDialect):
    name = "postgres"
    placeholder = "%s"
    quote_char = '"'

    def regex(self, column: str, pattern: str, options: str) -> Tuple[str, List[Any]]:
        operator = "~*" if "i" in options else "~"
        return f"{column} {operator} %s", [pattern]


class PostgresBackend(RelationalBackend):
    """RelationalBackend bound to the PostgreSQL dialect."""

    def __init__(
        self,
        connect: ConnectionFactory,
        registry: ModelRegistry,
        tenancy: Optional[TenancyConfig] = None,
        query_config: Optional[QueryConfig] = None,
        create_tables: bool = True,
    ) -> None:
        super().__init__(
            connect,
            PostgresDialect(),
            registry,
            tenancy=tenancy,
            query_config=query_config,
            create_tables=create_tables,
        )
