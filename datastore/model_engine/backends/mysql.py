"""
MySQL dialect.

Identifiers are backtick-quoted and regex matching uses REGEXP_LIKE with
an explicit match type, so case sensitivity does not depend on the
column collation.
"""

from __future__ import annotations

from typing import Any, List, Optional, Tuple

from ..config import QueryConfig, TenancyConfig
from ..schema.registry import ModelRegistry
from ..schema.types import FieldKind
from .sql import ConnectionFactory, RelationalBackend, SqlDialect

# Largest LIMIT MySQL accepts; OFFSET is not valid on its own
_NO_LIMIT = 18446744073709551615


class MySQLDialect(SqlDialect):
    name = "mysql"
    placeholder = "%s"
    quote_char = "`"
    column_types = {
        **SqlDialect.column_types,
        FieldKind.FLOAT: "DOUBLE",
        FieldKind.DATE: "DATETIME(6)",
        FieldKind.BOOL: "TINYINT(1)",
        FieldKind.OBJECT: "JSON",
        FieldKind.ARRAY: "JSON",
    }

    def regex(self, column: str, pattern: str, options: str) -> Tuple[str, List[Any]]:
        match_type = "i" if "i" in options else "c"
        if "m" in options:
            match_type += "m"
        return f"REGEXP_LIKE({column}, %s, %s)", [pattern, match_type]

    def limit_clause(self, limit: int, skip: int) -> Tuple[str, List[Any]]:
        if skip and not limit:
            return "LIMIT %s OFFSET %s", [_NO_LIMIT, skip]
        return super().limit_clause(limit, skip)


class MySQLBackend(RelationalBackend):
    """RelationalBackend bound to the MySQL dialect."""

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
            MySQLDialect(),
            registry,
            tenancy=tenancy,
            query_config=query_config,
            create_tables=create_tables,
        )
