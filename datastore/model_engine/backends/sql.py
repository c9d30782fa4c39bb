"""
Relational backend shared by MySQL and PostgreSQL.

One table per model, one column per declared field plus "_id". Object
and array fields are stored as JSON text and decoded on the way out, so
a relational round trip yields the same record shape as the document
store.

SqlDialect isolates everything that differs between engines: identifier
quoting, the placeholder, value adaptation, regex syntax, pagination and
column types. RelationalBackend never formats a value into SQL text;
every operand is bound.

Invariants:
    - Tables are created lazily, once per backend instance
    - Rows are fully hydrated: JSON decoded, bools and dates typed
    - group_by_raw is not supported here; it is ignored with a warning
    - Mutations run in one transaction per call

How to change safely:
    - New dialects subclass SqlDialect and override what differs
    - Keep adapt() and _hydrate() symmetric
"""

from __future__ import annotations

import json
import logging
import threading
from contextlib import contextmanager
from datetime import date, datetime
from typing import Any, Callable, ContextManager, Dict, Iterator, List, Optional, Sequence, Set, Tuple

from ..config import QueryConfig, TenancyConfig
from ..errors import UnsupportedFilterError
from ..filters.sql import SqlFilterCompiler
from ..filters.tree import Group
from ..schema.registry import ModelRegistry
from ..schema.types import PRIMARY_KEY, PUBLIC_ID, FieldKind, Model
from ..values import coerce_bool, parse_timestamp
from .base import BaseBackend, ReadPlan

logger = logging.getLogger(__name__)

ConnectionFactory = Callable[[], ContextManager[Any]]

_AGGREGATE_SQL = {"max": "MAX", "min": "MIN", "sum": "SUM", "avg": "AVG"}


class SqlDialect:
    """Spelling of one SQL engine.

    Subclasses override the class attributes and whichever methods differ.
    """

    name = "sql"
    placeholder = "%s"
    quote_char = '"'
    id_type = "VARCHAR(64)"
    column_types: Dict[FieldKind, str] = {
        FieldKind.ID: "VARCHAR(64)",
        FieldKind.STRING: "TEXT",
        FieldKind.NUMBER: "BIGINT",
        FieldKind.FLOAT: "DOUBLE PRECISION",
        FieldKind.DATE: "TIMESTAMP",
        FieldKind.BOOL: "BOOLEAN",
        FieldKind.OBJECT: "TEXT",
        FieldKind.ARRAY: "TEXT",
        FieldKind.FILE: "TEXT",
    }

    def quote(self, identifier: str) -> str:
        escaped = identifier.replace(self.quote_char, self.quote_char * 2)
        return f"{self.quote_char}{escaped}{self.quote_char}"

    def adapt(self, value: Any) -> Any:
        """Python value -> driver parameter."""
        if isinstance(value, (dict, list, tuple)):
            return json.dumps(value, default=str)
        return value

    def regex(self, column: str, pattern: str, options: str) -> Tuple[str, List[Any]]:
        raise NotImplementedError

    def limit_clause(self, limit: int, skip: int) -> Tuple[str, List[Any]]:
        if limit and skip:
            return f"LIMIT {self.placeholder} OFFSET {self.placeholder}", [limit, skip]
        if limit:
            return f"LIMIT {self.placeholder}", [limit]
        if skip:
            return f"OFFSET {self.placeholder}", [skip]
        return "", []

    def column_type(self, kind: FieldKind) -> str:
        return self.column_types.get(kind, "TEXT")

    def create_table_sql(self, model: Model) -> str:
        columns = [f"{self.quote(PRIMARY_KEY)} {self.id_type} PRIMARY KEY"]
        for name, field_def in model.fields.items():
            if name == PRIMARY_KEY:
                continue
            columns.append(f"{self.quote(name)} {self.column_type(field_def.kind)}")
        body = ",\n    ".join(columns)
        return f"CREATE TABLE IF NOT EXISTS {self.quote(model.collection)} (\n    {body}\n)"


class RelationalBackend(BaseBackend):
    """Storage backend for a SQL database.

    Args:
        connect: Zero-argument callable returning a context manager that
            yields a DB-API connection (a pool checkout, for example)
        dialect: SqlDialect of the target engine
        registry: Frozen model registry
        tenancy: Tenant scoping settings
        query_config: Query defaults
        create_tables: Issue CREATE TABLE IF NOT EXISTS on first use
    """

    name = "sql"
    supports_raw_grouping = False

    def __init__(
        self,
        connect: ConnectionFactory,
        dialect: SqlDialect,
        registry: ModelRegistry,
        tenancy: Optional[TenancyConfig] = None,
        query_config: Optional[QueryConfig] = None,
        create_tables: bool = True,
    ) -> None:
        super().__init__(registry, tenancy=tenancy, query_config=query_config)
        self.connect = connect
        self.dialect = dialect
        self.name = dialect.name
        self.create_tables = create_tables
        self._ensured: Set[str] = set()
        self._ensure_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Connection handling
    # ------------------------------------------------------------------

    @contextmanager
    def _cursor(self, model: Model, commit: bool = False) -> Iterator[Any]:
        self.ensure_table(model)
        with self.connect() as conn:
            cursor = conn.cursor()
            try:
                yield cursor
                if commit:
                    conn.commit()
            except Exception:
                if commit:
                    conn.rollback()
                raise
            finally:
                cursor.close()

    def ensure_table(self, model: Model) -> None:
        """Create the model's table if it does not exist yet."""
        if not self.create_tables or model.collection in self._ensured:
            return
        with self._ensure_lock:
            if model.collection in self._ensured:
                return
            with self.connect() as conn:
                cursor = conn.cursor()
                try:
                    cursor.execute(self.dialect.create_table_sql(model))
                    conn.commit()
                finally:
                    cursor.close()
            self._ensured.add(model.collection)
        logger.info(f"Ensured table {model.collection} on {self.name}")

    def ensure_tables(self, models: Sequence[Model]) -> None:
        for model in models:
            self.ensure_table(model)

    # ------------------------------------------------------------------
    # SQL building
    # ------------------------------------------------------------------

    def _table(self, model: Model) -> str:
        return self.dialect.quote(model.collection)

    def _where(self, model: Model, tree: Group) -> Tuple[str, List[Any]]:
        compiler = SqlFilterCompiler(self.dialect, model.storage_columns())
        sql, params = compiler.compile(tree)
        return (f" WHERE {sql}" if sql else ""), params

    def _order(self, model: Model, order: Sequence[Tuple[str, int]], allowed: Sequence[str]) -> str:
        parts = []
        for field, direction in order:
            column = PRIMARY_KEY if field == "id" else field
            if column not in allowed:
                logger.warning(f"Ignoring order on unknown column {model.collection}.{field}")
                continue
            parts.append(f"{self.dialect.quote(column)} {'DESC' if direction < 0 else 'ASC'}")
        return f" ORDER BY {', '.join(parts)}" if parts else ""

    def _fetch(self, model: Model, sql: str, params: List[Any]) -> List[Dict[str, Any]]:
        logger.debug(f"{self.name}: {sql}", extra={"params": len(params)})
        with self._cursor(model) as cursor:
            cursor.execute(sql, params)
            names = [d[0] for d in cursor.description or ()]
            return [dict(zip(names, row)) for row in cursor.fetchall()]

    def _hydrate(self, model: Model, row: Dict[str, Any]) -> Dict[str, Any]:
        record: Dict[str, Any] = {}
        for column, value in row.items():
            field_def = model.fields.get(column)
            if value is None or field_def is None:
                record[column] = value
                continue
            kind = field_def.kind
            if kind in (FieldKind.OBJECT, FieldKind.ARRAY) and isinstance(value, (str, bytes)):
                try:
                    value = json.loads(value)
                except ValueError:
                    logger.warning(f"Undecodable JSON in {model.collection}.{column}")
            elif kind == FieldKind.BOOL:
                value = coerce_bool(value)
            elif kind == FieldKind.DATE:
                if isinstance(value, str):
                    value = parse_timestamp(value) or value
                elif isinstance(value, date) and not isinstance(value, datetime):
                    value = datetime(value.year, value.month, value.day)
            elif kind == FieldKind.NUMBER and not isinstance(value, int):
                value = int(value)
            elif kind == FieldKind.FLOAT and not isinstance(value, float):
                value = float(value)
            record[column] = value
        return record

    # ------------------------------------------------------------------
    # Primitives
    # ------------------------------------------------------------------

    def _find_raw(self, model: Model, plan: ReadPlan) -> List[Dict[str, Any]]:
        where_sql, params = self._where(model, plan.tree)
        columns = model.storage_columns()

        if plan.grouped:
            keys = [f for f in plan.group_fields if f in columns]
            if not keys:
                logger.warning(f"No groupable columns on {model.collection}; returning no rows")
                return []
            select = ", ".join(self.dialect.quote(k) for k in keys)
            group_sql = f" GROUP BY {select}"
            order_sql = self._order(model, plan.order, list(keys) + ["count"])
            sql = f"SELECT {select}, COUNT(*) AS count FROM {self._table(model)}{where_sql}{group_sql}{order_sql}"
        else:
            select = ", ".join(self.dialect.quote(c) for c in columns)
            order_sql = self._order(model, plan.order, columns)
            sql = f"SELECT {select} FROM {self._table(model)}{where_sql}{order_sql}"

        limit_sql, limit_params = self.dialect.limit_clause(plan.limit, plan.skip)
        if limit_sql:
            sql = f"{sql} {limit_sql}"
        rows = self._fetch(model, sql, params + limit_params)
        return [self._hydrate(model, row) for row in rows]

    def _count_raw(self, model: Model, tree: Group, distinct: Tuple[str, ...]) -> int:
        where_sql, params = self._where(model, tree)
        if distinct:
            columns = [PRIMARY_KEY if k == PUBLIC_ID else k for k in distinct]
            known = [c for c in columns if c in model.storage_columns()]
            if not known:
                raise UnsupportedFilterError(
                    f"Cannot count distinct {', '.join(distinct)} on {model.collection}: no such columns",
                    operator="distinct",
                    backend=self.name,
                )
            keys = ", ".join(self.dialect.quote(c) for c in known)
            inner = f"SELECT {keys} FROM {self._table(model)}{where_sql} GROUP BY {keys}"
            sql = f"SELECT COUNT(*) AS total FROM ({inner}) AS grouped_rows"
        else:
            sql = f"SELECT COUNT(*) AS total FROM {self._table(model)}{where_sql}"
        rows = self._fetch(model, sql, params)
        return int(rows[0]["total"]) if rows else 0

    def _aggregate_raw(self, model: Model, tree: Group, op: str, key: str) -> Any:
        if key not in model.storage_columns():
            logger.warning(f"Aggregate on unknown column {model.collection}.{key}")
            return None
        where_sql, params = self._where(model, tree)
        column = self.dialect.quote(key)
        sql = f"SELECT {_AGGREGATE_SQL[op]}({column}) AS aggregate_value FROM {self._table(model)}{where_sql}"
        rows = self._fetch(model, sql, params)
        if not rows:
            return None
        value = rows[0]["aggregate_value"]
        if op in ("max", "min") and value is not None:
            value = self._hydrate(model, {key: value})[key]
        return value

    def _insert_raw(self, model: Model, docs: List[Dict[str, Any]]) -> None:
        columns = model.storage_columns()
        for doc in docs:
            unknown = set(doc) - set(columns)
            if unknown:
                logger.warning(f"Dropping undeclared columns {sorted(unknown)} on {model.collection}")
        names = ", ".join(self.dialect.quote(c) for c in columns)
        placeholders = ", ".join(self.dialect.placeholder for _ in columns)
        sql = f"INSERT INTO {self._table(model)} ({names}) VALUES ({placeholders})"
        rows = [[self.dialect.adapt(doc.get(c)) for c in columns] for doc in docs]
        with self._cursor(model, commit=True) as cursor:
            cursor.executemany(sql, rows)

    def _update_raw(self, model: Model, ids: List[Any], values: Dict[str, Any]) -> None:
        columns = model.storage_columns()
        known = [(k, v) for k, v in values.items() if k in columns]
        if not known:
            return
        assignments = ", ".join(f"{self.dialect.quote(k)} = {self.dialect.placeholder}" for k, _ in known)
        id_list = ", ".join(self.dialect.placeholder for _ in ids)
        sql = (
            f"UPDATE {self._table(model)} SET {assignments} "
            f"WHERE {self.dialect.quote(PRIMARY_KEY)} IN ({id_list})"
        )
        params = [self.dialect.adapt(v) for _, v in known] + [self.dialect.adapt(i) for i in ids]
        with self._cursor(model, commit=True) as cursor:
            cursor.execute(sql, params)

    def _delete_raw(self, model: Model, tree: Group) -> int:
        where_sql, params = self._where(model, tree)
        sql = f"DELETE FROM {self._table(model)}{where_sql}"
        with self._cursor(model, commit=True) as cursor:
            cursor.execute(sql, params)
            return cursor.rowcount
