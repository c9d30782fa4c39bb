"""
Embedded local backend.

Records live in a single SQLite file, one table per collection, each row
holding the record as a JSON payload:

    CREATE TABLE "<collection>" (_id TEXT PRIMARY KEY, payload TEXT NOT NULL)

Filtering, ordering and grouping run in-process through filters.memory,
so the local store follows document-store semantics (missing fields act
as null, array equality matches elements) and supports group_by_raw.

Invariants:
    - Dates are stored as ISO-8601 text and rehydrated for date fields
    - Every write runs in one IMMEDIATE transaction
    - A connection is opened per operation and always closed
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Set, Tuple

from ..config import LocalConfig, QueryConfig, TenancyConfig
from ..filters.memory import evaluate, group_records, lookup, sort_records
from ..filters.tree import Group
from ..schema.registry import ModelRegistry
from ..schema.types import PRIMARY_KEY, Model
from ..values import parse_timestamp
from .base import BaseBackend, ReadPlan

logger = logging.getLogger(__name__)


def _encode(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


class LocalBackend(BaseBackend):
    """Storage backend on an embedded SQLite file.

    Args:
        path: Database file path (":memory:" is not supported; each
            operation opens its own connection)
        registry: Frozen model registry
        tenancy: Tenant scoping settings
        query_config: Query defaults
        busy_timeout_ms: SQLite busy timeout

    Example:
        >>> backend = LocalBackend("/var/lib/model-engine/local.db", registry)
    """

    name = "local"

    def __init__(
        self,
        path: str,
        registry: ModelRegistry,
        tenancy: Optional[TenancyConfig] = None,
        query_config: Optional[QueryConfig] = None,
        busy_timeout_ms: int = 5000,
    ) -> None:
        super().__init__(registry, tenancy=tenancy, query_config=query_config)
        self.path = Path(path)
        self.busy_timeout_ms = busy_timeout_ms
        self._tables: Set[str] = set()
        self._lock = threading.Lock()

    @classmethod
    def from_config(
        cls,
        config: LocalConfig,
        registry: ModelRegistry,
        tenancy: Optional[TenancyConfig] = None,
        query_config: Optional[QueryConfig] = None,
    ) -> LocalBackend:
        return cls(
            config.path,
            registry,
            tenancy=tenancy,
            query_config=query_config,
            busy_timeout_ms=config.busy_timeout_ms,
        )

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(
            str(self.path),
            timeout=self.busy_timeout_ms / 1000.0,
            isolation_level=None,
        )
        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            conn.execute("PRAGMA synchronous = NORMAL")
            yield conn
        finally:
            conn.close()

    @contextmanager
    def _transaction(self, model: Model) -> Iterator[sqlite3.Connection]:
        with self._connection() as conn:
            self._ensure(conn, model)
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise

    @staticmethod
    def _table(model: Model) -> str:
        return '"' + model.collection.replace('"', '""') + '"'

    def _ensure(self, conn: sqlite3.Connection, model: Model) -> None:
        if model.collection in self._tables:
            return
        conn.execute(
            f"CREATE TABLE IF NOT EXISTS {self._table(model)} "
            "(_id TEXT PRIMARY KEY, payload TEXT NOT NULL)"
        )
        with self._lock:
            self._tables.add(model.collection)

    def _decode(self, model: Model, payload: str) -> Dict[str, Any]:
        record = json.loads(payload)
        for name in model.date_fields:
            value = record.get(name)
            if isinstance(value, str):
                parsed = parse_timestamp(value)
                if parsed is not None:
                    record[name] = parsed
        return record

    def _load(self, model: Model, tree: Group) -> List[Dict[str, Any]]:
        with self._connection() as conn:
            self._ensure(conn, model)
            rows = conn.execute(f"SELECT payload FROM {self._table(model)} ORDER BY rowid").fetchall()
        records = [self._decode(model, row[0]) for row in rows]
        return [r for r in records if evaluate(tree, r)]

    @staticmethod
    def _window(records: List[Dict[str, Any]], skip: int, limit: int) -> List[Dict[str, Any]]:
        if skip:
            records = records[skip:]
        if limit:
            records = records[:limit]
        return records

    def _find_raw(self, model: Model, plan: ReadPlan) -> List[Dict[str, Any]]:
        records = self._load(model, plan.tree)
        if plan.grouped:
            records = group_records(records, plan.group_fields, plan.group_raw)
        if plan.order:
            records = sort_records(records, plan.order)
        return self._window(records, plan.skip, plan.limit)

    def _count_raw(self, model: Model, tree: Group, distinct: Tuple[str, ...]) -> int:
        records = self._load(model, tree)
        if distinct:
            return len(group_records(records, distinct))
        return len(records)

    def _aggregate_raw(self, model: Model, tree: Group, op: str, key: str) -> Any:
        records = self._load(model, tree)
        if not records:
            return None
        rows = group_records(records, group_raw={"_id": None, "value": {f"${op}": f"${key}"}})
        return rows[0]["value"] if rows else None

    def _insert_raw(self, model: Model, docs: List[Dict[str, Any]]) -> None:
        with self._transaction(model) as conn:
            conn.executemany(
                f"INSERT INTO {self._table(model)} (_id, payload) VALUES (?, ?)",
                [(str(doc[PRIMARY_KEY]), json.dumps(doc, default=_encode)) for doc in docs],
            )

    def _update_raw(self, model: Model, ids: List[Any], values: Dict[str, Any]) -> None:
        with self._transaction(model) as conn:
            for record_id in ids:
                row = conn.execute(
                    f"SELECT payload FROM {self._table(model)} WHERE _id = ?", (str(record_id),)
                ).fetchone()
                if row is None:
                    continue
                record = json.loads(row[0])
                record.update(values)
                conn.execute(
                    f"UPDATE {self._table(model)} SET payload = ? WHERE _id = ?",
                    (json.dumps(record, default=_encode), str(record_id)),
                )

    def _delete_raw(self, model: Model, tree: Group) -> int:
        ids = [str(lookup(r, PRIMARY_KEY)) for r in self._load(model, tree)]
        if not ids:
            return 0
        with self._transaction(model) as conn:
            conn.executemany(
                f"DELETE FROM {self._table(model)} WHERE _id = ?", [(i,) for i in ids]
            )
        return len(ids)
