"""
Shared fixtures for the model engine tests.

Backends:
- mongodb: MongoBackend on a mongomock database
- sql: RelationalBackend on SQLite through SqliteDialect
- local: LocalBackend on a temporary file
"""

import re
import sqlite3
from contextlib import contextmanager
from datetime import datetime

import mongomock
import pytest

from datastore.model_engine.backends import LocalBackend, MongoBackend, RelationalBackend, SqlDialect
from datastore.model_engine.config import EngineConfig, TenancyConfig
from datastore.model_engine.engine import Engine
from datastore.model_engine.notify import CollectingNotifier
from datastore.model_engine.schema import FieldKind, build_models
from datastore.model_engine.triggers import TriggerRegistry

STRUCTURE = {
    "clients": {
        "name": {"type": "string", "required": True},
        "email": "string",
        "password": {"type": "string", "protected": True},
        "tenantId": "string",
    },
    "invoices": {
        "number": "string",
        "clientId": {"type": "id", "foreignKey": "clients.id"},
        "billingClientId": {"type": "id", "foreignKey": "clients.id"},
        "status": {"type": "string", "options": ["draft", "paid"]},
        "amount": "float",
        "quantity": "number",
        "paid": "bool",
        "issuedAt": "date",
        "tags": "array",
        "meta": "object",
        "tenantId": "string",
    },
}


class SqliteDialect(SqlDialect):
    """SQLite spelling, used to run the relational backend in-process."""

    name = "sqlite"
    placeholder = "?"
    quote_char = '"'
    column_types = {
        **SqlDialect.column_types,
        FieldKind.DATE: "TEXT",
        FieldKind.FLOAT: "REAL",
        FieldKind.BOOL: "INTEGER",
    }

    def adapt(self, value):
        if isinstance(value, datetime):
            return value.strftime("%Y-%m-%d %H:%M:%S.%f")
        return super().adapt(value)

    def regex(self, column, pattern, options):
        if "i" in options:
            pattern = "(?i)" + pattern
        return f"{column} REGEXP ?", [pattern]

    def limit_clause(self, limit, skip):
        if skip and not limit:
            return "LIMIT -1 OFFSET ?", [skip]
        return super().limit_clause(limit, skip)


def _regexp(pattern, value):
    return value is not None and re.search(pattern, str(value)) is not None


def sqlite_factory(path):
    """Connection factory opening one SQLite connection per operation."""

    @contextmanager
    def connect():
        conn = sqlite3.connect(path)
        conn.create_function("REGEXP", 2, _regexp)
        try:
            yield conn
        finally:
            conn.close()

    return connect


@pytest.fixture
def registry():
    """Frozen registry with clients and invoices."""
    return build_models(STRUCTURE)


def make_backend(kind, registry, tmp_path, tenancy=None):
    if kind == "mongodb":
        return MongoBackend(mongomock.MongoClient()["model_engine_test"], registry, tenancy=tenancy)
    if kind == "sql":
        return RelationalBackend(
            sqlite_factory(str(tmp_path / "relational.db")), SqliteDialect(), registry, tenancy=tenancy
        )
    return LocalBackend(str(tmp_path / "local.db"), registry, tenancy=tenancy)


@pytest.fixture(params=["mongodb", "sql", "local"])
def backend(request, registry, tmp_path):
    """Each backend in turn."""
    return make_backend(request.param, registry, tmp_path)


@pytest.fixture
def local_backend(registry, tmp_path):
    return make_backend("local", registry, tmp_path)


@pytest.fixture
def triggers():
    return TriggerRegistry()


@pytest.fixture
def notifier():
    return CollectingNotifier()


@pytest.fixture
def engine(registry, backend, triggers, notifier):
    """Engine on the parametrized backend."""
    return Engine(EngineConfig(), registry, backend=backend, triggers=triggers, notifier=notifier)


@pytest.fixture
def local_engine(registry, local_backend, triggers, notifier):
    return Engine(EngineConfig(), registry, backend=local_backend, triggers=triggers, notifier=notifier)


@pytest.fixture(params=["mongodb", "sql", "local"])
def tenant_engine(request, registry, tmp_path):
    """Engine with tenant scoping enabled."""
    tenancy = TenancyConfig(enabled=True)
    backend = make_backend(request.param, registry, tmp_path, tenancy=tenancy)
    return Engine(EngineConfig(tenancy=tenancy), registry, backend=backend)
