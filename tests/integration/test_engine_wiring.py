"""
Integration tests for Engine construction and logging setup.

Tests cover:
- Engine.from_env on the local backend with a structure dict or file
- Unknown models and missing structures
- Injected trigger registries and notifiers, empty or not
- setup_logging text and JSON formatters with engine log fields
"""

import json
import logging

import json_log_formatter
import pytest

from datastore.model_engine.backends import LocalBackend
from datastore.model_engine.config import EngineConfig, ObservabilityConfig
from datastore.model_engine.engine import Engine, setup_logging
from datastore.model_engine.errors import ConfigurationError
from datastore.model_engine.notify import CollectingNotifier, NullNotifier
from datastore.model_engine.triggers import TriggerAction, TriggerRegistry

from tests.conftest import STRUCTURE


@pytest.fixture(autouse=True)
def restore_logging():
    """setup_logging replaces root handlers; put them back afterwards."""
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    names = ("pymongo", "pymysql", "psycopg", "psycopg.pool")
    drivers = {name: logging.getLogger(name).level for name in names}
    yield
    root.handlers = handlers
    root.setLevel(level)
    for name, driver_level in drivers.items():
        logging.getLogger(name).setLevel(driver_level)


@pytest.fixture
def local_env(monkeypatch, tmp_path):
    monkeypatch.setenv("DATABASE_KIND", "local")
    monkeypatch.setenv("LOCAL_DATA_DIR", str(tmp_path / "data"))
    monkeypatch.delenv("MODEL_STRUCTURE_PATH", raising=False)
    monkeypatch.delenv("TENANCY_ENABLED", raising=False)
    return tmp_path


class TestEngineFromEnv:
    """Engine.from_env wiring."""

    def test_structure_dict(self, local_env):
        engine = Engine.from_env(STRUCTURE)
        try:
            assert isinstance(engine.backend, LocalBackend)
            assert engine.registry.frozen
            created = engine.query("Client").create({"name": "Acme"})
            assert engine.query("clients").where("id", created["id"]).value("name") == "Acme"
        finally:
            engine.close()
        assert (local_env / "data" / "model_engine.db").exists()

    def test_structure_file(self, local_env, monkeypatch):
        path = local_env / "models.yaml"
        path.write_text("clients:\n  name: {type: string, required: true}\n")
        monkeypatch.setenv("MODEL_STRUCTURE_PATH", str(path))
        engine = Engine.from_env()
        assert engine.registry.names() == ["Client"]
        engine.close()

    def test_missing_structure(self, local_env):
        with pytest.raises(ConfigurationError, match="MODEL_STRUCTURE_PATH"):
            Engine.from_env()

    def test_notifier_passed_through(self, local_env):
        notifier = CollectingNotifier()
        engine = Engine.from_env(STRUCTURE, notifier=notifier)
        engine.query("Client").create({"name": "Acme"})
        assert notifier.events == [("database", {"action": "create", "model": "Client"})]
        engine.close()

    def test_default_limit_from_env(self, local_env, monkeypatch):
        monkeypatch.setenv("QUERY_DEFAULT_LIMIT", "2")
        engine = Engine.from_env(STRUCTURE)
        engine.query("Client").create_many([{"name": f"C{i}"} for i in range(3)])
        assert len(engine.query("Client").find()) == 2
        engine.close()


class TestEngineQuery:
    """Engine.query."""

    def test_unknown_model(self, local_engine):
        with pytest.raises(ConfigurationError) as exc_info:
            local_engine.query("Nope")
        assert exc_info.value.details["model"] == "Nope"

    def test_fresh_spec_per_call(self, local_engine):
        first = local_engine.query("Invoice").where("status", "paid")
        second = local_engine.query("Invoice")
        assert first is not second
        assert second.where_clause == {}

    def test_access_role_and_route(self, local_engine):
        query = local_engine.query("Invoice", access_role="admin", route="reports")
        assert query.context.access_role == "admin"
        assert query.context.route == "reports"


class TestSetupLogging:
    """Root logger configuration."""

    def test_text_format(self):
        setup_logging(EngineConfig(observability=ObservabilityConfig(log_level="DEBUG")))
        root = logging.getLogger()
        assert root.level == logging.DEBUG
        assert len(root.handlers) == 1
        assert not isinstance(root.handlers[0].formatter, json_log_formatter.JSONFormatter)

    def test_json_format(self):
        setup_logging(EngineConfig(observability=ObservabilityConfig(log_format="json")))
        root = logging.getLogger()
        assert root.level == logging.INFO
        assert isinstance(root.handlers[0].formatter, json_log_formatter.JSONFormatter)

    def test_driver_noise_reduced(self):
        setup_logging(EngineConfig())
        assert logging.getLogger("pymongo").level == logging.WARNING

    def test_unknown_level_falls_back_to_info(self):
        setup_logging(EngineConfig(observability=ObservabilityConfig(log_level="chatty")))
        assert logging.getLogger().level == logging.INFO

    def test_driver_debug_follows_engine_debug(self):
        setup_logging(EngineConfig(observability=ObservabilityConfig(log_level="DEBUG")))
        assert logging.getLogger("pymysql").level == logging.DEBUG
        setup_logging(EngineConfig())
        assert logging.getLogger("pymysql").level == logging.WARNING


def _record(**fields):
    record = logging.LogRecord(
        "datastore.model_engine.backends.sql", logging.INFO, __file__, 1, "Query ran", None, None
    )
    for name, value in fields.items():
        setattr(record, name, value)
    return record


class TestEngineLogFields:
    """Engine fields attached through extra= reach both formats."""

    def test_text_line_includes_engine_fields(self):
        setup_logging(EngineConfig())
        handler = logging.getLogger().handlers[0]
        record = _record(model="Invoice", backend="mysql", operation="find")
        assert handler.filter(record)
        line = handler.format(record)
        assert "[mysql Invoice find] Query ran" in line
        assert "INFO" in line

    def test_text_line_fills_missing_fields(self):
        setup_logging(EngineConfig())
        handler = logging.getLogger().handlers[0]
        record = _record()
        assert handler.filter(record)
        assert "[- - -] Query ran" in handler.format(record)

    def test_json_line_includes_engine_fields(self):
        setup_logging(EngineConfig(observability=ObservabilityConfig(log_format="json")))
        handler = logging.getLogger().handlers[0]
        payload = json.loads(handler.format(_record(model="Invoice", action="create")))
        assert payload["message"] == "Query ran"
        assert payload["logger"] == "datastore.model_engine.backends.sql"
        assert payload["level"] == "INFO"
        assert payload["model"] == "Invoice"
        assert payload["action"] == "create"
        assert payload["backend"] is None


class TestEngineCollaborators:
    """Injected trigger registry and notifier are kept as given."""

    def test_empty_trigger_registry_kept(self, registry, local_backend):
        triggers = TriggerRegistry()
        engine = Engine(EngineConfig(), registry, backend=local_backend, triggers=triggers)
        assert engine.triggers is triggers

    def test_hook_registered_after_construction_fires(self, registry, local_backend):
        triggers = TriggerRegistry()
        engine = Engine(EngineConfig(), registry, backend=local_backend, triggers=triggers)
        triggers.register("Invoice", TriggerAction.BEFORE_CREATE, lambda request, context: False)
        assert engine.query("Invoice").create({"number": "INV-1"}) is None
        assert engine.query("Invoice").count() == 0

    def test_empty_notifier_kept(self, registry, local_backend):
        notifier = CollectingNotifier()
        engine = Engine(EngineConfig(), registry, backend=local_backend, notifier=notifier)
        assert engine.notifier is notifier

    def test_defaults_when_omitted(self, registry, local_backend):
        engine = Engine(EngineConfig(), registry, backend=local_backend)
        assert isinstance(engine.triggers, TriggerRegistry)
        assert isinstance(engine.notifier, NullNotifier)
