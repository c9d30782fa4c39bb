"""
Unit tests for the model registry.

Tests cover:
- Building models from a structure
- Relationship wiring in both directions
- Registry freezing and fingerprints
- Duplicate and malformed declarations
- Loading structures from YAML and JSON
"""

import json

import pytest

from datastore.model_engine.errors import (
    ConfigurationError,
    DuplicateModelError,
    RegistryFrozenError,
)
from datastore.model_engine.schema import (
    FieldKind,
    Model,
    ModelRegistry,
    build_models,
    load_registry,
    parse_field,
    parse_yaml,
)
from tests.conftest import STRUCTURE


class TestBuildModels:
    """Tests for build_models."""

    def test_models_named_from_collections(self, registry):
        """Collections become singular PascalCase models."""
        assert registry.names() == ["Client", "Invoice"]
        assert registry.get("Invoice").collection == "invoices"

    def test_lookup_by_collection(self, registry):
        assert registry.get("invoices") is registry.get("Invoice")
        assert registry.get_by_collection("clients").name == "Client"

    def test_field_kinds(self, registry):
        invoice = registry.get("Invoice")
        assert invoice.fields["amount"].kind == FieldKind.FLOAT
        assert invoice.fields["quantity"].kind == FieldKind.NUMBER
        assert invoice.fields["issuedAt"].kind == FieldKind.DATE
        assert invoice.fields["number"].kind == FieldKind.STRING

    def test_derived_field_lists(self, registry):
        invoice = registry.get("Invoice")
        assert invoice.date_fields == ("issuedAt",)
        assert invoice.option_fields == ("status",)
        assert invoice.parent_keys == ("clientId", "billingClientId")
        assert registry.get("Client").protected_fields == ("password",)

    def test_primary_name(self, registry):
        """The name field labels a model when present."""
        assert registry.get("Client").primary_name == "name"
        assert registry.get("Invoice").primary_name == "number"

    def test_tenant_scoped(self, registry):
        assert registry.get("Invoice").tenant_scoped is True

    def test_tenant_key_disabled(self):
        registry = build_models(STRUCTURE, tenant_key=None)
        assert registry.get("Invoice").tenant_scoped is False

    def test_storage_columns_start_with_primary_key(self, registry):
        columns = registry.get("Client").storage_columns()
        assert columns == ("_id", "name", "email", "password", "tenantId")

    def test_id_is_identifier(self, registry):
        invoice = registry.get("Invoice")
        assert invoice.is_identifier_field("id")
        assert invoice.is_identifier_field("clientId")
        assert not invoice.is_identifier_field("number")


class TestRelationships:
    """Tests for relationship wiring."""

    def test_parent_relationship(self, registry):
        rel = registry.get("Invoice").relationship("client")
        assert rel is not None
        assert rel.model == "Client"
        assert rel.local_key == "clientId"
        assert rel.foreign_key == "_id"
        assert rel.many is False

    def test_child_relationship(self, registry):
        rel = registry.get("Client").relationship("invoices")
        assert rel is not None
        assert rel.model == "Invoice"
        assert rel.local_key == "_id"
        assert rel.foreign_key == "clientId"
        assert rel.many is True

    def test_second_edge_into_same_parent(self, registry):
        """A second foreign key gets its own aliases on both sides."""
        assert registry.get("Invoice").relationship("billingClient").local_key == "billingClientId"
        assert registry.get("Client").relationship("billingClientInvoices").foreign_key == "billingClientId"

    def test_declared_field_is_not_relationship(self, registry):
        assert registry.get("Invoice").relationship("clientId") is None

    def test_unknown_collection_disables_relationship(self):
        """A foreign key to an unknown collection is not fatal."""
        registry = build_models({"invoices": {"vendorId": {"type": "id", "foreignKey": "vendors.id"}}})
        invoice = registry.get("Invoice")
        assert invoice.relationship("vendor") is None
        assert invoice.fields["vendorId"].foreign_key.related_model == "Vendor"


class TestRegistryLifecycle:
    """Tests for freezing and fingerprints."""

    def test_build_freezes(self, registry):
        assert registry.frozen
        assert registry.fingerprint.startswith("sha256:")

    def test_register_after_freeze_raises(self, registry):
        with pytest.raises(RegistryFrozenError):
            registry.register(Model(name="Vendor", collection="vendors"))

    def test_fingerprint_is_stable(self):
        assert build_models(STRUCTURE).fingerprint == build_models(STRUCTURE).fingerprint

    def test_fingerprint_changes_with_models(self, registry):
        changed = dict(STRUCTURE, vendors={"name": "string"})
        assert build_models(changed).fingerprint != registry.fingerprint

    def test_unfrozen_build(self):
        registry = build_models(STRUCTURE, freeze=False)
        assert not registry.frozen
        assert registry.fingerprint is None

    def test_duplicate_collection_raises(self):
        """Two spellings of the same collection collide."""
        with pytest.raises(DuplicateModelError):
            build_models({"client": {"name": "string"}, "clients": {"name": "string"}})

    def test_empty_registry(self):
        registry = ModelRegistry()
        assert len(registry) == 0
        assert registry.get("Client") is None
        with pytest.raises(ConfigurationError):
            registry.require("Client")


class TestParseField:
    """Tests for field declarations."""

    def test_shorthand(self):
        assert parse_field("Client", "age", "int").kind == FieldKind.NUMBER

    def test_unknown_type_raises(self):
        with pytest.raises(ConfigurationError, match="Invalid field type"):
            parse_field("Client", "age", {"type": "complex"})

    def test_options_as_map(self):
        field_def = parse_field("Invoice", "status", {"options": {"d": "Draft", "p": "Paid"}})
        assert [o.label for o in field_def.options] == ["Draft", "Paid"]

    def test_bad_foreign_key_raises(self):
        with pytest.raises(ConfigurationError, match="foreignKey"):
            parse_field("Invoice", "clientId", {"type": "id", "foreignKey": 7})

    def test_defaults(self):
        assert parse_field("Invoice", "paid", "bool").default_for_input() is False
        assert parse_field("Invoice", "tags", "array").default_for_input() == []
        assert parse_field("Invoice", "status", {"type": "string", "default": "draft"}).default_for_input() == "draft"


class TestLoading:
    """Tests for structure files."""

    def test_parse_yaml(self):
        structure = parse_yaml("clients:\n  name: {type: string, required: true}\n")
        assert structure == {"clients": {"name": {"type": "string", "required": True}}}

    def test_collections_wrapper(self):
        assert parse_yaml("collections:\n  clients:\n    name: string\n") == {"clients": {"name": "string"}}

    def test_load_json_file(self, tmp_path):
        path = tmp_path / "models.json"
        path.write_text(json.dumps(STRUCTURE))
        registry = load_registry(str(path))
        assert registry.frozen
        assert "Invoice" in registry

    def test_missing_file_raises(self, tmp_path):
        with pytest.raises(ConfigurationError, match="not found"):
            load_registry(str(tmp_path / "missing.yaml"))
