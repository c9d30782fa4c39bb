"""
Integration tests for bulk import and tenant scoping.

Tests cover:
- import_records create/update/ignore accounting
- Tenant stamping on create and scoping of reads and mutations
- Tenant resolution from the token before the request
"""

import pytest

from datastore.model_engine.context import RequestContext, TokenPayload
from datastore.model_engine.errors import EmptyFilterError


class TestImport:
    """import_records on every backend."""

    def test_first_import_creates(self, engine):
        result = engine.query("Invoice").import_records(
            [{"number": "INV-1", "amount": 10.0}, {"number": "INV-2", "amount": 20.0}],
            unique_keys=["number"],
        )
        assert result["message"] == "SUCCESS"
        assert result["status"] is True
        assert (result["imported"], result["updated"], result["ignored"], result["deleted"]) == (2, 0, 0, 0)
        assert engine.query("Invoice").count() == 2

    def test_reimport_updates(self, engine):
        engine.query("Invoice").import_records([{"number": "INV-1", "amount": 10.0}], unique_keys=["number"])
        result = engine.query("Invoice").import_records(
            [{"number": "INV-1", "amount": 99.0}], unique_keys=["number"]
        )
        assert (result["imported"], result["updated"]) == (0, 1)
        assert result["message"] == "SUCCESS"
        assert engine.query("Invoice").count() == 1
        assert engine.query("Invoice").value("amount", {"number": "INV-1"}) == 99.0

    def test_blank_unique_key_ignored(self, engine):
        result = engine.query("Invoice").import_records(
            [{"number": "", "amount": 1.0}, {"number": "INV-1"}], unique_keys=["number"]
        )
        assert result["ignored"] == 1
        assert result["imported"] == 1

    def test_nothing_imported_fails(self, engine):
        result = engine.query("Invoice").import_records([{"number": None}], unique_keys=["number"])
        assert result["message"] == "FAIL"
        assert result["status"] is False
        assert result["data"] == []

    def test_import_matches_on_id(self, engine):
        created = engine.query("Invoice").create({"number": "INV-1"})
        result = engine.query("Invoice").import_records([{"id": str(created["id"]), "number": "INV-1b"}])
        assert result["updated"] == 1
        assert engine.query("Invoice").value("number", {"id": str(created["id"])}) == "INV-1b"

    def test_import_redacts_protected_fields(self, engine):
        result = engine.query("Client").import_records([{"name": "Acme", "password": "s3cret"}])
        assert result["imported"] == 1
        assert "password" not in result["data"][0]

    def test_import_notifies(self, engine, notifier):
        engine.query("Invoice").import_records([{"number": "INV-1"}])
        assert notifier.events[-1] == ("database", {"action": "import", "model": "Invoice"})


class TestTenancy:
    """Tenant scoping with tenancy enabled."""

    def test_create_stamps_tenant(self, tenant_engine):
        created = tenant_engine.query("Invoice", RequestContext(tenant_id="t1")).create({"number": "INV-1"})
        assert created["tenantId"] == "t1"

    def test_caller_cannot_choose_tenant(self, tenant_engine):
        created = tenant_engine.query("Invoice", RequestContext(tenant_id="t1")).create(
            {"number": "INV-1", "tenantId": "t2"}
        )
        assert created["tenantId"] == "t1"

    def test_reads_are_scoped(self, tenant_engine):
        tenant_engine.query("Invoice", RequestContext(tenant_id="t1")).create({"number": "INV-1"})
        tenant_engine.query("Invoice", RequestContext(tenant_id="t2")).create({"number": "INV-2"})
        t1 = tenant_engine.query("Invoice", RequestContext(tenant_id="t1")).find()
        assert [r["number"] for r in t1] == ["INV-1"]
        assert tenant_engine.query("Invoice", RequestContext(tenant_id="t3")).count() == 0

    def test_mutations_are_scoped(self, tenant_engine):
        tenant_engine.query("Invoice", RequestContext(tenant_id="t1")).create({"number": "INV-1"})
        other = RequestContext(tenant_id="t2")
        assert tenant_engine.query("Invoice", other).update({"status": "paid"}, {"number": "INV-1"}) is None
        assert tenant_engine.query("Invoice", other).delete({"number": "INV-1"}) == 0
        assert tenant_engine.query("Invoice", RequestContext(tenant_id="t1")).count() == 1

    def test_update_cannot_move_tenant(self, tenant_engine):
        t1 = RequestContext(tenant_id="t1")
        tenant_engine.query("Invoice", t1).create({"number": "INV-1"})
        updated = tenant_engine.query("Invoice", t1).update({"tenantId": "t2"}, {"number": "INV-1"})
        assert updated["tenantId"] == "t1"

    def test_empty_delete_refused_despite_tenant_scope(self, tenant_engine):
        with pytest.raises(EmptyFilterError):
            tenant_engine.query("Invoice", RequestContext(tenant_id="t1")).delete()

    def test_token_tenant_wins(self, tenant_engine):
        request = RequestContext(token=TokenPayload(user_id="u1", tenant_id="t9"), tenant_id="t1")
        created = tenant_engine.query("Invoice", request).create({"number": "INV-1"})
        assert created["tenantId"] == "t9"

    def test_fallback_tenant(self, tenant_engine):
        created = tenant_engine.query("Invoice", RequestContext()).create({"number": "INV-1"})
        assert created["tenantId"] == "000"

    def test_no_request_is_unscoped(self, tenant_engine):
        tenant_engine.query("Invoice", RequestContext(tenant_id="t1")).create({"number": "INV-1"})
        tenant_engine.query("Invoice", RequestContext(tenant_id="t2")).create({"number": "INV-2"})
        assert tenant_engine.query("Invoice").count() == 2

    def test_relationships_stay_in_tenant(self, tenant_engine):
        t1 = RequestContext(tenant_id="t1")
        t2 = RequestContext(tenant_id="t2")
        acme = tenant_engine.query("Client", t1).create({"name": "Acme"})
        tenant_engine.query("Client", t2).create({"name": "Acme"})
        tenant_engine.query("Invoice", t1).create({"number": "INV-1", "clientId": str(acme["id"])})
        rows = tenant_engine.query("Invoice", t2).where("client", {"name": "Acme"}).find()
        assert rows == []
