"""
E2E tests against live MongoDB, MySQL and PostgreSQL servers.

Run with:
    MODEL_ENGINE_E2E_TESTS=1 pytest tests/e2e
"""

import os
from datetime import datetime

import pytest

from datastore.model_engine.errors import EmptyFilterError

pytestmark = pytest.mark.skipif(
    os.environ.get("MODEL_ENGINE_E2E_TESTS", "0") != "1",
    reason="E2E tests disabled. Set MODEL_ENGINE_E2E_TESTS=1 to enable.",
)


class TestLiveRoundTrip:
    """Writes and reads through real drivers."""

    def test_create_and_find(self, live_engine):
        created = live_engine.query("Invoice").create(
            {
                "number": "INV-1",
                "amount": 12.5,
                "quantity": 3,
                "paid": True,
                "issuedAt": datetime(2024, 1, 5, 10, 30),
                "tags": ["a"],
                "meta": {"k": "v"},
            }
        )
        fetched = live_engine.query("Invoice").where("id", str(created["id"])).find_one()
        assert fetched["amount"] == 12.5
        assert fetched["paid"] is True
        assert fetched["issuedAt"] == datetime(2024, 1, 5, 10, 30)
        assert fetched["tags"] == ["a"]
        assert fetched["meta"] == {"k": "v"}

    def test_regex_and_pagination(self, live_engine):
        live_engine.query("Invoice").create_many(
            [{"number": f"inv-{i:02d}", "quantity": i} for i in range(12)]
        )
        query = live_engine.query("Invoice").where("number", {"matchesRegex": "^INV", "options": "i"})
        page = query.order_by("quantity").page(2).paginate()
        assert page["total"] == 12
        assert (page["from"], page["to"]) == (11, 12)

    def test_relationship_and_group(self, live_engine):
        acme = live_engine.query("Client").create({"name": "Acme"})
        live_engine.query("Invoice").create_many(
            [
                {"number": "A", "status": "paid", "clientId": str(acme["id"])},
                {"number": "B", "status": "draft", "clientId": str(acme["id"])},
                {"number": "C", "status": "draft"},
            ]
        )
        assert live_engine.query("Invoice").count({"client": {"name": "Acme"}}) == 2
        rows = live_engine.query("Invoice").group_by("status").order_by("status").find()
        assert [(r["status"], r["count"]) for r in rows] == [("draft", 2), ("paid", 1)]

    def test_empty_delete_refused(self, live_engine):
        with pytest.raises(EmptyFilterError):
            live_engine.query("Invoice").delete()
