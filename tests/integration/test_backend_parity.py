"""
Integration tests run against every backend.

Each test runs once per backend (mongomock, SQLite through the relational
backend, and the local store), so the same operations must give the same
results everywhere.

Tests cover:
- Create/find round trips and identity stamping
- Filters, ordering, paging
- Aggregates and grouping
- Updates and deletes
"""

from datetime import datetime

import pytest

from datastore.model_engine.errors import EmptyFilterError


def seed(engine):
    """Three invoices for one client."""
    client = engine.query("Client").create({"name": "Acme", "email": "ap@acme.test", "password": "s3cret"})
    rows = [
        {"number": "INV-1", "status": "draft", "amount": 10.0, "quantity": 1, "paid": False},
        {"number": "INV-2", "status": "paid", "amount": 20.0, "quantity": 2, "paid": True},
        {"number": "inv-3", "status": "draft", "amount": 30.0, "quantity": 3, "paid": False},
    ]
    invoices = engine.query("Invoice").create_many([{**r, "clientId": str(client["id"])} for r in rows])
    return client, invoices


class TestCreateAndFind:
    """Round trips and output shape."""

    def test_round_trip(self, engine):
        created = engine.query("Invoice").create(
            {
                "number": "INV-9",
                "amount": 12.5,
                "quantity": 3,
                "paid": True,
                "issuedAt": datetime(2024, 1, 5, 10, 30),
                "tags": ["a", "b"],
                "meta": {"source": "import"},
            }
        )
        fetched = engine.query("Invoice").where("id", str(created["id"])).find_one()
        for key in ("number", "amount", "quantity", "paid", "issuedAt", "tags", "meta"):
            assert fetched[key] == created[key]
        assert fetched["issuedAt"] == datetime(2024, 1, 5, 10, 30)
        assert fetched["tags"] == ["a", "b"]
        assert fetched["meta"] == {"source": "import"}

    def test_identity_stamped(self, engine):
        created = engine.query("Invoice").create({"number": "INV-1"})
        assert created["id"] == created["_id"]
        assert created["_collection"] == "invoices"
        assert created["_model"] == "Invoice"

    def test_defaults_applied(self, engine):
        created = engine.query("Invoice").create({"number": "INV-1"})
        assert created["paid"] is False
        assert created["tags"] == []
        assert created["status"] is None

    def test_given_id_kept(self, engine):
        created = engine.query("Client").create({"id": "client-1", "name": "Acme"})
        assert str(created["id"]) == "client-1"
        assert engine.query("Client").where("id", "client-1").exist()

    def test_protected_field_redacted(self, engine):
        created = engine.query("Client").create({"name": "Acme", "password": "s3cret"})
        assert "password" not in created
        found = engine.query("Client").find()
        assert all("password" not in row for row in found)

    def test_create_many_keeps_order(self, engine):
        _, invoices = seed(engine)
        assert [i["number"] for i in invoices] == ["INV-1", "INV-2", "inv-3"]

    def test_default_limit(self, engine):
        engine.query("Invoice").create_many([{"number": f"N-{i}"} for i in range(12)])
        assert len(engine.query("Invoice").find()) == 10
        assert len(engine.query("Invoice").take(0).find()) == 12

    def test_value_and_first(self, engine):
        seed(engine)
        assert engine.query("Invoice").order_by("amount", "DESC").value("number") == "inv-3"
        assert engine.query("Invoice").first({"number": "missing"}) is None


class TestFilters:
    """Same filter, same rows, on every backend."""

    def numbers(self, query):
        return sorted(r["number"] for r in query.find())

    def test_equality(self, engine):
        seed(engine)
        assert self.numbers(engine.query("Invoice").where("status", "draft")) == ["INV-1", "inv-3"]

    def test_bool(self, engine):
        seed(engine)
        assert self.numbers(engine.query("Invoice").where("paid", True)) == ["INV-2"]

    def test_ordering_operators(self, engine):
        seed(engine)
        query = engine.query("Invoice").where("amount", {"greaterThan": 10, "lessThanOrEqualTo": 30})
        assert self.numbers(query) == ["INV-2", "inv-3"]

    def test_negated_operator(self, engine):
        seed(engine)
        assert self.numbers(engine.query("Invoice").where("amount", {"notGreaterThan": 15})) == ["INV-1"]

    def test_in_and_not_in(self, engine):
        seed(engine)
        assert self.numbers(engine.query("Invoice").where("number", {"in": ["INV-1", "INV-2"]})) == [
            "INV-1",
            "INV-2",
        ]
        assert self.numbers(engine.query("Invoice").where("number", {"notIn": ["INV-1"]})) == ["INV-2", "inv-3"]

    def test_id_in(self, engine):
        _, invoices = seed(engine)
        ids = [str(invoices[0]["id"]), str(invoices[2]["id"])]
        assert self.numbers(engine.query("Invoice").where("id", {"in": ids})) == ["INV-1", "inv-3"]

    def test_regex_case_insensitive(self, engine):
        seed(engine)
        query = engine.query("Invoice").where("number", {"matchesRegex": "^inv", "options": "i"})
        assert self.numbers(query) == ["INV-1", "INV-2", "inv-3"]
        assert self.numbers(engine.query("Invoice").where("number", {"matchesRegex": "^inv"})) == ["inv-3"]

    def test_or(self, engine):
        seed(engine)
        query = engine.query("Invoice").where("OR", [{"status": "paid"}, {"amount": {"greaterThan": 25}}])
        assert self.numbers(query) == ["INV-2", "inv-3"]

    def test_nor(self, engine):
        seed(engine)
        assert self.numbers(engine.query("Invoice").where("NOR", [{"status": "paid"}])) == ["INV-1", "inv-3"]

    def test_null_sentinel(self, engine):
        engine.query("Invoice").create_many([{"number": "A", "status": "draft"}, {"number": "B"}])
        assert self.numbers(engine.query("Invoice").where("status", "NULL")) == ["B"]
        assert self.numbers(engine.query("Invoice").where("status", {"notEqualTo": "null"})) == ["A"]

    def test_exists(self, engine):
        engine.query("Invoice").create_many([{"number": "A", "status": "draft"}, {"number": "B"}])
        assert self.numbers(engine.query("Invoice").where("status", {"exists": True})) == ["A"]
        assert self.numbers(engine.query("Invoice").where("status", {"exists": False})) == ["B"]

    def test_parent_relationship(self, engine):
        seed(engine)
        other = engine.query("Client").create({"name": "Globex"})
        engine.query("Invoice").create({"number": "G-1", "clientId": str(other["id"])})
        query = engine.query("Invoice").where("client", {"name": "Globex"})
        assert self.numbers(query) == ["G-1"]

    def test_child_relationship(self, engine):
        seed(engine)
        engine.query("Client").create({"name": "Globex"})
        clients = engine.query("Client").where("invoices", {"status": "paid"}).find()
        assert [c["name"] for c in clients] == ["Acme"]

    def test_relationship_without_matches(self, engine):
        seed(engine)
        assert engine.query("Invoice").where("client", {"name": "Nobody"}).find() == []


class TestOrderingAndPaging:
    """Ordering, skip and pagination."""

    def test_order_and_window(self, engine):
        seed(engine)
        rows = engine.query("Invoice").order_by("quantity", "DESC").take(2).skip(1).find()
        assert [r["number"] for r in rows] == ["INV-2", "INV-1"]

    def test_order_by_public_id(self, engine):
        engine.query("Client").create_many(
            [{"id": "client-b", "name": "B"}, {"id": "client-c", "name": "C"}, {"id": "client-a", "name": "A"}]
        )
        ascending = engine.query("Client").order_by("id").find()
        descending = engine.query("Client").order_by("id", "DESC").find()
        assert [r["name"] for r in ascending] == ["A", "B", "C"]
        assert [r["name"] for r in descending] == ["C", "B", "A"]

    def test_order_by_id_and_storage_key_agree(self, engine):
        engine.query("Client").create_many([{"id": "client-b", "name": "B"}, {"id": "client-a", "name": "A"}])
        by_public = engine.query("Client").order_by("id", "DESC").find()
        by_storage = engine.query("Client").order_by("_id", "DESC").find()
        assert [r["name"] for r in by_public] == [r["name"] for r in by_storage] == ["B", "A"]

    def test_skip_without_limit(self, engine):
        seed(engine)
        rows = engine.query("Invoice").order_by("quantity").take(0).skip(1).find()
        assert [r["quantity"] for r in rows] == [2, 3]

    def test_pagination(self, engine):
        engine.query("Invoice").create_many([{"number": f"N-{i:02d}", "quantity": i} for i in range(25)])
        page = engine.query("Invoice").order_by("quantity").page(2).paginate()
        assert page["total"] == 25
        assert page["perPage"] == 10
        assert page["currentPage"] == 2
        assert page["lastPage"] == 3
        assert page["from"] == 11
        assert page["to"] == 20
        assert [r["quantity"] for r in page["data"]] == list(range(10, 20))

    def test_last_page(self, engine):
        engine.query("Invoice").create_many([{"number": f"N-{i:02d}", "quantity": i} for i in range(25)])
        page = engine.query("Invoice").order_by("quantity").page(3).paginate()
        assert (page["from"], page["to"]) == (21, 25)
        assert len(page["data"]) == 5

    def test_page_past_the_end(self, engine):
        seed(engine)
        page = engine.query("Invoice").page(5).paginate()
        assert (page["from"], page["to"], page["data"]) == (0, 0, [])

    def test_empty_pagination(self, engine):
        page = engine.query("Invoice").paginate()
        assert page["total"] == 0
        assert page["lastPage"] == 0
        assert page["data"] == []


class TestAggregates:
    """count/sum/average/max/min/summary and grouping."""

    def test_count(self, engine):
        seed(engine)
        assert engine.query("Invoice").count() == 3
        assert engine.query("Invoice").count({"status": "draft"}) == 2

    def test_distinct_count(self, engine):
        seed(engine)
        assert engine.query("Invoice").distinct("status").count() == 2

    def test_numeric_aggregates(self, engine):
        seed(engine)
        assert engine.query("Invoice").sum("amount") == 60.0
        assert engine.query("Invoice").average("amount") == 20.0
        assert engine.query("Invoice").max("amount") == 30.0
        assert engine.query("Invoice").min("amount", {"status": "paid"}) == 20.0

    def test_aggregates_without_rows(self, engine):
        assert engine.query("Invoice").sum("amount") == 0.0
        assert engine.query("Invoice").average("amount") == 0.0
        assert engine.query("Invoice").max("amount") is None

    def test_summary(self, engine):
        seed(engine)
        summary = engine.query("Invoice").summary({"status": "draft"}, key="amount")
        assert summary["count"] == 2
        assert summary["sum"] == 40.0
        assert summary["max"] == 30.0
        assert summary["min"] == 10.0

    def test_group_by(self, engine):
        seed(engine)
        rows = engine.query("Invoice").group_by("status").order_by("status").find()
        assert [(r["status"], r["count"]) for r in rows] == [("draft", 2), ("paid", 1)]
        assert all(r["_model"] == "Invoice" and "id" not in r for r in rows)


class TestMutations:
    """update/update_many/delete."""

    def test_update_returns_stored_record(self, engine):
        _, invoices = seed(engine)
        updated = engine.query("Invoice").where("id", str(invoices[0]["id"])).update({"status": "paid"})
        assert updated["status"] == "paid"
        assert updated["id"] == invoices[0]["id"]
        assert engine.query("Invoice").count({"status": "paid"}) == 2

    def test_update_touches_one_record(self, engine):
        seed(engine)
        engine.query("Invoice").where("status", "draft").update({"quantity": 9})
        assert engine.query("Invoice").count({"quantity": 9}) == 1

    def test_update_without_match(self, engine):
        seed(engine)
        assert engine.query("Invoice").where("number", "missing").update({"status": "paid"}) is None

    def test_update_ignores_identity(self, engine):
        _, invoices = seed(engine)
        updated = engine.query("Invoice").update({"id": "other", "number": "X"}, {"number": "INV-1"})
        assert updated["id"] == invoices[0]["id"]
        assert updated["number"] == "X"

    def test_update_many(self, engine):
        seed(engine)
        updated = engine.query("Invoice").update_many({"paid": True}, {"status": "draft"})
        assert sorted(r["number"] for r in updated) == ["INV-1", "inv-3"]
        assert engine.query("Invoice").count({"paid": True}) == 3

    def test_delete(self, engine):
        seed(engine)
        assert engine.query("Invoice").delete({"status": "draft"}) == 2
        assert engine.query("Invoice").count() == 1

    def test_delete_without_filter_refused(self, engine):
        seed(engine)
        with pytest.raises(EmptyFilterError):
            engine.query("Invoice").delete()
        with pytest.raises(EmptyFilterError):
            engine.query("Invoice").delete({"OR": []})
        assert engine.query("Invoice").count() == 3

    def test_delete_by_relationship(self, engine):
        seed(engine)
        assert engine.query("Invoice").delete({"client": {"name": "Acme"}}) == 3

    def test_change_notifications(self, engine, notifier):
        seed(engine)
        engine.query("Invoice").where("number", "INV-1").update({"status": "paid"})
        engine.query("Invoice").delete({"number": "INV-2"})
        actions = [payload["action"] for event, payload in notifier.events if event == "database"]
        assert actions == ["create", "create", "update", "delete"]
