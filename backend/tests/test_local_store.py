# Overview: Pytest coverage for the local store, its transactions and rekeying.

import pytest
from stockroom.models import AuditEvent, Category, Movement, Product
from stockroom.services import local_store
from stockroom.services.concurrency import KeyedLock
from stockroom.time_utils import utcnow


def _product(product_id="temp_p1", **extra):
    now = utcnow()
    record = {
        "id": product_id, "sku": "000900", "name": "Lamp", "category": "Geral", "unit": "un",
        "quantity": 2, "min_stock": 0, "is_active": True, "created_at": now, "updated_at": now,
    }
    record.update(extra)
    return local_store.put("products", record)


class TestCollections:
    def test_put_get_and_ordering(self, db_session):
        local_store.put("categories", {"id": "c2", "name": "Zinc"})
        local_store.put("categories", {"id": "c1", "name": "Acid"})

        assert local_store.get("categories", "c2")["name"] == "Zinc"
        assert [c["name"] for c in local_store.get_all("categories")] == ["Acid", "Zinc"]

    def test_put_replaces_by_key(self, db_session):
        local_store.put("categories", {"id": "c1", "name": "Old"})
        local_store.put("categories", {"id": "c1", "name": "New", "unknown": 1})
        assert local_store.get_all("categories") == [{"id": "c1", "name": "New"}]

    def test_replace_all(self, db_session):
        local_store.put("categories", {"id": "c1", "name": "Gone"})
        assert local_store.replace_all("categories", [{"id": "c9", "name": "Fresh"}]) == 1
        assert [c["id"] for c in local_store.get_all("categories")] == ["c9"]

    def test_unknown_collection(self, db_session):
        with pytest.raises(ValueError):
            local_store.get_all("invoices")

    def test_to_remote_strips_local_fields(self, db_session):
        record = _product().to_dict()
        assert "quantity" not in local_store.to_remote("products", record)
        assert "id" in local_store.to_remote("products", record)


class TestUnitOfWork:
    def test_error_rolls_back_everything(self, db_session):
        with pytest.raises(RuntimeError):
            with local_store.unit_of_work():
                local_store.put("categories", {"id": "c1", "name": "Half"})
                with local_store.unit_of_work():
                    local_store.put("categories", {"id": "c2", "name": "Applied"})
                raise RuntimeError("crash before commit")

        assert local_store.get_all("categories") == []

    def test_nested_scope_commits_with_outer(self, db_session):
        with local_store.unit_of_work():
            with local_store.unit_of_work():
                local_store.put("categories", {"id": "c1", "name": "Inner"})
            assert local_store.in_unit_of_work()
        assert not local_store.in_unit_of_work()
        db_session.expunge_all()
        assert db_session.get(Category, "c1").name == "Inner"


class TestRekey:
    def test_moves_record_and_references(self, db_session):
        product = _product()
        local_store.put("movements", {
            "id": "temp_m1", "code": "MOV-OFF-1", "product_id": "temp_p1", "kind": "receipt",
            "quantity": 2, "quantity_before": 0, "quantity_after": 2, "occurred_at": utcnow(),
            "actor": "tester", "status": "pending_sync", "created_at": utcnow(),
        })
        db_session.add(AuditEvent(
            collection="products", record_id="temp_p1", operation="product_registered",
            actor="tester", occurred_at=utcnow(),
        ))
        db_session.commit()

        local_store.rekey("products", "temp_p1", "prod-1")

        assert db_session.get(Product, "temp_p1") is None
        assert product.id == "prod-1"
        assert db_session.get(Movement, "temp_m1").product_id == "prod-1"
        assert db_session.query(AuditEvent).filter_by(record_id="prod-1").count() == 1

    def test_merges_into_existing_permanent_record(self, db_session):
        _product("temp_p1", sku="000901")
        _product("prod-1", sku="000902", name="Pulled lamp")

        local_store.rekey("products", "temp_p1", "prod-1")

        assert db_session.get(Product, "temp_p1") is None
        assert db_session.get(Product, "prod-1").name == "Pulled lamp"

    def test_temp_ids(self, db_session):
        assert local_store.is_temp_id(local_store.new_temp_id())
        assert not local_store.is_temp_id("prod-1")
        assert not local_store.is_temp_id(None)


class TestKeyedLock:
    def test_rename_carries_lock(self):
        locks = KeyedLock()
        lock = locks.get("temp_1")
        locks.rename("temp_1", "prod-1")
        assert locks.get("prod-1") is lock

    def test_rename_keeps_existing_target(self):
        locks = KeyedLock()
        target = locks.get("prod-1")
        locks.get("temp_1")
        locks.rename("temp_1", "prod-1")
        assert locks.get("prod-1") is target
