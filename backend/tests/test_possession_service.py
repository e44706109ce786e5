# Overview: Pytest coverage for possession derived from the ledger.

from datetime import timedelta

import pytest
from stockroom.models import MovementKind
from stockroom.services import movement_service
from stockroom.services.possession_service import possession_delta, possession_for, possession_summary
from stockroom.services.products_service import register_product
from stockroom.time_utils import utcnow


class TestPossessionDelta:
    def test_directions(self):
        assert possession_delta(MovementKind.WITHDRAWAL) == 1
        assert possession_delta(MovementKind.RECEIPT) == -1
        assert possession_delta(MovementKind.WRITE_OFF) == -1
        assert possession_delta(MovementKind.SUPPLIER_RETURN) == 0

    def test_unknown_kind(self):
        with pytest.raises(ValueError):
            possession_delta("loan")


class TestPossessionFor:
    def test_nothing_held(self, db_session, collaborator_a):
        assert possession_for("A001") == []

    def test_partial_return_keeps_first_withdrawal_date(self, db_session, product, collaborator_a):
        taken_at = utcnow() - timedelta(days=3)
        movement_service.apply_movement(
            product.id, "withdrawal", 4, actor="tester", collaborator_code="A001", occurred_at=taken_at
        )
        movement_service.apply_movement(product.id, "receipt", 1, actor="tester", collaborator_code="A001")

        [item] = possession_for("A001")
        assert item.quantity == 3
        assert item.first_withdrawal_at == taken_at
        assert item.to_dict()["product_name"] == "Safety helmet"

    def test_full_return_then_new_withdrawal_restarts(self, db_session, product, collaborator_a):
        old = utcnow() - timedelta(days=20)
        movement_service.apply_movement(
            product.id, "withdrawal", 2, actor="tester", collaborator_code="A001", occurred_at=old
        )
        movement_service.apply_movement(
            product.id, "receipt", 2, actor="tester", collaborator_code="A001", occurred_at=old + timedelta(days=1)
        )
        recent = utcnow() - timedelta(days=1)
        movement_service.apply_movement(
            product.id, "withdrawal", 1, actor="tester", collaborator_code="A001", occurred_at=recent
        )

        [item] = possession_for("A001")
        assert item.quantity == 1
        assert item.first_withdrawal_at == recent

    def test_write_off_attributed_to_holder_reduces_possession(self, db_session, product, collaborator_a):
        movement_service.apply_movement(product.id, "withdrawal", 2, actor="tester", collaborator_code="A001")
        movement_service.apply_movement(product.id, "write_off", 2, actor="tester", collaborator_code="A001")
        assert possession_for("A001") == []

    def test_supplier_return_is_ignored(self, db_session, product, collaborator_a):
        movement_service.apply_movement(product.id, "withdrawal", 2, actor="tester", collaborator_code="A001")
        movement_service.apply_movement(
            product.id, "supplier_return", 1, actor="tester", collaborator_code="A001"
        )
        [item] = possession_for("A001")
        assert item.quantity == 2

    def test_receipt_without_prior_withdrawal_is_not_negative(self, db_session, product, collaborator_a):
        movement_service.apply_movement(product.id, "receipt", 3, actor="tester", collaborator_code="A001")
        assert possession_for("A001") == []

    def test_items_in_withdrawal_order(self, db_session, product, collaborator_a):
        gloves = register_product({"name": "Gloves", "initial_quantity": 5}, actor="tester")
        movement_service.apply_movement(
            gloves.id, "withdrawal", 1, actor="tester", collaborator_code="A001",
            occurred_at=utcnow() - timedelta(days=2),
        )
        movement_service.apply_movement(product.id, "withdrawal", 1, actor="tester", collaborator_code="A001")

        assert [i.product.name for i in possession_for("A001")] == ["Gloves", "Safety helmet"]


class TestPossessionSummary:
    def test_groups_by_holder(self, db_session, product, collaborator_a, storekeeper):
        movement_service.apply_movement(product.id, "withdrawal", 1, actor="tester", collaborator_code="A001")
        movement_service.apply_movement(product.id, "withdrawal", 2, actor="tester", collaborator_code="S001")
        movement_service.apply_movement(product.id, "receipt", 2, actor="tester", collaborator_code="S001")

        summary = possession_summary()
        assert list(summary) == ["A001"]
        assert summary["A001"][0].quantity == 1
