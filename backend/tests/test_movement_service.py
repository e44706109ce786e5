# Overview: Pytest coverage for the movement ledger.

"""
Movement Ledger Tests

- Quantity projection follows every applied movement.
- Rejected movements leave no trace (no movement, no quantity change, nothing queued).
- Each movement is queued for the remote store in the same transaction.
- Cancellation is remote-first, status-only and fails offline.
"""

from datetime import timedelta

import pytest
from stockroom.models import Movement, MovementKind, MovementStatus, PendingOperation, Product
from stockroom.services import movement_service, sync_service
from stockroom.services.movement_service import (
    AlreadyCancelledError,
    InsufficientStockError,
    OfflineError,
    signed_quantity,
)
from stockroom.services.possession_service import possession_for
from stockroom.validation import NotFoundError, ValidationError
from stockroom.time_utils import utcnow


def _quantity(db_session, product_id):
    return db_session.get(Product, sync_service.resolve_id(product_id)).quantity


class TestSignedQuantity:
    def test_every_kind_has_a_sign(self):
        assert signed_quantity(MovementKind.RECEIPT, 2) == 2
        assert signed_quantity(MovementKind.WITHDRAWAL, 2) == -2
        assert signed_quantity(MovementKind.WRITE_OFF, 2) == -2
        assert signed_quantity(MovementKind.SUPPLIER_RETURN, 2) == -2

    def test_unknown_kind_raises(self):
        with pytest.raises(ValueError):
            signed_quantity("transfer", 1)


class TestApplyMovement:
    def test_withdraw_return_write_off_scenario(self, db_session, product, collaborator_a):
        """10 -> withdraw 3 -> 7 -> return 2 -> 9 -> write off 1 -> 8."""
        pid = product.id
        assert _quantity(db_session, pid) == 10

        movement_service.apply_movement(pid, "withdrawal", 3, actor="tester", collaborator_code="A001")
        assert _quantity(db_session, pid) == 7
        held = possession_for("A001")
        assert [(i.product.id, i.quantity) for i in held] == [(pid, 3)]

        movement_service.apply_movement(pid, "receipt", 2, actor="tester", collaborator_code="A001")
        assert _quantity(db_session, pid) == 9
        held = possession_for("A001")
        assert [(i.product.id, i.quantity) for i in held] == [(pid, 1)]

        movement_service.apply_movement(pid, "write_off", 1, actor="tester")
        assert _quantity(db_session, pid) == 8
        assert 8 == 10 + 2 - 3 - 1
        assert movement_service.ledger_quantity(pid) == 8
        assert movement_service.verify_projection() == []

    def test_snapshots_record_before_and_after(self, db_session, product):
        m = movement_service.apply_movement(product.id, "withdrawal", 4, actor="tester")
        assert m.quantity_before == 10
        assert m.quantity_after == 6
        assert m.status == MovementStatus.PENDING_SYNC.value

    def test_insufficient_stock_leaves_no_trace(self, db_session, product):
        movements_before = db_session.query(Movement).count()
        queued_before = db_session.query(PendingOperation).count()

        with pytest.raises(InsufficientStockError) as exc:
            movement_service.apply_movement(product.id, "withdrawal", 11, actor="tester")

        assert exc.value.available == 10
        assert db_session.query(Movement).count() == movements_before
        assert db_session.query(PendingOperation).count() == queued_before
        assert _quantity(db_session, product.id) == 10

    @pytest.mark.parametrize("kind", ["write_off", "supplier_return"])
    def test_other_decrements_check_stock(self, db_session, product, kind):
        with pytest.raises(InsufficientStockError):
            movement_service.apply_movement(product.id, kind, 10.5, actor="tester")

    @pytest.mark.parametrize("quantity", [0, -1, "abc", None, float("nan")])
    def test_rejects_bad_quantity(self, db_session, product, quantity):
        with pytest.raises(ValidationError):
            movement_service.apply_movement(product.id, "receipt", quantity, actor="tester")

    def test_accepts_decimal_comma(self, db_session, product):
        m = movement_service.apply_movement(product.id, "receipt", "1,5", actor="tester")
        assert m.quantity == 1.5

    def test_rejects_unknown_product(self, db_session):
        with pytest.raises(ValidationError):
            movement_service.apply_movement("temp_missing", "receipt", 1, actor="tester")

    def test_rejects_unknown_collaborator(self, db_session, product):
        with pytest.raises(ValidationError):
            movement_service.apply_movement(product.id, "withdrawal", 1, actor="tester", collaborator_code="NOPE")

    def test_handler_must_handle_deliveries(self, db_session, product, collaborator_a, storekeeper):
        with pytest.raises(ValidationError):
            movement_service.apply_movement(
                product.id, "withdrawal", 1, actor="tester", handled_by_code=collaborator_a.code
            )
        m = movement_service.apply_movement(
            product.id,
            "withdrawal",
            1,
            actor="tester",
            collaborator_code=collaborator_a.code,
            handled_by_code=storekeeper.code,
        )
        assert m.collaborator_code == "A001"
        assert m.handled_by_code == "S001"

    def test_rejects_future_timestamp(self, db_session, product):
        with pytest.raises(ValidationError):
            movement_service.apply_movement(
                product.id, "receipt", 1, actor="tester", occurred_at=utcnow() + timedelta(hours=1)
            )

    def test_total_value_derived_from_unit_price(self, db_session, product):
        m = movement_service.apply_movement(product.id, "receipt", 4, actor="tester", unit_price="2,50")
        assert m.unit_price == 2.5
        assert m.total_value == 10.0

    def test_offline_movement_is_queued_with_offline_code(self, db_session, product):
        m = movement_service.apply_movement(product.id, "withdrawal", 1, actor="tester")
        assert m.code.startswith("MOV-OFF-")

        ops = sync_service.list_operations(status="pending")
        movement_ops = [op for op in ops if op.collection == "movements"]
        assert movement_ops[-1].payload["id"] == m.id
        assert movement_ops[-1].kind == "insert"

    def test_codes_follow_the_allocated_sequence(self, db_session, product):
        from stockroom.services.products_service import register_product

        other = register_product({"name": "Ear plugs", "initial_quantity": 4}, actor="tester")
        first = movement_service.apply_movement(product.id, "withdrawal", 1, actor="tester")
        second = movement_service.apply_movement(other.id, "withdrawal", 1, actor="tester")

        assert first.code == f"MOV-OFF-{first.seq}"
        assert second.code == f"MOV-OFF-{second.seq}"
        codes = [m.code for m in movement_service.list_movements()]
        assert len(codes) == len(set(codes)) == 4

    def test_online_code_carries_year_and_sequence(self, db_session, online, product):
        m = movement_service.apply_movement(product.id, "receipt", 1, actor="tester")
        assert m.code == f"MOV-{m.occurred_at.year}-{m.seq:04d}"


class TestConvenience:
    def test_quick_withdrawal_by_tag(self, db_session, collaborator_a):
        from stockroom.services.products_service import register_product

        p = register_product({"name": "Drill", "tag": " fur-01 ", "initial_quantity": 2}, actor="tester")
        assert p.tag == "FUR-01"

        m = movement_service.quick_withdrawal("A001", 1, actor="tester", tag="fur-01")
        assert m.product_id == p.id
        assert m.kind == "withdrawal"
        assert _quantity(db_session, p.id) == 1

    def test_quick_withdrawal_by_barcode(self, db_session, collaborator_a):
        from stockroom.services.products_service import register_product

        p = register_product({"name": "Tape", "barcode": " 7891234567895 ", "initial_quantity": 3}, actor="tester")
        assert p.barcode == "7891234567895"

        m = movement_service.quick_withdrawal("A001", 2, actor="tester", barcode="7891234567895")
        assert m.product_id == p.id
        assert _quantity(db_session, p.id) == 1

        back = movement_service.return_to_stock("A001", 1, actor="tester", barcode="7891234567895")
        assert back.product_id == p.id

    def test_unknown_barcode_or_no_identifier(self, db_session, collaborator_a):
        with pytest.raises(ValidationError, match="barcode"):
            movement_service.quick_withdrawal("A001", 1, actor="tester", barcode="000")
        with pytest.raises(ValidationError):
            movement_service.quick_withdrawal("A001", 1, actor="tester")

    def test_return_to_stock_is_receipt_for_holder(self, db_session, product, collaborator_a):
        movement_service.quick_withdrawal("A001", 2, actor="tester", product_id=product.id)
        m = movement_service.return_to_stock("A001", 2, actor="tester", product_id=product.id)
        assert m.kind == "receipt"
        assert possession_for("A001") == []

    def test_return_to_supplier_has_its_own_kind(self, db_session, product):
        m = movement_service.return_to_supplier(product.id, 3, actor="tester")
        assert m.kind == MovementKind.SUPPLIER_RETURN.value
        assert _quantity(db_session, product.id) == 7


class TestWriteThrough:
    def test_online_movement_is_confirmed_under_permanent_id(self, db_session, online, product):
        m = movement_service.apply_movement(product.id, "withdrawal", 3, actor="tester")

        assert not m.id.startswith("temp_")
        assert m.status == MovementStatus.CONFIRMED.value
        assert m.product_id == product.id
        assert online.tables["products"][product.id]["quantity"] == 7
        assert sync_service.pending_count() == 0

    def test_remote_failure_keeps_movement_pending(self, db_session, online, product):
        online.unavailable = True
        m = movement_service.apply_movement(product.id, "withdrawal", 3, actor="tester")

        assert m.id.startswith("temp_")
        assert m.status == MovementStatus.PENDING_SYNC.value
        assert _quantity(db_session, product.id) == 7
        assert sync_service.pending_count() == 1


class TestCancel:
    def test_cancel_offline_fails_without_side_effects(self, db_session, online, product):
        m = movement_service.apply_movement(product.id, "withdrawal", 3, actor="tester")
        from stockroom.connectivity import get_monitor

        get_monitor().network_lost()
        with pytest.raises(OfflineError):
            movement_service.cancel_movement(m.id, "typo", actor="tester")
        assert db_session.get(Movement, m.id).status == MovementStatus.CONFIRMED.value

    def test_cancel_missing_movement(self, db_session, online):
        with pytest.raises(NotFoundError):
            movement_service.cancel_movement("move-404", "typo", actor="tester")

    def test_existence_is_checked_before_reason(self, db_session, online, product):
        with pytest.raises(NotFoundError):
            movement_service.cancel_movement("move-404", "", actor="tester")

        m = movement_service.apply_movement(product.id, "withdrawal", 1, actor="tester")
        movement_service.cancel_movement(m.id, "typo", actor="tester")
        with pytest.raises(AlreadyCancelledError):
            movement_service.cancel_movement(m.id, "  ", actor="tester")

        fresh = movement_service.apply_movement(product.id, "withdrawal", 1, actor="tester")
        with pytest.raises(ValidationError, match="reason"):
            movement_service.cancel_movement(fresh.id, "", actor="tester")

    def test_cancel_is_status_only(self, db_session, online, product, collaborator_a):
        m = movement_service.apply_movement(product.id, "withdrawal", 3, actor="tester", collaborator_code="A001")
        assert _quantity(db_session, product.id) == 7

        cancelled = movement_service.cancel_movement(m.id, "wrong product", actor="tester")

        assert cancelled.status == MovementStatus.CANCELLED.value
        assert "wrong product" in cancelled.notes
        assert cancelled.quantity_before == 10
        assert cancelled.quantity_after == 7
        assert _quantity(db_session, product.id) == 7
        assert online.tables["movements"][m.id]["status"] == "cancelled"
        assert possession_for("A001") == []

        with pytest.raises(AlreadyCancelledError):
            movement_service.cancel_movement(m.id, "again", actor="tester")

    def test_cancelled_drift_is_reported_and_rebuilt(self, db_session, online, product):
        m = movement_service.apply_movement(product.id, "withdrawal", 3, actor="tester")
        movement_service.cancel_movement(m.id, "duplicate entry", actor="tester")

        drift = movement_service.verify_projection()
        assert drift == [{"product_id": product.id, "cached": 7, "ledger": 10}]

        assert movement_service.rebuild_projection() == 1
        assert _quantity(db_session, product.id) == 10
        assert movement_service.verify_projection() == []

    def test_unsynced_movement_cannot_be_cancelled(self, db_session, product, remote_store):
        m = movement_service.apply_movement(product.id, "withdrawal", 1, actor="tester")
        with pytest.raises(ValidationError):
            movement_service.cancel_movement(m.id, "typo", actor="tester")


class TestQueries:
    def test_list_movements_newest_first_with_filters(self, db_session, product, collaborator_a):
        movement_service.apply_movement(product.id, "withdrawal", 1, actor="tester", collaborator_code="A001")
        movement_service.apply_movement(product.id, "write_off", 1, actor="tester")

        all_rows = movement_service.list_movements()
        assert [m.kind for m in all_rows] == ["write_off", "withdrawal", "receipt"]

        mine = movement_service.list_movements(collaborator_code="A001")
        assert [m.kind for m in mine] == ["withdrawal"]

        by_sku = movement_service.list_movements(sku=product.sku, kind="receipt")
        assert len(by_sku) == 1

    def test_list_rejects_unknown_kind(self, db_session):
        with pytest.raises(ValidationError):
            movement_service.list_movements(kind="transfer")
