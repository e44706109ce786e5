# Overview: Threaded coverage for the per-product lock and movement numbering on a file-backed store.

"""
Concurrent Movement Tests

Each worker thread runs in its own app context (and so its own session)
against one SQLite file, the way request threads share the local store.
"""

import threading

import pytest
from stockroom import create_app
from stockroom.extensions import db
from stockroom.models import Movement, Product
from stockroom.services import movement_service, products_service, sync_service

from conftest import TEST_CONFIG

THREADS = 5
WITHDRAWALS_PER_THREAD = 10


@pytest.fixture
def file_app(tmp_path):
    app = create_app({**TEST_CONFIG, 'SQLALCHEMY_DATABASE_URI': f"sqlite:///{tmp_path / 'stockroom.db'}"})
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


def _run_workers(app, work):
    errors = []

    def worker(index):
        with app.app_context():
            try:
                work(index)
            except Exception as exc:
                errors.append(exc)

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(THREADS)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=60)
    return errors


class TestConcurrentWithdrawals:
    def test_parallel_withdrawals_keep_projection_and_ledger_equal(self, file_app):
        pid = products_service.register_product(
            {"name": "Nitrile gloves", "initial_quantity": 100}, actor="tester"
        ).id
        db.session.remove()

        def work(index):
            for _ in range(WITHDRAWALS_PER_THREAD):
                movement_service.apply_movement(pid, "withdrawal", 1, actor=f"worker-{index}")

        errors = _run_workers(file_app, work)

        assert errors == []
        withdrawals = db.session.query(Movement).filter_by(product_id=pid, kind="withdrawal").count()
        assert withdrawals == THREADS * WITHDRAWALS_PER_THREAD
        quantity = db.session.get(Product, sync_service.resolve_id(pid)).quantity
        assert quantity == 100 - withdrawals
        assert movement_service.ledger_quantity(pid) == quantity
        assert movement_service.verify_projection() == []

    def test_codes_stay_unique_across_products(self, file_app):
        pids = [
            products_service.register_product({"name": name}, actor="tester").id
            for name in ("Bolt", "Nut")
        ]
        db.session.remove()

        def work(index):
            for _ in range(WITHDRAWALS_PER_THREAD):
                movement_service.receive(pids[index % 2], 1, actor=f"worker-{index}")

        errors = _run_workers(file_app, work)

        assert errors == []
        rows = db.session.query(Movement.code, Movement.seq).all()
        assert len(rows) == THREADS * WITHDRAWALS_PER_THREAD
        assert len({code for code, _ in rows}) == len(rows)
        assert all(code == f"MOV-OFF-{seq}" for code, seq in rows)
