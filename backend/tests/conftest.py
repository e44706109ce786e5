"""
Pytest fixtures for stockroom backend tests.

Provides the test database, an in-memory remote store, connectivity
helpers and the test client.
"""

import itertools
import threading

import pytest
from stockroom import create_app
from stockroom.connectivity import get_monitor
from stockroom.extensions import db, remote
from stockroom.models import Collaborator
from stockroom.remote import RemoteRejectedError, RemoteStore, RemoteUnavailableError
from stockroom.services import local_store
from stockroom.time_utils import utcnow


class FakeRemoteStore(RemoteStore):
    """
    In-memory remote store.

    Switches:
    - unavailable: every call raises RemoteUnavailableError
    - reject: {collection: message} inserts into these collections are refused
    - fail_after: number of calls allowed before becoming unavailable
    """

    def __init__(self):
        self.tables: dict[str, dict[str, dict]] = {}
        self.calls: list[tuple] = []
        self.unavailable = False
        self.reject: dict[str, str] = {}
        self.fail_after: int | None = None
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def _enter(self, *call):
        if self.unavailable:
            raise RemoteUnavailableError("remote store unreachable")
        if self.fail_after is not None:
            if self.fail_after <= 0:
                raise RemoteUnavailableError("connection dropped")
            self.fail_after -= 1
        self.calls.append(call)

    def inserted(self, collection: str) -> list[dict]:
        return [c[2] for c in self.calls if c[0] == "insert" and c[1] == collection]

    def insert(self, collection, record):
        with self._lock:
            self._enter("insert", collection, dict(record))
            if collection in self.reject:
                raise RemoteRejectedError(self.reject[collection], status_code=400)
            row = dict(record)
            row.setdefault("id", f"{collection[:4]}-{next(self._ids)}")
            self.tables.setdefault(collection, {})[row["id"]] = row
            return dict(row)

    def select(self, collection, filters=None, *, limit=None):
        with self._lock:
            self._enter("select", collection, filters)
            rows = [
                dict(r)
                for r in self.tables.get(collection, {}).values()
                if all(r.get(k) == v for k, v in (filters or {}).items())
            ]
            return rows[:limit] if limit is not None else rows

    def update(self, collection, record_id, changes):
        with self._lock:
            self._enter("update", collection, record_id, dict(changes))
            row = self.tables.get(collection, {}).get(record_id)
            if row is None:
                raise RemoteRejectedError(f"{collection} {record_id} not found", status_code=404)
            row.update(changes)
            return dict(row)

    def delete(self, collection, record_id):
        with self._lock:
            self._enter("delete", collection, record_id)
            self.tables.get(collection, {}).pop(record_id, None)

    def rpc(self, name, params):
        with self._lock:
            self._enter("rpc", name, dict(params))
            if name != "adjust_stock_quantity":
                raise RemoteRejectedError(f"unknown function {name}", status_code=404)
            row = self.tables.get("products", {}).get(params["p_product_id"])
            if row is None:
                raise RemoteRejectedError("product not found", status_code=404)
            row["quantity"] = row.get("quantity", 0) + params["p_delta"]
            return row["quantity"]

    def ping(self):
        return not self.unavailable


class FakeTimer:
    """Stand-in for threading.Timer; fire() runs the callback synchronously."""

    created: list = []

    def __init__(self, interval, function):
        self.interval = interval
        self.function = function
        self.started = False
        self.cancelled = False
        FakeTimer.created.append(self)

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True

    def fire(self):
        self.function()


TEST_CONFIG = {
    'TESTING': True,
    'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
    'SQLALCHEMY_TRACK_MODIFICATIONS': False,
    'REMOTE_URL': '',
    'START_OFFLINE': True,
    'SYNC_AUTOSTART': False,
    'SYNC_INTERVAL_SECONDS': 0,
    'AUDIT_MIRROR_REMOTE': False,
}


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app(TEST_CONFIG)

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test, offline and without a remote store."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        monitor = get_monitor()
        monitor.stop()
        monitor.network_lost()
        monitor.last_result = None
        monitor.last_error = None
        remote.set_store(app, None)
        app.config['AUDIT_MIRROR_REMOTE'] = False

        yield db.session

        # Cleanup after test
        db.session.rollback()
        remote.set_store(app, None)


@pytest.fixture(scope='function')
def remote_store(app, db_session):
    """In-memory remote store bound to the app (still offline until `online`)."""
    store = FakeRemoteStore()
    remote.set_store(app, store)
    return store


@pytest.fixture(scope='function')
def online(remote_store):
    """Remote store bound and the monitor online."""
    get_monitor().network_available()
    return remote_store


@pytest.fixture(scope='function')
def product(db_session):
    """Product P: quantity 10 on the ledger (initial receipt), minimum 5."""
    from stockroom.services.products_service import register_product

    return register_product(
        {"name": "Safety helmet", "category": "EPI", "unit": "un", "min_stock": 5, "initial_quantity": 10},
        actor="tester",
    )


@pytest.fixture(scope='function')
def collaborator_a(db_session):
    c = Collaborator(
        id=local_store.new_temp_id(),
        code="A001",
        name="Ana Souza",
        role="Electrician",
        can_handle_deliveries=False,
        created_at=utcnow(),
    )
    db_session.add(c)
    db_session.commit()
    return c


@pytest.fixture(scope='function')
def storekeeper(db_session):
    c = Collaborator(
        id=local_store.new_temp_id(),
        code="S001",
        name="Bruno Lima",
        role="Storekeeper",
        is_storekeeper=True,
        can_handle_deliveries=True,
        created_at=utcnow(),
    )
    db_session.add(c)
    db_session.commit()
    return c
