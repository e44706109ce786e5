# Overview: Collection-style access to the local SQLite cache shared by the ledger and the sync queue.

"""
Local durable store

The SQLite database is the local cache of every remote collection plus the
pending-operation queue. Services see it as named collections keyed by
identifier:

    get_all(collection) / get(collection, id) / put(collection, record)
    clear(collection) / replace_all(collection, records)

Crash consistency:
- Outside a unit of work, every put/clear commits on its own.
- Inside unit_of_work(), everything commits together or not at all. The
  ledger uses this so a movement, the product projection and the queue
  entry describing it are never observed half-applied.

Temporary identifiers:
- Records created locally get "<TEMP_ID_PREFIX><hex>" ids.
- rekey() moves a record and every local reference to it onto the
  permanent id once the remote store has assigned one.
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass, field
from uuid import uuid4

from flask import current_app, has_app_context
from sqlalchemy import update

from ..extensions import db
from ..models import (
    AuditEvent,
    Category,
    Collaborator,
    CollaboratorPeriodicity,
    Movement,
    PendingOperation,
    Product,
)
from ..validation import coerce_column_value
from .concurrency import SequenceAllocator

_UOW_DEPTH_KEY = "stockroom.uow_depth"

movement_sequence = SequenceAllocator(Movement.seq)


@dataclass(frozen=True)
class CollectionSpec:
    name: str
    model: type
    key: str = "id"
    # column -> collection whose id it references ("*": any collection)
    references: dict[str, str] = field(default_factory=dict)
    # fields that never leave the local cache
    local_only: frozenset = frozenset()
    order_by: str | None = None


COLLECTIONS: dict[str, CollectionSpec] = {
    spec.name: spec
    for spec in (
        CollectionSpec("products", Product, local_only=frozenset({"quantity"}), order_by="name"),
        CollectionSpec(
            "movements",
            Movement,
            references={"product_id": "products"},
            order_by="seq",
        ),
        CollectionSpec("collaborators", Collaborator, order_by="name"),
        CollectionSpec("categories", Category, order_by="name"),
        CollectionSpec(
            "periodicities",
            CollaboratorPeriodicity,
            references={"product_id": "products"},
        ),
        CollectionSpec(
            "audit_log",
            AuditEvent,
            references={"record_id": "*"},
            local_only=frozenset({"id"}),
            order_by="id",
        ),
        CollectionSpec("pending_operations", PendingOperation, order_by="id"),
    )
}


def get_spec(collection: str) -> CollectionSpec:
    try:
        return COLLECTIONS[collection]
    except KeyError:
        raise ValueError(f"unknown collection: {collection}") from None


# ----------------------------------------------------------------------
# Temporary identifiers
# ----------------------------------------------------------------------

def temp_id_prefix() -> str:
    if has_app_context():
        return current_app.config.get("TEMP_ID_PREFIX", "temp_")
    return "temp_"


def new_temp_id() -> str:
    return f"{temp_id_prefix()}{uuid4().hex}"


def is_temp_id(value) -> bool:
    return isinstance(value, str) and value.startswith(temp_id_prefix())


# ----------------------------------------------------------------------
# Transactions
# ----------------------------------------------------------------------

def in_unit_of_work() -> bool:
    return db.session.info.get(_UOW_DEPTH_KEY, 0) > 0


@contextmanager
def unit_of_work():
    """
    One local transaction. Nested scopes join the outermost one; only the
    outermost scope commits (or rolls back on error).
    """
    depth = db.session.info.get(_UOW_DEPTH_KEY, 0)
    db.session.info[_UOW_DEPTH_KEY] = depth + 1
    try:
        yield db.session
        if depth == 0:
            db.session.commit()
    except Exception:
        if depth == 0:
            db.session.rollback()
        raise
    finally:
        db.session.info[_UOW_DEPTH_KEY] = depth


def _finish() -> None:
    if in_unit_of_work():
        db.session.flush()
    else:
        db.session.commit()


# ----------------------------------------------------------------------
# Collection access
# ----------------------------------------------------------------------

def get_all(collection: str) -> list[dict]:
    spec = get_spec(collection)
    q = db.session.query(spec.model)
    order_col = getattr(spec.model, spec.order_by or spec.key)
    rows = q.order_by(order_col.asc(), getattr(spec.model, spec.key).asc()).all()
    return [row.to_dict() for row in rows]


def get(collection: str, record_id) -> dict | None:
    spec = get_spec(collection)
    row = db.session.get(spec.model, record_id)
    return row.to_dict() if row is not None else None


def _apply_record(spec: CollectionSpec, row, record: dict) -> None:
    columns = {c.key: c for c in spec.model.__mapper__.columns}
    for key, value in record.items():
        if key == spec.key or key not in columns:
            continue
        setattr(row, key, coerce_column_value(columns[key], value))


def put(collection: str, record: dict):
    """Insert or replace one record by key. Unknown fields are ignored."""
    spec = get_spec(collection)
    record_id = record.get(spec.key)
    row = db.session.get(spec.model, record_id) if record_id is not None else None
    if row is None:
        row = spec.model()
        if record_id is not None:
            setattr(row, spec.key, record_id)
        if spec.model is Movement and record.get("seq") is None:
            row.seq = movement_sequence.next()
        db.session.add(row)
    _apply_record(spec, row, record)
    _finish()
    return row


def clear(collection: str) -> int:
    spec = get_spec(collection)
    db.session.flush()
    count = db.session.query(spec.model).delete(synchronize_session=False)
    db.session.expire_all()
    _finish()
    return count


def replace_all(collection: str, records: list[dict]) -> int:
    """Replace a whole collection atomically (used when refreshing from the remote store)."""
    with unit_of_work():
        clear(collection)
        for record in records:
            put(collection, record)
    return len(records)


def to_remote(collection: str, record: dict) -> dict:
    """Strip fields that only exist in the local cache."""
    spec = get_spec(collection)
    return {k: v for k, v in record.items() if k not in spec.local_only}


def referencing_fields(collection: str) -> list[tuple[CollectionSpec, str]]:
    """(spec, column) pairs that hold ids of `collection`."""
    return [
        (spec, column)
        for spec in COLLECTIONS.values()
        for column, target in spec.references.items()
        if target == collection
    ]


def rekey(collection: str, old_id: str, new_id: str) -> None:
    """
    Move a record from a temporary id to its permanent id and repoint every
    local reference, in one transaction.

    If a record already exists under new_id (e.g. it was pulled from the
    remote store in the meantime) the temporary copy is dropped after its
    references have been repointed.
    """
    if old_id == new_id:
        return
    spec = get_spec(collection)
    model = spec.model
    key_col = getattr(model, spec.key)

    with unit_of_work():
        db.session.flush()
        merge = db.session.get(model, new_id) is not None
        if not merge:
            # Through the ORM so objects already loaded keep working under the new key
            row = db.session.get(model, old_id)
            if row is not None:
                setattr(row, spec.key, new_id)
                db.session.flush()

        for ref_spec, column in referencing_fields(collection):
            ref_col = getattr(ref_spec.model, column)
            _bulk_update(update(ref_spec.model).where(ref_col == old_id).values({column: new_id}))

        _bulk_update(
            update(AuditEvent)
            .where(AuditEvent.collection == collection, AuditEvent.record_id == old_id)
            .values(record_id=new_id)
        )

        if merge:
            db.session.query(model).filter(key_col == old_id).delete(synchronize_session=False)

        db.session.expire_all()


def _bulk_update(stmt) -> None:
    db.session.execute(stmt.execution_options(synchronize_session=False))
