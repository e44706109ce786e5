# Overview: Movement ledger; appends movements and keeps each product's cached quantity in step.

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import func

from ..extensions import db, remote as remote_ext
from ..models import Collaborator, Movement, MovementKind, MovementStatus, OperationKind, Product
from ..remote import RemoteUnavailableError
from ..validation import (
    ConflictError,
    NotFoundError,
    ValidationError,
    normalize_barcode,
    normalize_tag,
    parse_quantity,
)
from stockroom.time_utils import parse_iso_datetime, to_utc_z, utcnow
from . import local_store, sync_service
from .audit_service import record_event
from .concurrency import product_lock, run_with_retry

"""
Ledger invariants (authoritative)

Canonical time handling:
- All internal datetimes are UTC-naive (tzinfo=None).
- occurred_at accepts ISO-8601 with 'Z' or offsets and is normalized to UTC-naive.
- occurred_at may not lie more than two minutes in the future (clock skew).

Quantity model:
- Product.quantity is a projection of the ledger, maintained in the same
  transaction as each appended movement (see ledger_quantity).
- receipt adds; withdrawal, write_off and supplier_return subtract.
- A decrement that would drive quantity below zero is rejected with
  InsufficientStockError; no movement is written and nothing changes.

Append-only:
- kind and quantity never change once written.
- Cancellation flips status to 'cancelled'. It does not reverse the cached
  quantity and does not touch any other movement's before/after snapshot;
  verify_projection reports the difference and rebuild_projection settles it.
- Cancellation requires the remote store (authoritative for cancellation).

Atomicity:
- The movement, the projection update, the audit event and the queued
  insert commit in one local transaction under the product lock.
- The remote write happens after the lock is released.
"""

logger = logging.getLogger(__name__)

DECREMENTING_KINDS = frozenset({MovementKind.WITHDRAWAL, MovementKind.WRITE_OFF, MovementKind.SUPPLIER_RETURN})

MAX_CLOCK_SKEW = timedelta(minutes=2)


class InsufficientStockError(ValidationError):
    """Decrement larger than the quantity on hand. Do not retry with the same quantity."""

    def __init__(self, product_id: str, available: float, requested: float):
        self.product_id = product_id
        self.available = available
        self.requested = requested
        super().__init__(f"insufficient stock: available {available:g}, requested {requested:g}")


class AlreadyCancelledError(ConflictError):
    pass


class OfflineError(RemoteUnavailableError):
    """The operation needs the remote store and the system is offline."""


def signed_quantity(kind, quantity: float) -> float:
    """Quantity with the sign it has on the product's stock."""
    kind = MovementKind(kind)
    if kind is MovementKind.RECEIPT:
        return quantity
    if kind is MovementKind.WITHDRAWAL:
        return -quantity
    if kind is MovementKind.WRITE_OFF:
        return -quantity
    if kind is MovementKind.SUPPLIER_RETURN:
        return -quantity
    raise ValueError(f"unhandled movement kind: {kind}")


def _parse_occurred_at(value) -> datetime:
    """
    Normalize occurred_at to canonical UTC-naive datetime.

    Accepts None (now), datetime (aware converted to UTC) or ISO-8601 string.
    """
    if value is None:
        return utcnow()
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            return value.astimezone(timezone.utc).replace(tzinfo=None)
        return value
    if isinstance(value, str):
        try:
            dt = parse_iso_datetime(value)
        except ValueError:
            dt = None
        if dt is None:
            raise ValidationError("invalid occurred_at")
        return dt
    raise ValidationError("invalid occurred_at")


def _require_product(product_id: str) -> Product:
    product = db.session.get(Product, sync_service.resolve_id(product_id))
    if product is None:
        raise ValidationError("product not found")
    if not product.is_active:
        raise ValidationError("product is inactive")
    return product


def _require_collaborator(code: str | None, role: str) -> Collaborator | None:
    if code is None or str(code).strip() == "":
        return None
    collaborator = db.session.query(Collaborator).filter_by(code=str(code).strip()).first()
    if collaborator is None:
        raise ValidationError(f"{role} not found: {code}")
    if not collaborator.is_active:
        raise ValidationError(f"{role} is inactive: {code}")
    return collaborator


def _next_code(occurred_at: datetime, seq: int) -> str:
    """MOV-<year>-<NNNN> while online, MOV-OFF-<n> offline; the number is the allocated seq."""
    from ..connectivity import get_monitor

    if not get_monitor().is_online:
        return f"MOV-OFF-{seq}"
    return f"MOV-{occurred_at.year}-{seq:04d}"


def _write_through() -> None:
    """Push queued work now when online; failures stay queued."""
    from ..connectivity import get_monitor

    monitor = get_monitor()
    if monitor.is_online and remote_ext.is_configured():
        monitor.sync_now()


def apply_movement(
    product_id: str,
    kind,
    quantity,
    *,
    actor: str,
    collaborator_code: str | None = None,
    handled_by_code: str | None = None,
    tag: str | None = None,
    unit_price=None,
    total_value=None,
    notes: str | None = None,
    purpose: str | None = None,
    lessor: str | None = None,
    occurred_at=None,
    write_through: bool = True,
) -> Movement:
    """
    Append one movement and update the product's cached quantity.

    The movement is written with status pending_sync and queued for the
    remote store; it becomes confirmed once the queued insert is replayed.

    Raises:
        ValidationError: bad quantity, unknown/inactive product or collaborator,
            handler not allowed to handle deliveries, occurred_at in the future.
        InsufficientStockError: decrement larger than the quantity on hand.
    """
    try:
        kind = MovementKind(kind)
    except ValueError:
        raise ValidationError(f"invalid movement kind: {kind}") from None
    qty = parse_quantity(quantity)
    if not actor or not str(actor).strip():
        raise ValidationError("actor is required")
    occurred = _parse_occurred_at(occurred_at)
    if occurred > utcnow() + MAX_CLOCK_SKEW:
        raise ValidationError("occurred_at cannot be in the future")

    product = _require_product(product_id)
    holder = _require_collaborator(collaborator_code, "collaborator")
    handler = _require_collaborator(handled_by_code, "handler")
    if handler is not None and not handler.can_handle_deliveries:
        raise ValidationError(f"collaborator {handler.code} cannot handle deliveries")

    def _money(value, field):
        if value is None or value == "":
            return None
        try:
            number = float(str(value).replace(",", "."))
        except ValueError:
            raise ValidationError(f"{field} must be a number") from None
        if number < 0:
            raise ValidationError(f"{field} must be >= 0")
        return number

    price = _money(unit_price, "unit_price")
    total = _money(total_value, "total_value")
    if total is None and price is not None:
        total = round(price * qty, 2)

    def _op() -> Movement:
        with product_lock(product.id):
            with local_store.unit_of_work():
                db.session.refresh(product)
                before = float(product.quantity or 0)
                after = before + signed_quantity(kind, qty)
                if kind in DECREMENTING_KINDS and after < 0:
                    raise InsufficientStockError(product.id, before, qty)

                seq = local_store.movement_sequence.next()
                movement = Movement(
                    id=local_store.new_temp_id(),
                    code=_next_code(occurred, seq),
                    seq=seq,
                    product_id=product.id,
                    kind=kind.value,
                    quantity=qty,
                    quantity_before=before,
                    quantity_after=after,
                    occurred_at=occurred,
                    actor=str(actor).strip(),
                    collaborator_code=holder.code if holder else None,
                    handled_by_code=handler.code if handler else None,
                    tag=normalize_tag(tag) or product.tag,
                    lessor=(lessor or product.lessor),
                    unit_price=price,
                    total_value=total,
                    notes=notes,
                    purpose=purpose,
                    status=MovementStatus.PENDING_SYNC.value,
                    created_at=utcnow(),
                )
                db.session.add(movement)
                product.quantity = after
                product.updated_at = utcnow()
                db.session.flush()

                sync_service.enqueue(OperationKind.INSERT, "movements", movement.to_dict())

                record_event(
                    operation="movement_applied",
                    collection="movements",
                    record_id=movement.id,
                    before={"quantity": before},
                    after={"quantity": after, "kind": kind.value},
                    actor=movement.actor,
                )
            return movement

    movement = run_with_retry(_op)
    movement_id = movement.id
    logger.info("Applied %s of %g to product %s (%s)", kind.value, qty, product.id, movement.code)

    if write_through:
        _write_through()
    return db.session.get(Movement, sync_service.resolve_id(movement_id))


# ----------------------------------------------------------------------
# Convenience entry points
# ----------------------------------------------------------------------

def _product_id_for(product_id: str | None, tag: str | None, barcode: str | None = None) -> str:
    if product_id:
        return product_id
    code = normalize_barcode(barcode)
    if code:
        product = db.session.query(Product).filter_by(barcode=code).first()
        if product is None:
            raise ValidationError(f"no product with barcode {code}")
        return product.id
    normalized = normalize_tag(tag)
    if normalized:
        product = db.session.query(Product).filter_by(tag=normalized).first()
        if product is None:
            raise ValidationError(f"no product with tag {normalized}")
        return product.id
    raise ValidationError("product_id, tag or barcode is required")


def receive(product_id: str, quantity, *, actor: str, **metadata) -> Movement:
    return apply_movement(product_id, MovementKind.RECEIPT, quantity, actor=actor, **metadata)


def quick_withdrawal(
    collaborator_code: str,
    quantity,
    *,
    actor: str,
    product_id: str | None = None,
    tag: str | None = None,
    barcode: str | None = None,
    **metadata,
) -> Movement:
    """Hand material to a collaborator, identified by product id, asset tag or barcode."""
    if not collaborator_code:
        raise ValidationError("collaborator_code is required")
    pid = _product_id_for(product_id, tag, barcode)
    return apply_movement(
        pid,
        MovementKind.WITHDRAWAL,
        quantity,
        actor=actor,
        collaborator_code=collaborator_code,
        tag=tag,
        **metadata,
    )


def return_to_stock(
    collaborator_code: str,
    quantity,
    *,
    actor: str,
    product_id: str | None = None,
    tag: str | None = None,
    barcode: str | None = None,
    **metadata,
) -> Movement:
    """Receipt attributed to the collaborator returning the material."""
    if not collaborator_code:
        raise ValidationError("collaborator_code is required")
    pid = _product_id_for(product_id, tag, barcode)
    metadata.setdefault("purpose", "return")
    return apply_movement(
        pid,
        MovementKind.RECEIPT,
        quantity,
        actor=actor,
        collaborator_code=collaborator_code,
        tag=tag,
        **metadata,
    )


def write_off(product_id: str, quantity, *, actor: str, **metadata) -> Movement:
    return apply_movement(product_id, MovementKind.WRITE_OFF, quantity, actor=actor, **metadata)


def return_to_supplier(product_id: str, quantity, *, actor: str, **metadata) -> Movement:
    return apply_movement(product_id, MovementKind.SUPPLIER_RETURN, quantity, actor=actor, **metadata)


# ----------------------------------------------------------------------
# Cancellation
# ----------------------------------------------------------------------

def cancel_movement(movement_id: str, reason: str, *, actor: str) -> Movement:
    """
    Cancel a movement. The remote store is authoritative, so this fails
    offline, and the remote record is updated before the local one.
    """
    from ..connectivity import get_monitor

    movement = db.session.get(Movement, sync_service.resolve_id(movement_id))
    if movement is None:
        raise NotFoundError("movement not found")
    if movement.is_cancelled:
        raise AlreadyCancelledError("movement already cancelled")
    if not reason or not str(reason).strip():
        raise ValidationError("reason is required")
    if local_store.is_temp_id(movement.id):
        raise ValidationError("movement has not been synced yet; sync before cancelling")
    if not get_monitor().is_online or not remote_ext.is_configured():
        raise OfflineError("cancelling a movement requires a connection")

    stamp = to_utc_z(utcnow())
    note = f"[cancelled {stamp} by {actor}] {str(reason).strip()}"
    notes = f"{movement.notes}\n{note}" if movement.notes else note

    remote_ext.get_store().update(
        "movements",
        movement.id,
        {"status": MovementStatus.CANCELLED.value, "notes": notes},
    )

    with local_store.unit_of_work():
        before_status = movement.status
        movement.status = MovementStatus.CANCELLED.value
        movement.notes = notes
        record_event(
            operation="movement_cancelled",
            collection="movements",
            record_id=movement.id,
            before={"status": before_status},
            after={"status": movement.status, "reason": str(reason).strip()},
            actor=actor,
        )
    logger.info("Cancelled movement %s", movement.id)
    return movement


# ----------------------------------------------------------------------
# Queries
# ----------------------------------------------------------------------

def get_movement(movement_id: str) -> Movement:
    movement = db.session.get(Movement, sync_service.resolve_id(movement_id))
    if movement is None:
        raise NotFoundError("movement not found")
    return movement


def list_movements(
    *,
    kind=None,
    collaborator_code: str | None = None,
    product_id: str | None = None,
    sku: str | None = None,
    status: str | None = None,
    period_days: int | None = None,
    start=None,
    end=None,
    limit: int | None = 500,
) -> list[Movement]:
    """Movements newest first."""
    q = db.session.query(Movement)
    if kind:
        try:
            q = q.filter(Movement.kind == MovementKind(kind).value)
        except ValueError:
            raise ValidationError(f"invalid movement kind: {kind}") from None
    if collaborator_code:
        q = q.filter(Movement.collaborator_code == collaborator_code)
    if product_id:
        q = q.filter(Movement.product_id == sync_service.resolve_id(product_id))
    if sku:
        q = q.join(Product, Product.id == Movement.product_id).filter(Product.sku == sku)
    if status:
        try:
            q = q.filter(Movement.status == MovementStatus(status).value)
        except ValueError:
            raise ValidationError(f"invalid status: {status}") from None
    if period_days:
        q = q.filter(Movement.occurred_at >= utcnow() - timedelta(days=int(period_days)))
    if start is not None:
        q = q.filter(Movement.occurred_at >= _parse_occurred_at(start))
    if end is not None:
        q = q.filter(Movement.occurred_at <= _parse_occurred_at(end))
    q = q.order_by(Movement.occurred_at.desc(), Movement.seq.desc())
    if limit:
        q = q.limit(limit)
    return q.all()


def movements_for_product(product_id: str) -> list[Movement]:
    return list_movements(product_id=product_id, limit=None)


# ----------------------------------------------------------------------
# Projection checks
# ----------------------------------------------------------------------

def ledger_quantity(product_id: str) -> float:
    """Net of the product's non-cancelled movements."""
    total = 0.0
    rows = (
        db.session.query(Movement.kind, Movement.quantity)
        .filter(
            Movement.product_id == sync_service.resolve_id(product_id),
            Movement.status != MovementStatus.CANCELLED.value,
        )
        .all()
    )
    for kind, quantity in rows:
        total += signed_quantity(kind, float(quantity))
    return total


def verify_projection() -> list[dict]:
    """Products whose cached quantity differs from their ledger."""
    drift = []
    for product in db.session.query(Product).order_by(Product.name.asc()).all():
        expected = ledger_quantity(product.id)
        if abs(expected - float(product.quantity or 0)) > 1e-9:
            drift.append({"product_id": product.id, "cached": product.quantity, "ledger": expected})
    return drift


def rebuild_projection(product_id: str | None = None) -> int:
    """Reset cached quantities from the ledger. Returns how many changed."""
    q = db.session.query(Product)
    if product_id:
        q = q.filter(Product.id == sync_service.resolve_id(product_id))
    changed = 0
    with local_store.unit_of_work():
        for product in q.all():
            with product_lock(product.id):
                expected = ledger_quantity(product.id)
                if abs(expected - float(product.quantity or 0)) > 1e-9:
                    logger.warning("Rebuilding %s: cached %s, ledger %s", product.id, product.quantity, expected)
                    product.quantity = expected
                    changed += 1
    return changed


def movement_counts_by_kind() -> dict[str, int]:
    rows = db.session.query(Movement.kind, func.count(Movement.id)).group_by(Movement.kind).all()
    counts = {k.value: 0 for k in MovementKind}
    counts.update({kind: int(n) for kind, n in rows})
    return counts
