# Overview: Material currently held by collaborators, derived from the movement ledger.

"""
Possession is never stored. It is recomputed from the collaborator's
movements on every call:

- movements are read in one query, ordered by occurred_at then seq
  (insertion order breaks timestamp ties);
- cancelled movements are ignored;
- withdrawal adds to the running balance of its product;
- receipt and write_off attributed to the collaborator subtract;
- supplier_return never touches possession;
- a product is in possession while its balance is > 0. When it drops to
  <= 0 it leaves, and a later withdrawal starts a fresh balance.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from ..extensions import db
from ..models import Movement, MovementKind, MovementStatus, Product
from stockroom.time_utils import to_utc_z


@dataclass(frozen=True)
class PossessionItem:
    product: Product
    quantity: float
    first_withdrawal_at: datetime

    def to_dict(self) -> dict:
        return {
            "product_id": self.product.id,
            "product_name": self.product.name,
            "sku": self.product.sku,
            "tag": self.product.tag,
            "unit": self.product.unit,
            "quantity": self.quantity,
            "first_withdrawal_at": to_utc_z(self.first_withdrawal_at),
        }


def possession_delta(kind) -> int:
    """Direction a movement moves the holder's balance (+1, -1 or 0)."""
    kind = MovementKind(kind)
    if kind is MovementKind.WITHDRAWAL:
        return 1
    if kind is MovementKind.RECEIPT:
        return -1
    if kind is MovementKind.WRITE_OFF:
        return -1
    if kind is MovementKind.SUPPLIER_RETURN:
        return 0
    raise ValueError(f"unhandled movement kind: {kind}")


def _fold(rows) -> dict[str, list]:
    # product_id -> [product, balance, first_withdrawal_at]; dict keeps entry order
    held: dict[str, list] = {}
    for movement, product in rows:
        direction = possession_delta(movement.kind)
        if direction == 0:
            continue
        entry = held.get(product.id)
        if entry is None:
            if direction < 0:
                continue
            entry = held[product.id] = [product, 0.0, movement.occurred_at]
        entry[1] += direction * float(movement.quantity)
        if entry[1] <= 0:
            del held[product.id]
    return held


def _movement_rows(collaborator_code: str | None = None):
    q = (
        db.session.query(Movement, Product)
        .join(Product, Product.id == Movement.product_id)
        .filter(
            Movement.collaborator_code.isnot(None),
            Movement.status != MovementStatus.CANCELLED.value,
        )
    )
    if collaborator_code is not None:
        q = q.filter(Movement.collaborator_code == collaborator_code)
    return q.order_by(Movement.occurred_at.asc(), Movement.seq.asc()).all()


def possession_for(collaborator_code: str) -> list[PossessionItem]:
    """Items currently held by the collaborator, in the order they were taken."""
    held = _fold(_movement_rows(collaborator_code))
    return [PossessionItem(product, qty, first) for product, qty, first in held.values()]


def possession_summary() -> dict[str, list[PossessionItem]]:
    """Every collaborator holding something, from a single ledger read."""
    by_holder: dict[str, list] = {}
    for movement, product in _movement_rows():
        by_holder.setdefault(movement.collaborator_code, []).append((movement, product))

    summary = {}
    for code, rows in by_holder.items():
        held = _fold(rows)
        if held:
            summary[code] = [PossessionItem(product, qty, first) for product, qty, first in held.values()]
    return summary
