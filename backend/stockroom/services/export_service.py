# Overview: Movement history export as delimited text.

from __future__ import annotations

import csv
import io

from flask import current_app, has_app_context

from ..extensions import db
from ..models import Collaborator, MovementKind, Product
from . import local_store
from .movement_service import list_movements, signed_quantity

EXPORT_HEADER = ("Date", "Code", "Type", "Product", "SKU", "Tag", "Lessor", "Quantity", "Requester")

SHORT_ID_LENGTH = 8

KIND_LABELS = {
    MovementKind.RECEIPT: "Receipt",
    MovementKind.WITHDRAWAL: "Withdrawal",
    MovementKind.WRITE_OFF: "Write-off",
    MovementKind.SUPPLIER_RETURN: "Return to supplier",
}


def short_id(record_id: str) -> str:
    """First characters of the id, ignoring the temporary-id prefix."""
    if local_store.is_temp_id(record_id):
        record_id = record_id[len(local_store.temp_id_prefix()):]
    return record_id[:SHORT_ID_LENGTH]


def kind_label(kind) -> str:
    return KIND_LABELS[MovementKind(kind)]


def _date_format() -> str:
    if has_app_context():
        return current_app.config.get("EXPORT_DATE_FORMAT", "%d/%m/%Y")
    return "%d/%m/%Y"


def _format_quantity(value: float) -> str:
    return f"{value:g}"


def export_movements_csv(**filters) -> str:
    """
    One row per movement (newest first) with the quantity signed by kind.
    Cancelled movements are kept and labelled as such.

    Accepts the same filters as movement_service.list_movements.
    """
    filters.setdefault("limit", None)
    movements = list_movements(**filters)

    product_ids = {m.product_id for m in movements}
    products = {
        p.id: p for p in db.session.query(Product).filter(Product.id.in_(product_ids)).all()
    } if product_ids else {}
    codes = {m.collaborator_code for m in movements if m.collaborator_code}
    names = {
        c.code: c.name for c in db.session.query(Collaborator).filter(Collaborator.code.in_(codes)).all()
    } if codes else {}

    date_format = _date_format()
    buf = io.StringIO()
    writer = csv.writer(buf, quoting=csv.QUOTE_ALL, lineterminator="\n")
    writer.writerow(EXPORT_HEADER)
    for m in movements:
        product = products.get(m.product_id)
        label = kind_label(m.kind)
        if m.is_cancelled:
            label = f"{label} (cancelled)"
        writer.writerow(
            (
                m.occurred_at.strftime(date_format),
                short_id(m.id),
                label,
                product.name if product else "",
                product.sku if product else "",
                m.tag or "",
                m.lessor or "",
                _format_quantity(signed_quantity(m.kind, float(m.quantity))),
                names.get(m.collaborator_code, m.collaborator_code or ""),
            )
        )
    return buf.getvalue()
