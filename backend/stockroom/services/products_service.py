# Overview: Product registration and master-data maintenance; quantity is left to the ledger.
"""
Products service

- Every mutation is applied to the local cache, audited and queued for the
  remote store in one local transaction (optimistic).
- quantity is never written here; an initial quantity on registration is
  booked as a receipt movement so the ledger stays complete.
- Products with movements are never physically deleted, only deactivated.
"""
from __future__ import annotations

import logging

from sqlalchemy import or_

from ..extensions import db, remote as remote_ext
from ..models import Movement, OperationKind, Product
from ..validation import (
    ConflictError,
    ModelValidationPolicy,
    NotFoundError,
    ValidationError,
    enforce_rules_product,
    normalize_barcode,
    normalize_tag,
    validate_payload,
)
from stockroom.time_utils import utcnow
from . import local_store, sync_service
from .audit_service import record_event

logger = logging.getLogger(__name__)

PRODUCT_POLICY = ModelValidationPolicy(
    writable_fields={
        "sku",
        "name",
        "description",
        "category",
        "unit",
        "location",
        "min_stock",
        "tag",
        "barcode",
        "lessor",
        "is_active",
    },
    required_on_create={"name"},
)

SKU_WIDTH = 6


def next_sku() -> str:
    """Next zero-padded numeric SKU after the highest numeric one in use."""
    highest = 0
    for (sku,) in db.session.query(Product.sku).all():
        if sku and sku.isdigit():
            highest = max(highest, int(sku))
    return str(highest + 1).zfill(SKU_WIDTH)


def _check_unique(
    *, sku: str | None, tag: str | None, barcode: str | None = None, exclude_id: str | None = None
) -> None:
    if sku:
        q = db.session.query(Product.id).filter(Product.sku == sku)
        if exclude_id:
            q = q.filter(Product.id != exclude_id)
        if q.first() is not None:
            raise ConflictError(f"SKU already exists: {sku}")
    if tag:
        q = db.session.query(Product.id).filter(Product.tag == tag)
        if exclude_id:
            q = q.filter(Product.id != exclude_id)
        if q.first() is not None:
            raise ConflictError(f"tag already in use: {tag}")
    if barcode:
        q = db.session.query(Product.id).filter(Product.barcode == barcode)
        if exclude_id:
            q = q.filter(Product.id != exclude_id)
        if q.first() is not None:
            raise ConflictError(f"barcode already in use: {barcode}")


def register_product(payload: dict, *, actor: str) -> Product:
    """
    Register a product. `initial_quantity` (optional) is booked as a
    receipt movement queued right after the product insert.
    """
    patch = validate_payload(
        model=Product,
        payload=payload,
        policy=PRODUCT_POLICY,
        partial=False,
        extra_fields={"initial_quantity"},
    )
    initial_quantity = patch.pop("initial_quantity", None)
    enforce_rules_product(patch)

    patch["tag"] = normalize_tag(patch.get("tag"))
    patch["barcode"] = normalize_barcode(patch.get("barcode"))
    if not patch.get("sku"):
        patch["sku"] = next_sku()
    _check_unique(sku=patch["sku"], tag=patch["tag"], barcode=patch["barcode"])

    now = utcnow()
    with local_store.unit_of_work():
        product = Product(id=local_store.new_temp_id(), quantity=0, created_at=now, updated_at=now)
        for key, value in patch.items():
            setattr(product, key, value)
        db.session.add(product)
        db.session.flush()

        sync_service.enqueue(OperationKind.INSERT, "products", product.to_dict())

        record_event(
            operation="product_registered",
            collection="products",
            record_id=product.id,
            after=product.to_dict(),
            actor=actor,
        )

        if initial_quantity not in (None, "", 0, "0"):
            from .movement_service import apply_movement

            apply_movement(
                product.id,
                "receipt",
                initial_quantity,
                actor=actor,
                notes="initial stock",
                write_through=False,
            )

    product_id = product.id
    logger.info("Registered product %s (%s)", product_id, patch["sku"])
    from .movement_service import _write_through

    _write_through()
    return get_product(product_id)


def update_product(product_id: str, payload: dict, *, actor: str) -> Product:
    if isinstance(payload, dict) and "quantity" in payload:
        raise ValidationError("quantity can only change through a movement")
    patch = validate_payload(model=Product, payload=payload, policy=PRODUCT_POLICY, partial=True)
    enforce_rules_product(patch)
    if "tag" in patch:
        patch["tag"] = normalize_tag(patch["tag"])
    if "barcode" in patch:
        patch["barcode"] = normalize_barcode(patch["barcode"])

    product = get_product(product_id)
    _check_unique(
        sku=patch.get("sku"), tag=patch.get("tag"), barcode=patch.get("barcode"), exclude_id=product.id
    )

    with local_store.unit_of_work():
        before = product.to_dict()
        for key, value in patch.items():
            setattr(product, key, value)
        product.updated_at = utcnow()
        db.session.flush()
        after = product.to_dict()

        changes = {k: after[k] for k in patch}
        sync_service.enqueue(OperationKind.UPDATE, "products", {"id": product.id, **changes, "updated_at": after["updated_at"]})

        record_event(
            operation="product_updated",
            collection="products",
            record_id=product.id,
            before={k: before[k] for k in patch},
            after=changes,
            actor=actor,
        )

    from .movement_service import _write_through

    _write_through()
    return get_product(product.id)


def deactivate_product(product_id: str, *, actor: str) -> Product:
    return update_product(product_id, {"is_active": False}, actor=actor)


def delete_product(product_id: str, *, actor: str) -> None:
    """
    Physically delete a product that never had movements. Needs the remote
    store when the product already exists there.
    """
    from ..connectivity import get_monitor
    from .movement_service import OfflineError

    product = get_product(product_id)
    has_movements = db.session.query(Movement.id).filter(Movement.product_id == product.id).first() is not None
    if has_movements:
        raise ConflictError("product has movements; deactivate it instead")

    synced = not local_store.is_temp_id(product.id)
    if synced:
        if not get_monitor().is_online or not remote_ext.is_configured():
            raise OfflineError("deleting a synced product requires a connection")
        remote_ext.get_store().delete("products", product.id)

    with local_store.unit_of_work():
        if not synced:
            # Still only local: the queued insert would recreate it remotely
            sync_service.enqueue(OperationKind.DELETE, "products", {"id": product.id})
        record_event(
            operation="product_deleted",
            collection="products",
            record_id=product.id,
            before=product.to_dict(),
            actor=actor,
        )
        db.session.delete(product)
    logger.info("Deleted product %s", product_id)


def get_product(product_id: str) -> Product:
    product = db.session.get(Product, sync_service.resolve_id(product_id))
    if product is None:
        raise NotFoundError("product not found")
    return product


def find_by_tag(tag: str) -> Product | None:
    normalized = normalize_tag(tag)
    if not normalized:
        return None
    return db.session.query(Product).filter(Product.tag == normalized).first()


def find_by_barcode(barcode: str) -> Product | None:
    normalized = normalize_barcode(barcode)
    if not normalized:
        return None
    return db.session.query(Product).filter(Product.barcode == normalized).first()


def find_by_sku(sku: str) -> Product | None:
    if not sku:
        return None
    return db.session.query(Product).filter(Product.sku == str(sku).strip()).first()


def list_products(
    *,
    category: str | None = None,
    search: str | None = None,
    tag: str | None = None,
    only_low_stock: bool = False,
    include_inactive: bool = False,
    page: int | None = None,
    per_page: int | None = None,
) -> dict:
    """
    Product listing with optional pagination.

    Returns:
        Dict with 'items', 'count', and pagination metadata if paginated.
    """
    q = db.session.query(Product)
    if not include_inactive:
        q = q.filter(Product.is_active.is_(True))
    if category:
        q = q.filter(Product.category == category)
    if tag:
        q = q.filter(Product.tag == normalize_tag(tag))
    if search:
        like = f"%{search.strip()}%"
        q = q.filter(
            or_(
                Product.name.ilike(like),
                Product.sku.ilike(like),
                Product.tag.ilike(like),
                Product.barcode.ilike(like),
            )
        )
    if only_low_stock:
        q = q.filter(Product.quantity < Product.min_stock)
    q = q.order_by(Product.name.asc(), Product.id.asc())

    if page is None:
        products = q.all()
        return {"items": [p.to_dict() for p in products], "count": len(products)}

    per_page = min(per_page or 20, 100)
    page = max(page, 1)
    total = q.count()
    total_pages = (total + per_page - 1) // per_page if total > 0 else 1
    products = q.offset((page - 1) * per_page).limit(per_page).all()
    return {
        "items": [p.to_dict() for p in products],
        "count": len(products),
        "pagination": {
            "page": page,
            "per_page": per_page,
            "total": total,
            "total_pages": total_pages,
            "has_next": page < total_pages,
            "has_prev": page > 1,
        },
    }


def low_stock_products() -> list[Product]:
    return (
        db.session.query(Product)
        .filter(Product.is_active.is_(True), Product.quantity < Product.min_stock)
        .order_by(Product.name.asc())
        .all()
    )
