# Overview: Collaborators, their holding periodicities and product categories.

from __future__ import annotations

import logging

from ..extensions import db
from ..models import Category, Collaborator, CollaboratorPeriodicity, OperationKind, Product
from ..validation import ConflictError, ModelValidationPolicy, NotFoundError, ValidationError, validate_payload
from stockroom.time_utils import utcnow
from . import local_store, sync_service
from .audit_service import record_event

logger = logging.getLogger(__name__)

COLLABORATOR_POLICY = ModelValidationPolicy(
    writable_fields={"code", "name", "role", "contract", "is_storekeeper", "can_handle_deliveries", "is_active"},
    required_on_create={"code", "name"},
)


def add_collaborator(payload: dict, *, actor: str) -> Collaborator:
    patch = validate_payload(model=Collaborator, payload=payload, policy=COLLABORATOR_POLICY, partial=False)
    if db.session.query(Collaborator.id).filter_by(code=patch["code"]).first() is not None:
        raise ConflictError(f"collaborator code already exists: {patch['code']}")

    with local_store.unit_of_work():
        collaborator = Collaborator(id=local_store.new_temp_id(), created_at=utcnow())
        for key, value in patch.items():
            setattr(collaborator, key, value)
        db.session.add(collaborator)
        db.session.flush()
        sync_service.enqueue(OperationKind.INSERT, "collaborators", collaborator.to_dict())

        record_event(
            operation="collaborator_added",
            collection="collaborators",
            record_id=collaborator.id,
            after=collaborator.to_dict(),
            actor=actor,
        )
    logger.info("Added collaborator %s", collaborator.code)
    return collaborator


def update_collaborator(code: str, payload: dict, *, actor: str) -> Collaborator:
    if isinstance(payload, dict) and "code" in payload:
        raise ValidationError("code cannot be changed")
    patch = validate_payload(model=Collaborator, payload=payload, policy=COLLABORATOR_POLICY, partial=True)
    collaborator = get_collaborator(code)

    with local_store.unit_of_work():
        before = {k: getattr(collaborator, k) for k in patch}
        for key, value in patch.items():
            setattr(collaborator, key, value)
        db.session.flush()
        sync_service.enqueue(OperationKind.UPDATE, "collaborators", {"id": collaborator.id, **patch})

        record_event(
            operation="collaborator_updated",
            collection="collaborators",
            record_id=collaborator.id,
            before=before,
            after=dict(patch),
            actor=actor,
        )
    return collaborator


def get_collaborator(code: str) -> Collaborator:
    collaborator = db.session.query(Collaborator).filter_by(code=str(code).strip()).first()
    if collaborator is None:
        raise NotFoundError("collaborator not found")
    return collaborator


def list_collaborators(
    *,
    storekeepers_only: bool = False,
    handlers_only: bool = False,
    include_inactive: bool = False,
) -> list[Collaborator]:
    q = db.session.query(Collaborator)
    if not include_inactive:
        q = q.filter(Collaborator.is_active.is_(True))
    if storekeepers_only:
        q = q.filter(Collaborator.is_storekeeper.is_(True))
    if handlers_only:
        q = q.filter(Collaborator.can_handle_deliveries.is_(True))
    return q.order_by(Collaborator.name.asc()).all()


# ----------------------------------------------------------------------
# Periodicities
# ----------------------------------------------------------------------

def set_periodicity(
    collaborator_code: str,
    product_id: str,
    max_days,
    *,
    actor: str,
    is_active: bool = True,
) -> CollaboratorPeriodicity:
    """Create or replace the holding limit for a collaborator/product pair."""
    collaborator = get_collaborator(collaborator_code)
    product = db.session.get(Product, sync_service.resolve_id(product_id))
    if product is None:
        raise ValidationError("product not found")
    try:
        days = int(max_days)
    except (TypeError, ValueError):
        raise ValidationError("max_days must be an integer") from None
    if days <= 0:
        raise ValidationError("max_days must be > 0")

    existing = (
        db.session.query(CollaboratorPeriodicity)
        .filter_by(collaborator_code=collaborator.code, product_id=product.id)
        .first()
    )
    with local_store.unit_of_work():
        if existing is None:
            periodicity = CollaboratorPeriodicity(
                id=local_store.new_temp_id(),
                collaborator_code=collaborator.code,
                product_id=product.id,
                max_days=days,
                is_active=bool(is_active),
            )
            db.session.add(periodicity)
            db.session.flush()
            kind, payload, before = OperationKind.INSERT, periodicity.to_dict(), None
        else:
            periodicity = existing
            before = periodicity.to_dict()
            periodicity.max_days = days
            periodicity.is_active = bool(is_active)
            db.session.flush()
            kind = OperationKind.UPDATE
            payload = {"id": periodicity.id, "max_days": days, "is_active": periodicity.is_active}

        sync_service.enqueue(kind, "periodicities", payload)

        record_event(
            operation="periodicity_set",
            collection="periodicities",
            record_id=periodicity.id,
            before=before,
            after=periodicity.to_dict(),
            actor=actor,
        )
    return periodicity


def list_periodicities(
    collaborator_code: str | None = None,
    *,
    active_only: bool = False,
) -> list[CollaboratorPeriodicity]:
    q = db.session.query(CollaboratorPeriodicity)
    if collaborator_code:
        q = q.filter(CollaboratorPeriodicity.collaborator_code == collaborator_code)
    if active_only:
        q = q.filter(CollaboratorPeriodicity.is_active.is_(True))
    return q.order_by(CollaboratorPeriodicity.collaborator_code.asc(), CollaboratorPeriodicity.product_id.asc()).all()


# ----------------------------------------------------------------------
# Categories
# ----------------------------------------------------------------------

def list_categories() -> list[Category]:
    return db.session.query(Category).order_by(Category.name.asc()).all()


def add_category(name: str, *, actor: str | None = None) -> Category:
    name = (name or "").strip()
    if not name:
        raise ValidationError("name is required")
    if db.session.query(Category.id).filter(Category.name == name).first() is not None:
        raise ConflictError(f"category already exists: {name}")

    with local_store.unit_of_work():
        category = Category(id=local_store.new_temp_id(), name=name)
        db.session.add(category)
        db.session.flush()
        sync_service.enqueue(OperationKind.INSERT, "categories", category.to_dict())

        record_event(
            operation="category_added",
            collection="categories",
            record_id=category.id,
            after=category.to_dict(),
            actor=actor,
        )
    return category
