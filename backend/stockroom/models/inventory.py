from __future__ import annotations

from enum import Enum

from ..extensions import db
from stockroom.time_utils import to_utc_z


UNITS = ("un", "kg", "cx", "lt", "pç")

DEFAULT_CATEGORIES = (
    "Ferramentas",
    "EPI",
    "Material de Escritório",
    "Limpeza",
    "Equipamentos",
    "Outros",
)


class MovementKind(str, Enum):
    """Closed set of ledger entry kinds. Every consumer must handle all four."""

    RECEIPT = "receipt"
    WITHDRAWAL = "withdrawal"
    WRITE_OFF = "write_off"
    SUPPLIER_RETURN = "supplier_return"


class MovementStatus(str, Enum):
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    PENDING_SYNC = "pending_sync"


class Product(db.Model):
    """
    Product master data plus the cached quantity projection.

    QUANTITY DESIGN DECISION:
    Product.quantity is a projection of the movement ledger, never an
    editable field. It is written only by the movement service, in the same
    transaction that appends the movement, and can be rebuilt from the
    ledger at any time (see movement_service.rebuild_projection).

    IDENTIFIERS:
    - id: temporary ("temp_...") until the remote store assigns a permanent one
    - sku: stock-keeping code, unique
    - tag: optional asset tag, upper-cased, unique when present
    - barcode: optional scanned code, unique when present
    """
    __tablename__ = "products"
    __table_args__ = (
        db.Index("ix_products_category_name", "category", "name"),
        db.Index("ix_products_active", "is_active"),
    )

    id = db.Column(db.String(64), primary_key=True)

    sku = db.Column(db.String(64), nullable=False, unique=True)
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    category = db.Column(db.String(120), nullable=False, default="Outros")
    unit = db.Column(db.String(8), nullable=False, default="un")
    location = db.Column(db.String(120), nullable=True)

    # Projection of the ledger; see docstring
    quantity = db.Column(db.Float, nullable=False, default=0)
    min_stock = db.Column(db.Float, nullable=False, default=0)

    tag = db.Column(db.String(64), nullable=True, unique=True)
    barcode = db.Column(db.String(64), nullable=True, unique=True)
    lessor = db.Column(db.String(255), nullable=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    @property
    def is_low_stock(self) -> bool:
        return (self.quantity or 0) < (self.min_stock or 0)

    def __repr__(self) -> str:
        return f"<Product id={self.id} sku={self.sku!r} name={self.name!r} quantity={self.quantity}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sku": self.sku,
            "name": self.name,
            "description": self.description,
            "category": self.category,
            "unit": self.unit,
            "location": self.location,
            "quantity": self.quantity,
            "min_stock": self.min_stock,
            "tag": self.tag,
            "barcode": self.barcode,
            "lessor": self.lessor,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class Movement(db.Model):
    """
    Append-only ledger entry.

    Once written, kind and quantity never change. Cancellation flips status
    to 'cancelled' and leaves the row (and every other row's
    quantity_before/quantity_after snapshot) untouched.

    Two optional collaborator roles:
    - collaborator_code: who holds (or held) the material
    - handled_by_code: who physically processed the transaction
    """
    __tablename__ = "movements"
    __table_args__ = (
        db.Index("ix_movements_product_occurred", "product_id", "occurred_at"),
        db.Index("ix_movements_collaborator_occurred", "collaborator_code", "occurred_at"),
    )

    id = db.Column(db.String(64), primary_key=True)
    code = db.Column(db.String(32), nullable=False, index=True)

    # Local insertion order; breaks occurred_at ties
    seq = db.Column(db.Integer, nullable=False, index=True)

    product_id = db.Column(
        db.String(64),
        db.ForeignKey("products.id", onupdate="CASCADE"),
        nullable=False,
        index=True,
    )

    kind = db.Column(db.String(32), nullable=False, index=True)
    quantity = db.Column(db.Float, nullable=False)
    quantity_before = db.Column(db.Float, nullable=False)
    quantity_after = db.Column(db.Float, nullable=False)

    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, index=True)
    actor = db.Column(db.String(120), nullable=False)

    collaborator_code = db.Column(db.String(64), nullable=True, index=True)
    handled_by_code = db.Column(db.String(64), nullable=True)

    tag = db.Column(db.String(64), nullable=True)
    lessor = db.Column(db.String(255), nullable=True)
    unit_price = db.Column(db.Float, nullable=True)
    total_value = db.Column(db.Float, nullable=True)
    notes = db.Column(db.Text, nullable=True)
    purpose = db.Column(db.String(255), nullable=True)

    status = db.Column(
        db.String(16),
        nullable=False,
        default=MovementStatus.PENDING_SYNC.value,
        index=True,
    )

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    product = db.relationship("Product", backref=db.backref("movements", lazy=True))

    @property
    def movement_kind(self) -> MovementKind:
        return MovementKind(self.kind)

    @property
    def is_cancelled(self) -> bool:
        return self.status == MovementStatus.CANCELLED.value

    def __repr__(self) -> str:
        return f"<Movement id={self.id} kind={self.kind} quantity={self.quantity} status={self.status}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "code": self.code,
            "product_id": self.product_id,
            "kind": self.kind,
            "quantity": self.quantity,
            "quantity_before": self.quantity_before,
            "quantity_after": self.quantity_after,
            "occurred_at": to_utc_z(self.occurred_at),
            "actor": self.actor,
            "collaborator_code": self.collaborator_code,
            "handled_by_code": self.handled_by_code,
            "tag": self.tag,
            "lessor": self.lessor,
            "unit_price": self.unit_price,
            "total_value": self.total_value,
            "notes": self.notes,
            "purpose": self.purpose,
            "status": self.status,
            "created_at": to_utc_z(self.created_at),
        }


class Category(db.Model):
    __tablename__ = "categories"

    id = db.Column(db.String(64), primary_key=True)
    name = db.Column(db.String(120), nullable=False, unique=True)

    def __repr__(self) -> str:
        return f"<Category id={self.id} name={self.name!r}>"

    def to_dict(self) -> dict:
        return {"id": self.id, "name": self.name}
