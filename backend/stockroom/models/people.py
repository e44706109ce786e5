from __future__ import annotations

from ..extensions import db
from stockroom.time_utils import to_utc_z


class Collaborator(db.Model):
    """
    Person who may hold material or handle deliveries.

    `code` is the business key (employee number) and is what movements and
    periodicities reference; `id` is the internal/remote row identifier.
    """
    __tablename__ = "collaborators"

    id = db.Column(db.String(64), primary_key=True)
    code = db.Column(db.String(64), nullable=False, unique=True, index=True)
    name = db.Column(db.String(255), nullable=False)
    role = db.Column(db.String(120), nullable=True)
    contract = db.Column(db.String(120), nullable=True)

    is_storekeeper = db.Column(db.Boolean, nullable=False, default=False)
    can_handle_deliveries = db.Column(db.Boolean, nullable=False, default=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def __repr__(self) -> str:
        return f"<Collaborator code={self.code!r} name={self.name!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "code": self.code,
            "name": self.name,
            "role": self.role,
            "contract": self.contract,
            "is_storekeeper": self.is_storekeeper,
            "can_handle_deliveries": self.can_handle_deliveries,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }


class CollaboratorPeriodicity(db.Model):
    """Maximum number of days a collaborator may hold a product before it is overdue."""
    __tablename__ = "collaborator_periodicities"
    __table_args__ = (
        db.UniqueConstraint("collaborator_code", "product_id", name="uq_periodicity_pair"),
    )

    id = db.Column(db.String(64), primary_key=True)
    collaborator_code = db.Column(db.String(64), nullable=False, index=True)
    product_id = db.Column(
        db.String(64),
        db.ForeignKey("products.id", onupdate="CASCADE"),
        nullable=False,
        index=True,
    )
    max_days = db.Column(db.Integer, nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    def __repr__(self) -> str:
        return (
            f"<CollaboratorPeriodicity collaborator={self.collaborator_code!r} "
            f"product={self.product_id} max_days={self.max_days}>"
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "collaborator_code": self.collaborator_code,
            "product_id": self.product_id,
            "max_days": self.max_days,
            "is_active": self.is_active,
        }
