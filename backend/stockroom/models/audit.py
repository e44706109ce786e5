from __future__ import annotations

from ..extensions import db
from stockroom.time_utils import to_utc_z


class AuditEvent(db.Model):
    """
    Append-only audit trail of local mutations.

    - No updates or deletes of existing events.
    - Written inside the same transaction as the mutation it records.
    - Mirrored to the remote 'audit_log' collection through the sync queue.
    """
    __tablename__ = "audit_events"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    operation = db.Column(db.String(32), nullable=False, index=True)
    collection = db.Column(db.String(64), nullable=False, index=True)
    record_id = db.Column(db.String(64), nullable=True, index=True)
    before = db.Column(db.JSON, nullable=True)
    after = db.Column(db.JSON, nullable=True)
    actor = db.Column(db.String(120), nullable=True)
    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)

    def __repr__(self) -> str:
        return f"<AuditEvent id={self.id} {self.operation} {self.collection}:{self.record_id}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "operation": self.operation,
            "collection": self.collection,
            "record_id": self.record_id,
            "before": self.before,
            "after": self.after,
            "actor": self.actor,
            "occurred_at": to_utc_z(self.occurred_at),
        }
