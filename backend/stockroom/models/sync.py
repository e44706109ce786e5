from __future__ import annotations

from enum import Enum

from ..extensions import db
from stockroom.time_utils import to_utc_z


class OperationKind(str, Enum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


class OperationStatus(str, Enum):
    PENDING = "pending"
    SYNCED = "synced"
    ERROR = "error"


class PendingOperation(db.Model):
    """
    Durable sync queue entry.

    FIFO: the autoincrement id is the enqueue order and the replay order.
    Later entries may reference records created by earlier ones through
    temporary identifiers; those are resolved through IdMapping at replay.

    STATE MACHINE:
        pending -> synced
        pending -> error -> (next drain) -> synced | error
    synced is terminal.
    """
    __tablename__ = "pending_operations"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    kind = db.Column(db.String(16), nullable=False)
    collection = db.Column(db.String(64), nullable=False, index=True)
    payload = db.Column(db.JSON, nullable=False)

    status = db.Column(db.String(16), nullable=False, default=OperationStatus.PENDING.value, index=True)
    attempts = db.Column(db.Integer, nullable=False, default=0)
    last_error = db.Column(db.Text, nullable=True)
    last_attempt_at = db.Column(db.DateTime(timezone=True), nullable=True)
    synced_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # Permanent id confirmed by the remote store (inserts only)
    remote_id = db.Column(db.String(64), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    @property
    def record_id(self) -> str | None:
        return (self.payload or {}).get("id")

    def __repr__(self) -> str:
        return f"<PendingOperation id={self.id} {self.kind} {self.collection} status={self.status}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "kind": self.kind,
            "collection": self.collection,
            "record_id": self.record_id,
            "payload": self.payload,
            "status": self.status,
            "attempts": self.attempts,
            "last_error": self.last_error,
            "last_attempt_at": to_utc_z(self.last_attempt_at),
            "synced_at": to_utc_z(self.synced_at),
            "remote_id": self.remote_id,
            "created_at": to_utc_z(self.created_at),
        }


class IdMapping(db.Model):
    """Indirection table: temporary identifier -> permanent remote identifier."""
    __tablename__ = "id_mappings"

    temp_id = db.Column(db.String(64), primary_key=True)
    collection = db.Column(db.String(64), nullable=False)
    permanent_id = db.Column(db.String(64), nullable=False, index=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def __repr__(self) -> str:
        return f"<IdMapping {self.temp_id} -> {self.permanent_id}>"

    def to_dict(self) -> dict:
        return {
            "temp_id": self.temp_id,
            "collection": self.collection,
            "permanent_id": self.permanent_id,
            "created_at": to_utc_z(self.created_at),
        }
