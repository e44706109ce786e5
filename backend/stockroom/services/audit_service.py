# Overview: Append-only audit trail of local mutations, mirrored to the remote store.

from __future__ import annotations

from typing import Optional

from flask import current_app

from ..extensions import db
from ..models import AuditEvent, OperationKind
from stockroom.time_utils import utcnow, to_utc_z
"""
Audit trail invariants

- Append-only: no updates/deletes of existing events (rekey only repoints
  record_id from a temporary id to its permanent id).
- Events are written inside the same local transaction as the mutation
  they record.
- When AUDIT_MIRROR_REMOTE is on, each event is also queued as an insert
  into the remote audit_log collection.
"""


def record_event(
    *,
    operation: str,
    collection: str,
    record_id: str | None,
    before: Optional[dict] = None,
    after: Optional[dict] = None,
    actor: str | None = None,
) -> AuditEvent:
    """
    Append an audit event. Caller owns the transaction (flush only).
    """
    ev = AuditEvent(
        operation=operation,
        collection=collection,
        record_id=record_id,
        before=before,
        after=after,
        actor=actor,
        occurred_at=utcnow(),
    )
    db.session.add(ev)
    db.session.flush()

    if current_app.config.get("AUDIT_MIRROR_REMOTE", False):
        from .sync_service import enqueue

        enqueue(
            OperationKind.INSERT,
            "audit_log",
            {
                "operation": operation,
                "collection": collection,
                "record_id": record_id,
                "before": before,
                "after": after,
                "actor": actor,
                "occurred_at": to_utc_z(ev.occurred_at),
            },
            commit=False,
        )
    return ev


def list_events(
    *,
    collection: str | None = None,
    record_id: str | None = None,
    limit: int = 200,
) -> list[AuditEvent]:
    q = db.session.query(AuditEvent)
    if collection:
        q = q.filter(AuditEvent.collection == collection)
    if record_id:
        q = q.filter(AuditEvent.record_id == record_id)
    return q.order_by(AuditEvent.occurred_at.desc(), AuditEvent.id.desc()).limit(limit).all()
