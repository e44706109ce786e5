# Overview: Durable queue of local mutations and its replay (drain) against the remote store.

"""
Sync queue invariants (authoritative)

Enqueue:
- enqueue() always succeeds locally and the entry is persisted before it
  returns (or inside the caller's unit of work, which commits it together
  with the cache change it describes).

Drain:
- Entries with status pending/error are replayed strictly in enqueue order
  (autoincrement id). Later entries may reference records created by
  earlier ones.
- insert: temporary ids are stripped so the remote store assigns the
  permanent id; the mapping temp -> permanent is recorded in IdMapping and
  the local cache is rekeyed.
- update/delete: addressed by permanent id. A target still carrying a
  temporary id with no mapping has never been inserted remotely and the
  entry fails with QueueReplayError.
- Every payload is resolved through IdMapping before submission.
- Each entry's outcome is committed on its own, so an interrupted drain
  leaves a correct, resumable queue. synced entries are never resubmitted.
- A failure never aborts the batch. Entries that touch a record whose
  earlier entry failed in the same drain are held back (left pending) so
  per-record order is preserved.
- Unavailable (network/timeout) keeps the entry pending; a rejection marks
  it error with the remote message. Both are retried on the next drain.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import timedelta

from ..extensions import db, remote as remote_ext
from ..models import IdMapping, Movement, MovementStatus, OperationKind, OperationStatus, PendingOperation
from ..remote import RemoteError, RemoteStore, RemoteUnavailableError
from stockroom.time_utils import utcnow
from . import local_store
from .local_store import is_temp_id

logger = logging.getLogger(__name__)

OUTSTANDING_STATUSES = (OperationStatus.PENDING.value, OperationStatus.ERROR.value)

# Collections refreshed from the remote store after a clean drain
SNAPSHOT_COLLECTIONS = ("categories", "collaborators", "products", "periodicities", "movements")

_drain_lock = threading.Lock()


class QueueReplayError(Exception):
    """A queued operation cannot be replayed in its current form."""


@dataclass
class DrainResult:
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    errors: list[dict] = field(default_factory=list)

    @property
    def attempted(self) -> int:
        return self.succeeded + self.failed

    def to_dict(self) -> dict:
        return {
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "errors": list(self.errors),
        }


# ----------------------------------------------------------------------
# Enqueue / inspection
# ----------------------------------------------------------------------

def enqueue(kind, collection: str, payload: dict, *, commit: bool = True) -> PendingOperation:
    """
    Append a pending operation. Persisted before returning unless the
    caller is inside a unit of work (then it commits with the caller).
    """
    kind = OperationKind(kind)
    local_store.get_spec(collection)
    if not isinstance(payload, dict):
        raise ValueError("payload must be a dict")

    op = PendingOperation(
        kind=kind.value,
        collection=collection,
        payload=dict(payload),
        status=OperationStatus.PENDING.value,
        attempts=0,
        created_at=utcnow(),
    )
    db.session.add(op)
    if commit and not local_store.in_unit_of_work():
        db.session.commit()
    else:
        db.session.flush()
    logger.debug("Queued %s %s %s (op %s)", kind.value, collection, payload.get("id"), op.id)
    return op


def pending_count() -> int:
    return (
        db.session.query(PendingOperation)
        .filter(PendingOperation.status.in_(OUTSTANDING_STATUSES))
        .count()
    )


def error_count() -> int:
    return (
        db.session.query(PendingOperation)
        .filter(PendingOperation.status == OperationStatus.ERROR.value)
        .count()
    )


def list_operations(*, status: str | None = None, limit: int = 200) -> list[PendingOperation]:
    q = db.session.query(PendingOperation)
    if status:
        q = q.filter(PendingOperation.status == OperationStatus(status).value)
    return q.order_by(PendingOperation.id.asc()).limit(limit).all()


def purge_synced(*, older_than_days: int = 30) -> int:
    """Delete synced entries older than the retention window."""
    cutoff = utcnow() - timedelta(days=older_than_days)
    count = (
        db.session.query(PendingOperation)
        .filter(
            PendingOperation.status == OperationStatus.SYNCED.value,
            PendingOperation.synced_at < cutoff,
        )
        .delete(synchronize_session=False)
    )
    db.session.commit()
    return count


# ----------------------------------------------------------------------
# Identifier indirection
# ----------------------------------------------------------------------

def resolve_id(value):
    """Follow IdMapping from a temporary id to its permanent id (identity otherwise)."""
    seen = set()
    while is_temp_id(value) and value not in seen:
        seen.add(value)
        mapping = db.session.get(IdMapping, value)
        if mapping is None:
            break
        value = mapping.permanent_id
    return value


def record_mapping(collection: str, temp_id: str, permanent_id: str) -> IdMapping:
    mapping = db.session.get(IdMapping, temp_id)
    if mapping is None:
        mapping = IdMapping(temp_id=temp_id, collection=collection, permanent_id=permanent_id, created_at=utcnow())
        db.session.add(mapping)
    else:
        mapping.permanent_id = permanent_id
    db.session.flush()
    return mapping


def _resolve_payload(collection: str, payload: dict) -> dict:
    spec = local_store.get_spec(collection)
    resolved = dict(payload)
    if spec.key in resolved:
        resolved[spec.key] = resolve_id(resolved[spec.key])
    for column in spec.references:
        if column in resolved:
            resolved[column] = resolve_id(resolved[column])
    return resolved


def _unresolved_references(collection: str, record: dict) -> list[str]:
    spec = local_store.get_spec(collection)
    return [
        f"{column}={record[column]}"
        for column in spec.references
        if is_temp_id(record.get(column))
    ]


def _record_keys(op: PendingOperation) -> set[tuple[str, str]]:
    """Records an operation touches: its own target plus the records it references."""
    spec = local_store.get_spec(op.collection)
    payload = op.payload or {}
    keys = set()
    target = payload.get(spec.key)
    if target is not None:
        keys.add((op.collection, resolve_id(target)))
    for column, collection in spec.references.items():
        if collection == "*":
            collection = payload.get("collection")
        value = payload.get(column)
        if value is not None and collection:
            keys.add((collection, resolve_id(value)))
    return keys


# ----------------------------------------------------------------------
# Replay
# ----------------------------------------------------------------------

def _get_remote(remote: RemoteStore | None) -> RemoteStore:
    return remote if remote is not None else remote_ext.get_store()


def _replay_insert(op: PendingOperation, remote: RemoteStore) -> None:
    temp_id = (op.payload or {}).get("id")

    if op.remote_id is None:
        record = _resolve_payload(op.collection, op.payload)
        missing = _unresolved_references(op.collection, record)
        if missing:
            raise QueueReplayError(f"references records not yet synced: {', '.join(missing)}")

        body = local_store.to_remote(op.collection, record)
        if is_temp_id(body.get("id")):
            body.pop("id")
        if op.collection == "movements":
            body["status"] = MovementStatus.CONFIRMED.value

        created = remote.insert(op.collection, body)
        remote_id = str(created.get("id") or record.get("id") or "")

        # Persist the remote identity at once: a failure in the follow-up
        # steps must not lead to a second remote insert.
        with local_store.unit_of_work():
            op.remote_id = remote_id or None
            if is_temp_id(temp_id) and remote_id:
                record_mapping(op.collection, temp_id, remote_id)
                local_store.rekey(op.collection, temp_id, remote_id)
                if op.collection == "products":
                    from .concurrency import rename_product_lock
                    rename_product_lock(temp_id, remote_id)

    if op.collection == "movements":
        _after_movement_insert(op, remote)


def _after_movement_insert(op: PendingOperation, remote: RemoteStore) -> None:
    """Apply the movement's signed delta to the remote quantity and confirm it locally."""
    from .movement_service import signed_quantity

    payload = op.payload or {}
    product_id = resolve_id(payload.get("product_id"))
    if is_temp_id(product_id):
        raise QueueReplayError(f"product {product_id} not yet synced")

    delta = signed_quantity(payload["kind"], float(payload["quantity"]))
    remote.adjust_stock_quantity(product_id, delta)

    movement_id = op.remote_id or resolve_id(payload.get("id"))
    movement = db.session.get(Movement, movement_id) if movement_id else None
    if movement is not None and movement.status == MovementStatus.PENDING_SYNC.value:
        movement.status = MovementStatus.CONFIRMED.value
        db.session.flush()


def _replay_update(op: PendingOperation, remote: RemoteStore) -> None:
    record = _resolve_payload(op.collection, op.payload)
    target = record.get("id")
    if target is None:
        raise QueueReplayError("update without target id")
    if is_temp_id(target):
        raise QueueReplayError(f"{op.collection} {target} was never inserted remotely")
    missing = _unresolved_references(op.collection, record)
    if missing:
        raise QueueReplayError(f"references records not yet synced: {', '.join(missing)}")
    changes = {k: v for k, v in local_store.to_remote(op.collection, record).items() if k != "id"}
    remote.update(op.collection, target, changes)


def _replay_delete(op: PendingOperation, remote: RemoteStore) -> None:
    target = resolve_id((op.payload or {}).get("id"))
    if target is None:
        raise QueueReplayError("delete without target id")
    if is_temp_id(target):
        raise QueueReplayError(f"{op.collection} {target} was never inserted remotely")
    remote.delete(op.collection, target)


_REPLAYERS = {
    OperationKind.INSERT: _replay_insert,
    OperationKind.UPDATE: _replay_update,
    OperationKind.DELETE: _replay_delete,
}


def _mark_failed(op_id: int, exc: Exception) -> None:
    db.session.rollback()
    op = db.session.get(PendingOperation, op_id)
    if op is None:
        return
    op.attempts = (op.attempts or 0) + 1
    op.last_attempt_at = utcnow()
    op.last_error = str(exc) or exc.__class__.__name__
    if not isinstance(exc, RemoteUnavailableError):
        op.status = OperationStatus.ERROR.value
    db.session.commit()


def _replay_one(op: PendingOperation, remote: RemoteStore) -> None:
    if op.status == OperationStatus.SYNCED.value:
        return
    op_id = op.id
    replayer = _REPLAYERS[OperationKind(op.kind)]
    try:
        replayer(op, remote)
    except (RemoteError, QueueReplayError) as exc:
        _mark_failed(op_id, exc)
        raise

    op.attempts = (op.attempts or 0) + 1
    op.last_attempt_at = utcnow()
    op.status = OperationStatus.SYNCED.value
    op.synced_at = op.last_attempt_at
    op.last_error = None
    db.session.commit()


def replay(operation_id: int, *, remote: RemoteStore | None = None) -> PendingOperation:
    """
    Replay one queued operation now and record its outcome.

    Raises the underlying RemoteError/QueueReplayError after recording it.
    """
    op = db.session.get(PendingOperation, operation_id)
    if op is None:
        raise LookupError(f"pending operation {operation_id} not found")
    _replay_one(op, _get_remote(remote))
    return op


def drain(*, remote: RemoteStore | None = None) -> DrainResult:
    """
    Replay every pending/error operation in enqueue order.

    Only one drain runs at a time per process; a concurrent call returns an
    empty result immediately.
    """
    result = DrainResult()
    if not _drain_lock.acquire(blocking=False):
        logger.info("Drain already in progress; skipping")
        return result

    try:
        remote = _get_remote(remote)
        op_ids = [
            row.id
            for row in db.session.query(PendingOperation.id)
            .filter(PendingOperation.status.in_(OUTSTANDING_STATUSES))
            .order_by(PendingOperation.id.asc())
            .all()
        ]
        blocked: dict[tuple[str, str], int] = {}

        for op_id in op_ids:
            op = db.session.get(PendingOperation, op_id)
            if op is None or op.status == OperationStatus.SYNCED.value:
                continue

            keys = _record_keys(op)
            blocker = next((blocked[k] for k in keys if k in blocked), None)
            if blocker is not None:
                result.skipped += 1
                for key in keys:
                    blocked.setdefault(key, op_id)
                continue

            try:
                _replay_one(op, remote)
                result.succeeded += 1
            except (RemoteError, QueueReplayError) as exc:
                result.failed += 1
                result.errors.append({"operation_id": op_id, "error": str(exc)})
                for key in keys:
                    blocked.setdefault(key, op_id)
                logger.warning("Sync operation %s (%s %s) failed: %s", op_id, op.kind, op.collection, exc)
            except Exception as exc:
                # Unexpected local failure: record it on the entry and keep going
                logger.exception("Sync operation %s crashed", op_id)
                _mark_failed(op_id, exc)
                result.failed += 1
                result.errors.append({"operation_id": op_id, "error": str(exc)})
                for key in keys:
                    blocked.setdefault(key, op_id)

        if op_ids:
            logger.info(
                "Drain finished: %s synced, %s failed, %s skipped",
                result.succeeded,
                result.failed,
                result.skipped,
            )
        return result
    finally:
        _drain_lock.release()


# ----------------------------------------------------------------------
# Cache refresh
# ----------------------------------------------------------------------

def pull_remote_snapshot(*, remote: RemoteStore | None = None) -> dict:
    """
    Replace the cached collections with the remote copies.

    Refused while anything is still queued: the local optimistic state would
    otherwise be overwritten by a remote copy that does not include it yet.

    Instances loaded before the pull are invalidated; re-read them by id.
    """
    if pending_count() > 0:
        return {"pulled": False, "reason": "pending operations"}

    if not _drain_lock.acquire(blocking=False):
        return {"pulled": False, "reason": "drain in progress"}
    try:
        remote = _get_remote(remote)
        fetched = {name: remote.select(name) for name in SNAPSHOT_COLLECTIONS}

        fetched["movements"] = sorted(
            fetched["movements"],
            key=lambda r: (str(r.get("occurred_at") or ""), str(r.get("created_at") or ""), str(r.get("id"))),
        )

        counts = {}
        with local_store.unit_of_work():
            # Children first so nothing references a cleared parent mid-way
            for name in reversed(SNAPSHOT_COLLECTIONS):
                local_store.clear(name)
            for name in SNAPSHOT_COLLECTIONS:
                for record in fetched[name]:
                    local_store.put(name, record)
                counts[name] = len(fetched[name])

        logger.info("Pulled remote snapshot: %s", counts)
        return {"pulled": True, "counts": counts}
    finally:
        _drain_lock.release()
