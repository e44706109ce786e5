# backend/stockroom/routes/system.py
"""
System endpoints.

/health reports the local store, the ledger projection and the sync queue.
/api/audit lists the local audit trail.
"""

import time
from flask import Blueprint, current_app, request
from ..extensions import db, remote
from ..models import Movement, Product
from ..connectivity import get_monitor
from ..services import audit_service, sync_service
from ..services.movement_service import movement_counts_by_kind
from stockroom.time_utils import utcnow

system_bp = Blueprint("system", __name__)


def check_database_health() -> dict:
    """
    Check database connectivity and basic operations.

    Returns dict with status and details.
    """
    start_time = time.time()
    try:
        product_count = db.session.query(Product).count()
        movement_count = db.session.query(Movement).count()
        elapsed_ms = (time.time() - start_time) * 1000

        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": {
                "products": product_count,
                "movements": movement_count,
                "movements_by_kind": movement_counts_by_kind(),
            }
        }
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Database error"
        }


def check_sync_health() -> dict:
    """Queue entries in error make the sync check degraded, not unhealthy."""
    try:
        pending = sync_service.pending_count()
        errors = sync_service.error_count()
        monitor = get_monitor()
        details = {
            "state": monitor.state.value,
            "remote_configured": remote.is_configured(),
            "pending": pending,
            "errors": errors,
        }
        if errors:
            return {"status": "degraded", "warning": f"{errors} operation(s) in error", "details": details}
        return {"status": "healthy", "details": details}
    except Exception:
        current_app.logger.exception("Sync health check failed")
        return {"status": "unhealthy", "error": "Sync queue error"}


@system_bp.get("/health")
def health():
    """
    Returns:
    - 200: healthy or degraded
    - 503: one or more checks unhealthy
    """
    start_time = time.time()

    database_health = check_database_health()
    sync_health = check_sync_health()

    all_checks = [database_health, sync_health]
    unhealthy_count = sum(1 for check in all_checks if check["status"] == "unhealthy")
    degraded_count = sum(1 for check in all_checks if check["status"] == "degraded")

    if unhealthy_count > 0:
        overall_status = "unhealthy"
        http_status = 503
    elif degraded_count > 0:
        overall_status = "degraded"
        http_status = 200
    else:
        overall_status = "healthy"
        http_status = 200

    total_elapsed_ms = (time.time() - start_time) * 1000

    response = {
        "status": overall_status,
        "timestamp": utcnow().isoformat() + "Z",
        "total_latency_ms": round(total_elapsed_ms, 2),
        "checks": {
            "database": database_health,
            "sync": sync_health,
        }
    }

    return response, http_status


@system_bp.get("/api/audit")
def audit_trail():
    """
    Query params:
    - collection: products, movements, collaborators, ...
    - record_id: temporary ids are followed to their permanent id
    - limit: default 200, at most 1000
    """
    limit = request.args.get("limit", 200, type=int)
    if limit < 1:
        return {"error": "limit must be >= 1"}, 400

    record_id = request.args.get("record_id") or None
    events = audit_service.list_events(
        collection=request.args.get("collection") or None,
        record_id=sync_service.resolve_id(record_id) if record_id else None,
        limit=min(limit, 1000),
    )
    return {"items": [e.to_dict() for e in events], "count": len(events)}
