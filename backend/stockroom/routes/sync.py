# Overview: Flask API routes for the sync queue and connectivity signals.

from flask import Blueprint, current_app, request

from ..connectivity import get_monitor
from ..remote import RemoteError
from ..services import sync_service

sync_bp = Blueprint("sync", __name__, url_prefix="/api/sync")


@sync_bp.get("/status")
def status():
    return get_monitor().snapshot()


@sync_bp.get("/operations")
def list_operations():
    status_filter = request.args.get("status") or None
    try:
        ops = sync_service.list_operations(
            status=status_filter,
            limit=request.args.get("limit", default=200, type=int),
        )
    except ValueError:
        return {"error": "invalid status"}, 400
    return {"items": [op.to_dict() for op in ops], "count": len(ops)}


@sync_bp.post("/now")
def sync_now():
    """Manual trigger. 503 while offline."""
    monitor = get_monitor()
    if not monitor.is_online:
        return {"error": "offline", "pending": sync_service.pending_count()}, 503
    result = monitor.sync_now()
    return {
        "result": result.to_dict() if result is not None else None,
        "status": monitor.snapshot(),
    }


@sync_bp.post("/online")
def network_available():
    result = get_monitor().network_available()
    return {
        "result": result.to_dict() if result is not None else None,
        "status": get_monitor().snapshot(),
    }


@sync_bp.post("/offline")
def network_lost():
    get_monitor().network_lost()
    return get_monitor().snapshot()


@sync_bp.post("/pull")
def pull():
    if not get_monitor().is_online:
        return {"error": "offline"}, 503
    try:
        result = sync_service.pull_remote_snapshot()
    except RemoteError as e:
        current_app.logger.exception("Remote snapshot failed")
        return {"error": str(e)}, 502
    if not result["pulled"]:
        return result, 409
    return result
