# Overview: Flask API routes for the movement ledger; parses input and returns JSON responses.

# backend/stockroom/routes/movements.py
"""
Movement routes.

POST /api/movements applies one movement locally and queues it for the
remote store; the response carries the pending-operation count so clients
can show a non-blocking sync indicator.
"""
from flask import Blueprint, Response, current_app, request

from ..remote import RemoteUnavailableError
from ..services import movement_service, sync_service
from ..services.export_service import export_movements_csv
from ..services.movement_service import InsufficientStockError
from ..validation import ConflictError, NotFoundError, ValidationError
from stockroom.time_utils import utcnow

movements_bp = Blueprint("movements", __name__, url_prefix="/api/movements")

METADATA_FIELDS = (
    "collaborator_code",
    "handled_by_code",
    "tag",
    "unit_price",
    "total_value",
    "notes",
    "purpose",
    "lessor",
    "occurred_at",
)


def _metadata(payload: dict) -> dict:
    return {k: payload[k] for k in METADATA_FIELDS if k in payload}


def _filters() -> dict:
    return {
        "kind": request.args.get("kind") or None,
        "collaborator_code": request.args.get("collaborator_code") or None,
        "product_id": request.args.get("product_id") or None,
        "sku": request.args.get("sku") or None,
        "status": request.args.get("status") or None,
        "period_days": request.args.get("period_days", type=int),
        "start": request.args.get("start") or None,
        "end": request.args.get("end") or None,
    }


def _created(movement):
    return {"movement": movement.to_dict(), "pending_operations": sync_service.pending_count()}, 201


@movements_bp.get("")
def list_movements():
    try:
        movements = movement_service.list_movements(
            **_filters(),
            limit=request.args.get("limit", default=500, type=int),
        )
    except ValidationError as e:
        return {"error": str(e)}, 400
    return {"items": [m.to_dict() for m in movements], "count": len(movements)}


@movements_bp.get("/<movement_id>")
def get_movement(movement_id: str):
    try:
        movement = movement_service.get_movement(movement_id)
    except NotFoundError:
        return {"error": "Movement not found"}, 404
    return movement.to_dict()


@movements_bp.post("")
def apply_movement_route():
    """
    Body: product_id, kind, quantity, actor, plus optional metadata.

    400 on validation errors (including insufficient stock); never queued.
    """
    payload = request.get_json(silent=True) or {}

    try:
        movement = movement_service.apply_movement(
            payload.get("product_id"),
            payload.get("kind"),
            payload.get("quantity"),
            actor=payload.get("actor"),
            **_metadata(payload),
        )
    except InsufficientStockError as e:
        return {"error": str(e), "available": e.available}, 400
    except ValidationError as e:
        return {"error": str(e)}, 400
    except Exception:
        current_app.logger.exception("Movement failed")
        return {"error": "Internal error"}, 500

    return _created(movement)


@movements_bp.post("/quick-withdrawal")
def quick_withdrawal_route():
    """Body: collaborator_code, quantity, actor, and product_id, tag or barcode."""
    payload = request.get_json(silent=True) or {}
    metadata = _metadata(payload)
    metadata.pop("collaborator_code", None)
    metadata.pop("tag", None)

    try:
        movement = movement_service.quick_withdrawal(
            payload.get("collaborator_code"),
            payload.get("quantity"),
            actor=payload.get("actor"),
            product_id=payload.get("product_id"),
            tag=payload.get("tag"),
            barcode=payload.get("barcode"),
            **metadata,
        )
    except InsufficientStockError as e:
        return {"error": str(e), "available": e.available}, 400
    except ValidationError as e:
        return {"error": str(e)}, 400

    return _created(movement)


@movements_bp.post("/return")
def return_route():
    """Material coming back from a collaborator (receipt attributed to them)."""
    payload = request.get_json(silent=True) or {}
    metadata = _metadata(payload)
    metadata.pop("collaborator_code", None)
    metadata.pop("tag", None)

    try:
        movement = movement_service.return_to_stock(
            payload.get("collaborator_code"),
            payload.get("quantity"),
            actor=payload.get("actor"),
            product_id=payload.get("product_id"),
            tag=payload.get("tag"),
            barcode=payload.get("barcode"),
            **metadata,
        )
    except ValidationError as e:
        return {"error": str(e)}, 400

    return _created(movement)


@movements_bp.post("/<movement_id>/cancel")
def cancel_movement_route(movement_id: str):
    """
    Cancellation needs the remote store: 503 when offline.
    Quantities are not reversed.
    """
    payload = request.get_json(silent=True) or {}

    try:
        movement = movement_service.cancel_movement(
            movement_id,
            payload.get("reason"),
            actor=payload.get("actor") or "unknown",
        )
    except NotFoundError:
        return {"error": "Movement not found"}, 404
    except ConflictError as e:
        return {"error": str(e)}, 409
    except ValidationError as e:
        return {"error": str(e)}, 400
    except RemoteUnavailableError as e:
        return {"error": str(e)}, 503

    return movement.to_dict(), 200


@movements_bp.get("/export.csv")
def export_csv():
    try:
        body = export_movements_csv(**_filters())
    except ValidationError as e:
        return {"error": str(e)}, 400

    filename = f"movements_{utcnow().date().isoformat()}.csv"
    return Response(
        body,
        mimetype="text/csv",
        headers={"Content-Disposition": f"attachment; filename={filename}"},
    )
