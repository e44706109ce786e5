# Overview: Flask API routes for collaborators, possession, return obligations and categories.

from flask import Blueprint, request

from ..services import collaborator_service
from ..services.periodicity_service import DueState, all_obligations, overdue_items
from ..services.possession_service import possession_for, possession_summary
from ..validation import ConflictError, NotFoundError, ValidationError

collaborators_bp = Blueprint("collaborators", __name__, url_prefix="/api")


def _flag(name: str) -> bool:
    return request.args.get(name) in {"1", "true"}


@collaborators_bp.get("/collaborators")
def list_collaborators():
    items = collaborator_service.list_collaborators(
        storekeepers_only=_flag("storekeepers"),
        handlers_only=_flag("handlers"),
        include_inactive=_flag("include_inactive"),
    )
    return {"items": [c.to_dict() for c in items], "count": len(items)}


@collaborators_bp.post("/collaborators")
def add_collaborator_route():
    payload = request.get_json(silent=True) or {}
    actor = payload.pop("actor", None)
    if not actor:
        return {"error": "actor is required"}, 400
    try:
        collaborator = collaborator_service.add_collaborator(payload, actor=actor)
    except ConflictError as e:
        return {"error": str(e)}, 409
    except ValidationError as e:
        return {"error": str(e)}, 400
    return collaborator.to_dict(), 201


@collaborators_bp.put("/collaborators/<code>")
def update_collaborator_route(code: str):
    payload = request.get_json(silent=True) or {}
    actor = payload.pop("actor", None)
    if not actor:
        return {"error": "actor is required"}, 400
    try:
        collaborator = collaborator_service.update_collaborator(code, payload, actor=actor)
    except NotFoundError:
        return {"error": "Collaborator not found"}, 404
    except ValidationError as e:
        return {"error": str(e)}, 400
    return collaborator.to_dict(), 200


@collaborators_bp.get("/collaborators/<code>")
def get_collaborator(code: str):
    try:
        collaborator = collaborator_service.get_collaborator(code)
    except NotFoundError:
        return {"error": "Collaborator not found"}, 404
    return collaborator.to_dict()


@collaborators_bp.get("/collaborators/<code>/possession")
def possession(code: str):
    items = possession_for(code)
    return {"collaborator_code": code, "items": [i.to_dict() for i in items]}


@collaborators_bp.get("/collaborators/<code>/obligations")
def obligations(code: str):
    items = overdue_items(code)
    return {"collaborator_code": code, "items": [o.to_dict() for o in items]}


@collaborators_bp.get("/collaborators/<code>/periodicities")
def list_periodicities(code: str):
    items = collaborator_service.list_periodicities(code)
    return {"items": [p.to_dict() for p in items], "count": len(items)}


@collaborators_bp.put("/collaborators/<code>/periodicities/<product_id>")
def set_periodicity_route(code: str, product_id: str):
    payload = request.get_json(silent=True) or {}
    actor = payload.get("actor")
    if not actor:
        return {"error": "actor is required"}, 400
    try:
        periodicity = collaborator_service.set_periodicity(
            code,
            product_id,
            payload.get("max_days"),
            actor=actor,
            is_active=payload.get("is_active", True),
        )
    except NotFoundError:
        return {"error": "Collaborator not found"}, 404
    except ValidationError as e:
        return {"error": str(e)}, 400
    return periodicity.to_dict(), 200


@collaborators_bp.get("/possession")
def possession_overview():
    summary = possession_summary()
    return {code: [i.to_dict() for i in items] for code, items in summary.items()}


@collaborators_bp.get("/obligations")
def obligations_overview():
    """Query param `state` (repeatable): on_time, due_soon, overdue."""
    states = request.args.getlist("state") or None
    try:
        if states:
            states = [DueState(s) for s in states]
    except ValueError:
        return {"error": "invalid state"}, 400
    items = all_obligations(states=states)
    return {"items": [o.to_dict() for o in items], "count": len(items)}


@collaborators_bp.get("/categories")
def list_categories():
    return {"items": [c.to_dict() for c in collaborator_service.list_categories()]}


@collaborators_bp.post("/categories")
def add_category_route():
    payload = request.get_json(silent=True) or {}
    try:
        category = collaborator_service.add_category(payload.get("name"), actor=payload.get("actor"))
    except ConflictError as e:
        return {"error": str(e)}, 409
    except ValidationError as e:
        return {"error": str(e)}, 400
    return category.to_dict(), 201
