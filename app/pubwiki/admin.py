from flask import Blueprint, abort, current_app, request

from app.pubwiki.db import db_session
from app.pubwiki.history import AUDITABLE_ENTITIES, get_history, reconstruct
from app.pubwiki.rbac import require_permission

bp = Blueprint("admin", __name__)


@bp.get("/")
@require_permission("admin.view")
def index():
    from sqlalchemy import text

    s = db_session()
    status = {
        "env": current_app.config.get("ENV"),
        "db_connected": False,
        "db_error": None,
        "wiki_modules": len(current_app.extensions["wiki_registry"]),
        "auditable_entities": sorted(AUDITABLE_ENTITIES),
    }
    try:
        s.execute(text("SELECT 1"))
        status["db_connected"] = True
    except Exception as e:
        status["db_error"] = str(e)
    return status


@bp.get("/history/<entity_type>/<entity_id>")
@require_permission("history.view")
def entity_history(entity_type: str, entity_id: str):
    if entity_type not in AUDITABLE_ENTITIES:
        abort(404)
    s = db_session()
    records = get_history(s, entity_type, entity_id)
    payload = {
        "entity_type": entity_type,
        "entity_id": entity_id,
        "records": [
            {
                "id": r.id,
                "change_kind": r.change_kind,
                "created_at": r.created_at.isoformat(),
                "actor": r.actor_user_email,
                "request_id": r.request_id,
                "changes": [{"field": f, "old": old, "new": new} for f, old, new in r.changes],
            }
            for r in records
        ],
    }
    upto = request.args.get("as_of", type=int)
    if upto is not None:
        payload["snapshot"] = reconstruct(s, entity_type, entity_id, upto_record_id=upto)
    return payload
