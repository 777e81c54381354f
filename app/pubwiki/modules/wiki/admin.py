from __future__ import annotations

from flask import Blueprint, abort, current_app, g, request

from app.pubwiki.db import db_session
from app.pubwiki.models import User
from app.pubwiki.modules.wiki.dispatcher import Caller, Dispatcher, RenderContext
from app.pubwiki.modules.wiki.markup import module_names, parse
from app.pubwiki.modules.wiki.providers import build_services
from app.pubwiki.modules.wiki.service import (
    ConcurrencyConflict,
    InvalidPageName,
    PageNotFound,
    create_revision,
    get_current,
    get_revision,
    latest_revision_number,
    list_revisions,
    rollback,
    soft_delete,
    undelete,
)
from app.pubwiki.rbac import require_permission, user_has_permission

bp = Blueprint("wiki", __name__)


def _current_user() -> User | None:
    return getattr(g, "current_user", None)


def _payload() -> dict:
    if request.is_json:
        return request.get_json(silent=True) or {}
    return request.form.to_dict()


def _truthy(value: object) -> bool:
    return str(value or "").strip().lower() in ("1", "true", "yes", "on")


def _int_field(data: dict, name: str, *, required: bool = True) -> int | None:
    raw = data.get(name)
    if raw in (None, "") and not required:
        return None
    try:
        return int(raw)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        abort(400, description=f"{name} must be an integer.")


def _dispatcher() -> Dispatcher:
    return current_app.extensions["wiki_dispatcher"]


def _conflict(s, page_name: str, e: ConcurrencyConflict):
    s.rollback()
    return {
        "ok": False,
        "error": str(e),
        "expected_revision": e.expected,
        "latest_revision": latest_revision_number(s, page_name),
    }, 409


@bp.get("/page/<path:page_name>")
def view_page(page_name: str):
    s = db_session()
    rev = get_current(s, page_name)
    if rev is None:
        abort(404)

    nodes = parse(rev.markup)
    context = RenderContext(
        page_name=rev.page_name,
        caller=Caller.from_user(_current_user()),
        query=request.args.to_dict(),
        services=build_services(current_app),
    )
    rendered = _dispatcher().render(nodes, context)
    if rendered.error_count:
        current_app.logger.info(
            "Page %s rendered with %s inline error(s) (request_id=%s)",
            rev.page_name,
            rendered.error_count,
            getattr(g, "request_id", None),
        )
    return {
        "page_name": rev.page_name,
        "revision": rev.revision_number,
        "html": rendered.html,
        "errors": rendered.error_count,
        "modules": module_names(nodes),
    }


@bp.post("/page/<path:page_name>")
@require_permission("wiki.edit")
def edit_page(page_name: str):
    s = db_session()
    data = _payload()
    markup = data.get("markup")
    if markup is None:
        abort(400, description="markup is required.")
    expected = _int_field(data, "expected_revision")

    try:
        rev = create_revision(
            s,
            page_name,
            str(markup),
            _current_user(),
            expected,
            revision_message=data.get("message"),
            minor_edit=_truthy(data.get("minor")),
        )
        s.commit()
    except ConcurrencyConflict as e:
        return _conflict(s, page_name, e)
    except ValueError as e:
        # InvalidPageName or a negative expected_revision
        abort(400, description=str(e))
    return {"ok": True, "page_name": rev.page_name, "revision": rev.revision_number}, 201


@bp.get("/source/<path:page_name>")
def page_source(page_name: str):
    s = db_session()
    number = request.args.get("revision", type=int)
    try:
        if number is None:
            rev = get_current(s, page_name)
        else:
            privileged = user_has_permission(_current_user(), "wiki.history")
            rev = get_revision(s, page_name, number, include_deleted=privileged)
    except InvalidPageName:
        abort(404)
    if rev is None:
        abort(404)
    return {
        "page_name": rev.page_name,
        "revision": rev.revision_number,
        "markup": rev.markup,
        "author": rev.author_name,
        "created_at": rev.created_at.isoformat(),
    }


@bp.get("/history/<path:page_name>")
@require_permission("wiki.history")
def page_history(page_name: str):
    s = db_session()
    try:
        revisions = list_revisions(s, page_name)
    except (PageNotFound, InvalidPageName):
        abort(404)
    return {
        "page_name": page_name,
        "revisions": [
            {
                "revision": r.revision_number,
                "author": r.author_name,
                "created_at": r.created_at.isoformat(),
                "message": r.revision_message,
                "minor": r.minor_edit,
                "deleted": r.is_deleted,
            }
            for r in revisions
        ],
    }


@bp.post("/rollback/<path:page_name>")
@require_permission("wiki.rollback")
def rollback_page(page_name: str):
    s = db_session()
    data = _payload()
    target = _int_field(data, "revision")
    expected = _int_field(data, "expected_revision", required=False)
    try:
        rev = rollback(s, page_name, target, _current_user(), expected)
        s.commit()
    except ConcurrencyConflict as e:
        return _conflict(s, page_name, e)
    except (PageNotFound, InvalidPageName):
        s.rollback()
        abort(404)
    return {"ok": True, "page_name": rev.page_name, "revision": rev.revision_number, "restored_from": target}, 201


@bp.post("/delete/<path:page_name>")
@require_permission("wiki.delete")
def delete_page(page_name: str):
    s = db_session()
    try:
        page = soft_delete(s, page_name, _current_user())
        s.commit()
    except ConcurrencyConflict as e:
        return _conflict(s, page_name, e)
    except (PageNotFound, InvalidPageName):
        s.rollback()
        abort(404)
    return {"ok": True, "page_name": page.page_name, "deleted": True}


@bp.post("/undelete/<path:page_name>")
@require_permission("wiki.delete")
def undelete_page(page_name: str):
    s = db_session()
    try:
        page = undelete(s, page_name, _current_user())
        s.commit()
    except ConcurrencyConflict as e:
        return _conflict(s, page_name, e)
    except (PageNotFound, InvalidPageName):
        s.rollback()
        abort(404)
    return {"ok": True, "page_name": page.page_name, "deleted": False}


@bp.get("/modules")
def list_modules():
    registry = current_app.extensions["wiki_registry"]
    return {
        "modules": [
            {
                "name": d.name,
                "description": d.description,
                "parameters": [p.name for p in d.params],
                "required_permission": d.required_permission,
            }
            for d in sorted(registry, key=lambda d: d.name.casefold())
        ]
    }
