from __future__ import annotations

import uuid

from flask import Blueprint, current_app, g, request, session
from werkzeug.security import check_password_hash

from app.pubwiki.db import db_session
from app.pubwiki.models import User

bp = Blueprint("auth", __name__)


def load_current_user() -> None:
    """
    Loads g.current_user from the signed session cookie.
    Also assigns a simple per-request request_id (for history/log correlation).
    """
    if not getattr(g, "request_id", None):
        g.request_id = uuid.uuid4().hex
    if request.path.startswith(("/static/", "/health", "/healthz")):
        g.current_user = None
        return

    user_id = session.get("user_id")
    if not user_id:
        g.current_user = None
        return

    try:
        s = db_session()
        user = s.get(User, int(user_id))
        if not user or not user.is_active:
            session.pop("user_id", None)
            g.current_user = None
            return
        g.current_user = user
    except Exception as e:
        current_app.logger.error("load_current_user DB error (clearing session): %s", e)
        session.pop("user_id", None)
        g.current_user = None


def _form_value(name: str) -> str:
    if request.is_json:
        data = request.get_json(silent=True) or {}
        return str(data.get(name) or "")
    return request.form.get(name) or ""


@bp.post("/login")
def login_post():
    email = _form_value("email").strip().lower()
    password = _form_value("password")

    s = db_session()
    user = s.query(User).filter(User.email == email).one_or_none()
    if not user or not user.is_active or not check_password_hash(user.password_hash, password):
        current_app.logger.warning("Login failed for %s (request_id=%s)", email, getattr(g, "request_id", None))
        return {"ok": False, "error": "Invalid credentials."}, 401

    session["user_id"] = user.id
    current_app.logger.info("User %s logged in", user.id)
    return {"ok": True, "user": {"id": user.id, "email": user.email, "name": user.name}}


@bp.get("/logout")
def logout():
    user = getattr(g, "current_user", None)
    if user:
        current_app.logger.info("User %s logged out", user.id)
    session.pop("user_id", None)
    return {"ok": True}
