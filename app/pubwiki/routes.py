from flask import Blueprint, current_app, redirect, url_for

bp = Blueprint("routes", __name__)


@bp.get("/")
def index():
    return redirect(url_for("wiki.view_page", page_name=current_app.config["WIKI_DEFAULT_PAGE"]))


@bp.get("/health")
def health():
    """Health check endpoint. Returns JSON."""
    return {"ok": True}


@bp.get("/healthz")
def healthz():
    """
    Fast health check for load balancers. No DB access, minimal overhead.
    """
    return "ok", 200
