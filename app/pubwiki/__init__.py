import logging
import os
from collections.abc import Iterable
from datetime import timedelta

from dotenv import load_dotenv
from flask import Flask, g
from werkzeug.exceptions import HTTPException

from app.pubwiki.config import load_config
from app.pubwiki.db import init_db, teardown_db_session
from app.pubwiki.history import HistoryWriteFailure
from app.pubwiki.routes import bp as routes_bp
from app.pubwiki.auth import bp as auth_bp, load_current_user
from app.pubwiki.admin import bp as admin_bp
from app.pubwiki.modules.games.admin import bp as games_bp
from app.pubwiki.modules.wiki.admin import bp as wiki_bp
from app.pubwiki.modules.wiki.builtins import build_registry
from app.pubwiki.modules.wiki.dispatcher import Dispatcher
from app.pubwiki.modules.wiki.registry import ModuleDescriptor


def create_app(extra_modules: Iterable[ModuleDescriptor] = ()) -> Flask:
    load_dotenv()
    app = Flask(__name__)
    app.config.from_mapping(load_config())
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(hours=8)
    app.config["SESSION_REFRESH_EACH_REQUEST"] = True

    # Production guardrails (fail fast with clear logs)
    env = (app.config.get("ENV") or "").strip().lower()
    if env in ("prod", "production"):
        if not app.config.get("DATABASE_URL") or str(app.config["DATABASE_URL"]).strip() == "":
            raise RuntimeError("DATABASE_URL is required in production.")
        if str(app.config["DATABASE_URL"]).startswith("sqlite"):
            raise RuntimeError("DATABASE_URL must be Postgres in production (not sqlite).")
        if not app.config.get("SECRET_KEY") or str(app.config["SECRET_KEY"]) in ("", "change-me"):
            raise RuntimeError("SECRET_KEY must be set to a strong value in production (not default).")

    init_db(app)

    def _dispose_engine_on_fork() -> None:
        if hasattr(os, "register_at_fork"):
            def _after_fork_child():
                engine = app.extensions.get("sqlalchemy_engine")
                if engine:
                    engine.dispose()
                    app.logger.info("Disposed DB engine after fork (pid=%s)", os.getpid())

            os.register_at_fork(after_in_child=_after_fork_child)

    _dispose_engine_on_fork()

    # Wiki module table is fixed for the life of the process; duplicates abort startup.
    registry = build_registry(extra_modules)
    app.extensions["wiki_registry"] = registry
    app.extensions["wiki_dispatcher"] = Dispatcher(
        registry,
        timeout=app.config["WIKI_MODULE_TIMEOUT"],
        max_workers=app.config["WIKI_MODULE_MAX_WORKERS"],
    )
    app.logger.info("Registered %s wiki modules: %s", len(registry), ", ".join(registry.names()))

    app.register_blueprint(routes_bp)
    app.register_blueprint(auth_bp, url_prefix="/auth")
    app.register_blueprint(admin_bp, url_prefix="/admin")
    app.register_blueprint(games_bp, url_prefix="/admin")
    app.register_blueprint(wiki_bp, url_prefix="/wiki")

    app.before_request(load_current_user)
    app.teardown_appcontext(teardown_db_session)

    @app.errorhandler(HTTPException)
    def _err_http(e: HTTPException):  # type: ignore[no-redef]
        body = {"ok": False, "status": e.code, "error": e.description}
        if e.code == 403:
            missing = getattr(g, "missing_permission", None)
            if missing:
                app.logger.warning("Forbidden: missing_permission=%s request_id=%s", missing, getattr(g, "request_id", None))
                body["missing_permission"] = missing
        return body, e.code

    @app.errorhandler(HistoryWriteFailure)
    def _err_history(e: HistoryWriteFailure):  # type: ignore[no-redef]
        app.logger.error("Write rejected, history could not be recorded (request_id=%s): %s", getattr(g, "request_id", None), e)
        return {"ok": False, "status": 500, "error": "The change was not saved because its history could not be recorded."}, 500

    @app.errorhandler(500)
    def _err_500(e):  # type: ignore[no-redef]
        app.logger.exception("Unhandled 500 (request_id=%s)", getattr(g, "request_id", None))
        return {"ok": False, "status": 500, "error": "Internal server error."}, 500

    logging.getLogger(__name__).info("create_app() complete; app ready to serve")

    return app
