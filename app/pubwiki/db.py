from __future__ import annotations

from contextlib import contextmanager
from collections.abc import Generator

from flask import Flask, current_app, g
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from app.pubwiki.history import install_history_hook


def build_engine(db_url: str) -> Engine:
    kwargs: dict[str, object] = {"future": True, "pool_pre_ping": True}
    if db_url.startswith("postgres"):
        kwargs.update(pool_recycle=1800, pool_size=5, max_overflow=10, pool_timeout=30)
    elif db_url.startswith("sqlite"):
        # module workers read on their own connections while a request may be writing
        kwargs["connect_args"] = {"timeout": 15}
    engine = create_engine(db_url, **kwargs)

    if db_url.startswith("sqlite"):
        @event.listens_for(engine, "connect")
        def _sqlite_pragmas(dbapi_connection, _connection_record):  # type: ignore[no-redef]
            cur = dbapi_connection.cursor()
            cur.execute("PRAGMA foreign_keys=ON")
            cur.close()

    return engine


def build_sessionmaker(engine: Engine) -> sessionmaker:
    """Session factory used by the app and scripts alike; every session it makes records history."""
    sm = sessionmaker(bind=engine, class_=Session, autoflush=False, expire_on_commit=False, future=True)
    install_history_hook(sm)
    return sm


def init_db(app: Flask) -> None:
    engine = build_engine(app.config["DATABASE_URL"])
    app.extensions["sqlalchemy_engine"] = engine
    app.extensions["sqlalchemy_sessionmaker"] = build_sessionmaker(engine)
    app.logger.debug("Database engine ready (%s)", engine.url.render_as_string(hide_password=True))


def db_session(app: Flask | None = None) -> Session:
    """
    Request-scoped session. Use inside request handlers.
    """
    s: Session | None = getattr(g, "db_session", None)
    if s is None:
        sm = (app or current_app).extensions["sqlalchemy_sessionmaker"]
        s = g.db_session = sm()
    return s


def teardown_db_session(_exc: BaseException | None) -> None:
    s: Session | None = g.pop("db_session", None)
    if s is not None:
        s.close()


@contextmanager
def session_scope(app: Flask) -> Generator[Session, None, None]:
    """
    Non-request helper for scripts and tests: yields a session and commits/rolls back.
    """
    s: Session = app.extensions["sqlalchemy_sessionmaker"]()
    try:
        yield s
        s.commit()
    except Exception:
        s.rollback()
        raise
    finally:
        s.close()
