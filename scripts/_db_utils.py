from __future__ import annotations

from collections.abc import Generator
from contextlib import contextmanager

from sqlalchemy.orm import Session

from app.pubwiki.db import build_engine, build_sessionmaker


@contextmanager
def script_session(db_url: str) -> Generator[Session, None, None]:
    """Standalone commit-or-rollback session; auditable changes are recorded as in the app."""
    engine = build_engine(db_url)
    s: Session = build_sessionmaker(engine)()
    try:
        yield s
        s.commit()
    except Exception:
        s.rollback()
        raise
    finally:
        s.close()
        engine.dispose()
