"""Read-only data services handed to wiki modules through RenderContext.services."""
from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING

from flask import Flask
from sqlalchemy import select

from app.pubwiki.modules.games.service import GameCatalog
from app.pubwiki.modules.wiki.models import WikiPage, WikiRevision
from app.pubwiki.modules.wiki.service import list_page_names

if TYPE_CHECKING:
    from sqlalchemy.orm import sessionmaker


@dataclass(frozen=True)
class RevisionSummary:
    revision_number: int
    author_name: str
    created_at: datetime
    revision_message: str | None
    minor_edit: bool


class PageDirectory:
    """Page listings for modules. Own session per call, never commits."""

    def __init__(self, session_factory: "sessionmaker"):
        self._session_factory = session_factory

    @contextmanager
    def _session(self):
        s = self._session_factory()
        try:
            yield s
        finally:
            s.rollback()
            s.close()

    def page_names(self, prefix: str | None = None) -> list[str]:
        with self._session() as s:
            return list_page_names(s, prefix)

    def subpages(self, page_name: str) -> list[str]:
        return self.page_names(page_name.rstrip("/") + "/")

    def recent_revisions(self, page_name: str, limit: int = 10) -> list[RevisionSummary]:
        with self._session() as s:
            stmt = (
                select(WikiRevision)
                .join(WikiPage, WikiRevision.page_id == WikiPage.id)
                .where(WikiPage.page_name == page_name)
                .order_by(WikiRevision.revision_number.desc())
                .limit(max(0, limit))
            )
            return [
                RevisionSummary(
                    revision_number=r.revision_number,
                    author_name=r.author_name,
                    created_at=r.created_at,
                    revision_message=r.revision_message,
                    minor_edit=r.minor_edit,
                )
                for r in s.scalars(stmt)
            ]


@dataclass(frozen=True)
class WikiServices:
    pages: PageDirectory
    games: GameCatalog


def build_services(app: Flask) -> WikiServices:
    sm = app.extensions["sqlalchemy_sessionmaker"]
    return WikiServices(pages=PageDirectory(sm), games=GameCatalog(sm))
