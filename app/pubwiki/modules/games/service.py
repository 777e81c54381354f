from __future__ import annotations

import logging
from collections.abc import Iterable
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import select

from app.pubwiki.history import set_actor
from app.pubwiki.modules.games.models import Game, GameSystem

if TYPE_CHECKING:
    from sqlalchemy.orm import Session, sessionmaker
    from app.pubwiki.models import User

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = ("display_name", "abbreviation", "aliases", "screenshot_url", "game_resources_page")


def _clean(value: object) -> str | None:
    return (str(value) if value is not None else "").strip() or None


def validate_game_payload(payload: dict, *, partial: bool = False) -> list[str]:
    """Validate game creation/update payload. Returns list of errors."""
    errors = []
    if not partial or "display_name" in payload:
        if not _clean(payload.get("display_name")):
            errors.append("Display name is required.")
    unknown = sorted(set(payload) - set(EDITABLE_FIELDS))
    if unknown:
        errors.append(f"Unknown field(s): {', '.join(unknown)}")
    page = _clean(payload.get("game_resources_page"))
    if page and (page.startswith("/") or "//" in page):
        errors.append("Game resources page must be a wiki page path like GameResources/NES/Title.")
    return errors


def create_game(s: "Session", payload: dict, user: "User | None") -> Game:
    """Create a new game. History is recorded on flush."""
    now = datetime.utcnow()
    game = Game(
        display_name=_clean(payload.get("display_name")) or "",
        abbreviation=_clean(payload.get("abbreviation")),
        aliases=_clean(payload.get("aliases")),
        screenshot_url=_clean(payload.get("screenshot_url")),
        game_resources_page=_clean(payload.get("game_resources_page")),
        created_at=now,
        updated_at=now,
        created_by_user_id=user.id if user else None,
        updated_by_user_id=user.id if user else None,
    )
    s.add(game)
    set_actor(s, user)
    s.flush()
    logger.info("Game %s created: %s", game.id, game.display_name)
    return game


def update_game(s: "Session", game: Game, payload: dict, user: "User | None") -> Game:
    """Apply the given fields; unchanged values produce no history entry."""
    changed = False
    for key in EDITABLE_FIELDS:
        if key not in payload:
            continue
        new_value = _clean(payload.get(key))
        if key == "display_name" and not new_value:
            continue
        if new_value != getattr(game, key):
            setattr(game, key, new_value)
            changed = True

    if changed:
        game.updated_at = datetime.utcnow()
        game.updated_by_user_id = user.id if user else None
        set_actor(s, user)
        s.flush()
        logger.info("Game %s updated", game.id)
    return game


def delete_game(s: "Session", game: Game, user: "User | None") -> None:
    set_actor(s, user)
    s.delete(game)
    s.flush()
    logger.info("Game %s deleted", game.id)


@dataclass(frozen=True)
class GameEntry:
    id: int
    display_name: str
    abbreviation: str | None
    game_resources_page: str | None


def _entry(game: Game) -> GameEntry:
    return GameEntry(
        id=game.id,
        display_name=game.display_name,
        abbreviation=game.abbreviation,
        game_resources_page=game.game_resources_page,
    )


class GameCatalog:
    """
    Read-only game lookups for wiki modules.

    Each call uses its own short-lived session (modules run on worker threads) and
    never commits.
    """

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

    def by_ids(self, ids: Iterable[int]) -> list[GameEntry]:
        wanted = sorted(set(ids))
        if not wanted:
            return []
        with self._session() as s:
            stmt = select(Game).where(Game.id.in_(wanted)).order_by(Game.display_name.asc())
            return [_entry(g) for g in s.scalars(stmt)]

    def for_resource_page(self, page_name: str) -> list[GameEntry]:
        with self._session() as s:
            stmt = select(Game).where(Game.game_resources_page == page_name).order_by(Game.display_name.asc())
            return [_entry(g) for g in s.scalars(stmt)]

    def resource_pages(self) -> set[str]:
        with self._session() as s:
            stmt = select(Game.game_resources_page).where(Game.game_resources_page.is_not(None)).distinct()
            return set(s.scalars(stmt))

    def system_name(self, code: str) -> str | None:
        """Display name of the system with this code, or None when there is no such system."""
        with self._session() as s:
            return s.scalar(select(GameSystem.display_name).where(GameSystem.code == code))
