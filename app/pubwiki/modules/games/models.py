from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from app.pubwiki.models import Base


class Game(Base):
    __tablename__ = "games"
    __table_args__ = (
        Index("idx_games_resources_page", "game_resources_page"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    display_name: Mapped[str] = mapped_column(String(255), nullable=False)
    abbreviation: Mapped[str | None] = mapped_column(String(64), nullable=True)
    aliases: Mapped[str | None] = mapped_column(String(512), nullable=True)  # comma separated
    screenshot_url: Mapped[str | None] = mapped_column(String(512), nullable=True)

    # Wiki page holding resources for this game, e.g. "GameResources/NES/SuperMarioBros"
    game_resources_page: Mapped[str | None] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    created_by_user_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    updated_by_user_id: Mapped[int | None] = mapped_column(Integer, nullable=True)


class GameSystem(Base):
    """A platform grouping resource pages, e.g. code "NES" for "GameResources/NES"."""

    __tablename__ = "game_systems"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    code: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    display_name: Mapped[str] = mapped_column(String(255), nullable=False)
