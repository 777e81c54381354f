from __future__ import annotations

import json
from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    pass


class UserRole(Base):
    __tablename__ = "user_roles"
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    role_id: Mapped[int] = mapped_column(ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True)


class RolePermission(Base):
    __tablename__ = "role_permissions"
    role_id: Mapped[int] = mapped_column(ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True)
    permission_id: Mapped[int] = mapped_column(ForeignKey("permissions.id", ondelete="CASCADE"), primary_key=True)


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    email: Mapped[str] = mapped_column(String(320), nullable=False, unique=True)
    display_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    roles: Mapped[list["Role"]] = relationship(
        secondary="user_roles",
        back_populates="users",
        lazy="selectin",
    )

    @property
    def name(self) -> str:
        return self.display_name or self.email


class Role(Base):
    __tablename__ = "roles"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    key: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)  # e.g. "editor"
    name: Mapped[str] = mapped_column(String(128), nullable=False)  # display name
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    users: Mapped[list[User]] = relationship(secondary="user_roles", back_populates="roles", lazy="selectin")
    permissions: Mapped[list["Permission"]] = relationship(
        secondary="role_permissions",
        back_populates="roles",
        lazy="selectin",
    )


class Permission(Base):
    __tablename__ = "permissions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    key: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)  # e.g. "wiki.edit"
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    roles: Mapped[list[Role]] = relationship(secondary="role_permissions", back_populates="permissions", lazy="selectin")


class HistoryRecord(Base):
    """
    Append-only field-level change record for an auditable entity.
    Rows are written by app.pubwiki.history inside the transaction of the change they describe.
    """

    __tablename__ = "history_records"
    __table_args__ = (
        Index("idx_history_records_entity", "entity_type", "entity_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    request_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    # Plain id, no FK: deleting a user must not rewrite history. actor_user_email is what gets shown.
    actor_user_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    actor_user_email: Mapped[str | None] = mapped_column(String(320), nullable=True)

    entity_type: Mapped[str] = mapped_column(String(128), nullable=False)  # e.g. "WikiPage"
    entity_id: Mapped[str] = mapped_column(String(128), nullable=False)  # string for flexibility (composite keys)
    change_kind: Mapped[str] = mapped_column(String(16), nullable=False)  # Create / Update / Delete

    # JSON list of [field, old, new], in column order
    changes_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")

    @property
    def changes(self) -> list[tuple[str, object, object]]:
        return [(f, old, new) for f, old, new in json.loads(self.changes_json or "[]")]


# Ensure module models are imported so Base.metadata includes their tables.
# (Kept at bottom to avoid circular imports.)
from app.pubwiki.modules.wiki.models import WikiPage, WikiRevision  # noqa: E402,F401
from app.pubwiki.modules.games.models import Game, GameSystem  # noqa: E402,F401
