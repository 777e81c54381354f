from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.pubwiki.models import Base


class WikiPage(Base):
    __tablename__ = "wiki_pages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    page_name: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)

    # Number of the newest revision. Doubles as the optimistic version column:
    # every UPDATE is issued as "... WHERE latest_revision = <value we read>".
    latest_revision: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    is_deleted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    revisions: Mapped[list["WikiRevision"]] = relationship(
        "WikiRevision",
        back_populates="page",
        cascade="all, delete-orphan",
        order_by="WikiRevision.revision_number",
    )

    __mapper_args__ = {
        "version_id_col": latest_revision,
        "version_id_generator": False,
    }


class WikiRevision(Base):
    __tablename__ = "wiki_revisions"
    __table_args__ = (
        UniqueConstraint("page_id", "revision_number", name="uq_wiki_page_revision"),
        Index("idx_wiki_revisions_page", "page_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    page_id: Mapped[int] = mapped_column(ForeignKey("wiki_pages.id", ondelete="CASCADE"), nullable=False)
    revision_number: Mapped[int] = mapped_column(Integer, nullable=False)  # 1, 2, 3, ...

    markup: Mapped[str] = mapped_column(Text, nullable=False, default="")
    revision_message: Mapped[str | None] = mapped_column(String(512), nullable=True)
    minor_edit: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Plain id so revisions stay immutable after the author account is removed
    author_user_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    author_name: Mapped[str] = mapped_column(String(320), nullable=False, default="system")

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    # Set when the page is soft-deleted while this revision is current.
    is_deleted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    page: Mapped[WikiPage] = relationship(
        "WikiPage",
        back_populates="revisions",
        lazy="selectin",
    )

    @property
    def page_name(self) -> str:
        return self.page.page_name
