from __future__ import annotations

import logging
import re
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from app.pubwiki.history import set_actor
from app.pubwiki.modules.wiki.models import WikiPage, WikiRevision

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.pubwiki.models import User

logger = logging.getLogger(__name__)

_SEGMENT_RE = re.compile(r"[A-Za-z0-9_.\-]+\Z")


class PageStoreError(Exception):
    pass


class PageNotFound(PageStoreError):
    pass


class InvalidPageName(PageStoreError, ValueError):
    pass


class ConcurrencyConflict(PageStoreError):
    """The page moved on since the caller read it; re-read the current revision and retry."""

    def __init__(self, page_name: str, expected: int, actual: int | None):
        self.page_name = page_name
        self.expected = expected
        self.actual = actual
        found = "a newer revision" if actual is None else f"revision {actual}"
        super().__init__(f"{page_name}: expected revision {expected} but found {found}")


def normalize_page_name(page_name: str) -> str:
    """
    Canonical page path: surrounding whitespace and slashes removed, segments of
    letters, digits, "_", "." and "-" separated by single slashes.
    """
    name = (page_name or "").strip().strip("/")
    if not name:
        raise InvalidPageName("Page name is required.")
    for seg in name.split("/"):
        if not seg or seg in (".", "..") or not _SEGMENT_RE.match(seg):
            raise InvalidPageName(f"Invalid page name: {page_name!r}")
    return name


def _get_page(s: "Session", name: str, *, refresh: bool = False) -> WikiPage | None:
    stmt = select(WikiPage).where(WikiPage.page_name == name)
    if refresh:
        # writes must check against the stored version, not the identity map
        stmt = stmt.execution_options(populate_existing=True)
    return s.scalars(stmt).one_or_none()


def _get_revision_row(s: "Session", page: WikiPage, number: int) -> WikiRevision | None:
    stmt = select(WikiRevision).where(
        WikiRevision.page_id == page.id,
        WikiRevision.revision_number == number,
    )
    return s.scalars(stmt).one_or_none()


def _flush(s: "Session", name: str, expected: int) -> None:
    try:
        s.flush()
    except (StaleDataError, IntegrityError) as e:
        # Another transaction bumped the version or took the same revision number first.
        logger.info("Concurrent write to %s lost the race (expected revision %s): %s", name, expected, e)
        raise ConcurrencyConflict(name, expected, None) from e


def get_current(s: "Session", page_name: str) -> WikiRevision | None:
    """Current, non-deleted revision of a page, or None."""
    try:
        name = normalize_page_name(page_name)
    except InvalidPageName:
        return None
    page = _get_page(s, name)
    if page is None or page.is_deleted or page.latest_revision < 1:
        return None
    return _get_revision_row(s, page, page.latest_revision)


def latest_revision_number(s: "Session", page_name: str) -> int:
    """Newest revision number, deleted or not; 0 when the page was never written."""
    page = _get_page(s, normalize_page_name(page_name), refresh=True)
    return page.latest_revision if page is not None else 0


def get_revision(
    s: "Session",
    page_name: str,
    revision_number: int,
    *,
    include_deleted: bool = False,
) -> WikiRevision | None:
    name = normalize_page_name(page_name)
    page = _get_page(s, name)
    if page is None or (page.is_deleted and not include_deleted):
        return None
    return _get_revision_row(s, page, revision_number)


def list_revisions(s: "Session", page_name: str) -> list[WikiRevision]:
    """All revisions of a page, newest first, deleted ones included (privileged view)."""
    name = normalize_page_name(page_name)
    page = _get_page(s, name)
    if page is None:
        raise PageNotFound(f"Page not found: {name}")
    stmt = (
        select(WikiRevision)
        .where(WikiRevision.page_id == page.id)
        .order_by(WikiRevision.revision_number.desc())
    )
    return list(s.scalars(stmt))


def list_page_names(s: "Session", prefix: str | None = None, *, include_deleted: bool = False) -> list[str]:
    stmt = select(WikiPage.page_name).order_by(WikiPage.page_name.asc())
    if prefix:
        stmt = stmt.where(WikiPage.page_name.startswith(prefix, autoescape=True))
    if not include_deleted:
        stmt = stmt.where(WikiPage.is_deleted.is_(False))
    return list(s.scalars(stmt))


def create_revision(
    s: "Session",
    page_name: str,
    markup: str,
    author: "User | None",
    expected_prior_revision: int,
    *,
    revision_message: str | None = None,
    minor_edit: bool = False,
) -> WikiRevision:
    """
    Append revision ``expected_prior_revision + 1``.

    ``expected_prior_revision`` is the revision the editor started from (0 for a new
    page). If the page has moved on, ConcurrencyConflict is raised and nothing is
    written. Writing to a soft-deleted page restores it. Does not commit.
    """
    name = normalize_page_name(page_name)
    if expected_prior_revision < 0:
        raise ValueError("expected_prior_revision must be >= 0")

    page = _get_page(s, name, refresh=True)
    actual = page.latest_revision if page is not None else 0
    if actual != expected_prior_revision:
        raise ConcurrencyConflict(name, expected_prior_revision, actual)

    now = datetime.utcnow()
    number = expected_prior_revision + 1
    if page is None:
        page = WikiPage(page_name=name, latest_revision=number, is_deleted=False, created_at=now, updated_at=now)
        s.add(page)
    else:
        page.latest_revision = number
        page.is_deleted = False
        page.updated_at = now

    rev = WikiRevision(
        page=page,
        revision_number=number,
        markup=markup or "",
        revision_message=(revision_message or "").strip() or None,
        minor_edit=bool(minor_edit),
        author_user_id=author.id if author else None,
        author_name=author.name if author else "system",
        created_at=now,
        is_deleted=False,
    )
    s.add(rev)

    set_actor(s, author)
    _flush(s, name, expected_prior_revision)
    logger.info("Wiki page %s: revision %s by %s", name, number, rev.author_name)
    return rev


def rollback(
    s: "Session",
    page_name: str,
    target_revision: int,
    author: "User | None",
    expected_prior_revision: int | None = None,
) -> WikiRevision:
    """New revision whose markup equals ``target_revision``'s. History is left untouched."""
    name = normalize_page_name(page_name)
    page = _get_page(s, name, refresh=True)
    if page is None:
        raise PageNotFound(f"Page not found: {name}")
    target = _get_revision_row(s, page, target_revision)
    if target is None:
        raise PageNotFound(f"{name} has no revision {target_revision}")

    expected = page.latest_revision if expected_prior_revision is None else expected_prior_revision
    return create_revision(
        s,
        name,
        target.markup,
        author,
        expected,
        revision_message=f"Rolled back to revision {target_revision}",
    )


def soft_delete(s: "Session", page_name: str, actor: "User | None") -> WikiPage:
    """Hide the page; its revisions stay queryable through list_revisions/get_revision."""
    name = normalize_page_name(page_name)
    page = _get_page(s, name, refresh=True)
    if page is None or page.is_deleted:
        raise PageNotFound(f"Page not found: {name}")

    current = _get_revision_row(s, page, page.latest_revision)
    page.is_deleted = True
    page.updated_at = datetime.utcnow()
    if current is not None:
        current.is_deleted = True

    set_actor(s, actor)
    _flush(s, name, page.latest_revision)
    logger.info("Wiki page %s deleted by %s", name, actor.name if actor else "system")
    return page


def undelete(s: "Session", page_name: str, actor: "User | None") -> WikiPage:
    name = normalize_page_name(page_name)
    page = _get_page(s, name, refresh=True)
    if page is None or not page.is_deleted:
        raise PageNotFound(f"No deleted page named {name}")

    current = _get_revision_row(s, page, page.latest_revision)
    page.is_deleted = False
    page.updated_at = datetime.utcnow()
    if current is not None:
        current.is_deleted = False

    set_actor(s, actor)
    _flush(s, name, page.latest_revision)
    logger.info("Wiki page %s restored by %s", name, actor.name if actor else "system")
    return page
