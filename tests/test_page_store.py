import pytest
from sqlalchemy import select
from werkzeug.security import generate_password_hash

from app.pubwiki import create_app
from app.pubwiki.db import session_scope
from app.pubwiki.models import Base, User
from app.pubwiki.modules.wiki.models import WikiPage, WikiRevision
from app.pubwiki.modules.wiki.service import (
    ConcurrencyConflict,
    InvalidPageName,
    PageNotFound,
    _flush,
    create_revision,
    get_current,
    get_revision,
    list_page_names,
    list_revisions,
    normalize_page_name,
    rollback,
    soft_delete,
    undelete,
)


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")

    app = create_app()
    Base.metadata.create_all(bind=app.extensions["sqlalchemy_engine"])

    with session_scope(app) as s:
        s.add(User(email="ed@example.com", display_name="Ed", password_hash=generate_password_hash("pw"), is_active=True))
    return app


def _seed(app, page_name="Main", versions=("one", "two", "three")):
    with session_scope(app) as s:
        for i, markup in enumerate(versions):
            create_revision(s, page_name, markup, None, i)


def test_revisions_are_numbered_in_order(app):
    with session_scope(app) as s:
        ed = s.scalars(select(User)).one()
        for i in range(3):
            rev = create_revision(s, "Main", f"v{i + 1}", ed, i, revision_message=f"edit {i + 1}")
            assert rev.revision_number == i + 1

    with session_scope(app) as s:
        current = get_current(s, "Main")
        assert current.revision_number == 3
        assert current.markup == "v3"
        assert current.author_name == "Ed"
        assert [r.revision_number for r in list_revisions(s, "Main")] == [3, 2, 1]
        assert get_revision(s, "Main", 1).markup == "v1"
        assert get_revision(s, "Main", 9) is None


def test_unknown_page_has_no_current_revision(app):
    with session_scope(app) as s:
        assert get_current(s, "Nowhere") is None
        with pytest.raises(PageNotFound):
            list_revisions(s, "Nowhere")


def test_new_page_must_start_from_zero(app):
    with session_scope(app) as s:
        with pytest.raises(ConcurrencyConflict) as exc:
            create_revision(s, "Fresh", "text", None, 1)
    assert exc.value.expected == 1
    assert exc.value.actual == 0


def test_stale_expected_revision_conflicts(app):
    _seed(app)
    with pytest.raises(ConcurrencyConflict) as exc:
        with session_scope(app) as s:
            create_revision(s, "Main", "late edit", None, 2)
    assert "expected revision 2 but found revision 3" in str(exc.value)

    with session_scope(app) as s:
        assert get_current(s, "Main").markup == "three"


def test_two_sessions_race_for_the_same_revision(app):
    _seed(app)
    sm = app.extensions["sqlalchemy_sessionmaker"]
    s1, s2 = sm(), sm()
    try:
        assert get_current(s1, "Main").revision_number == 3
        assert get_current(s2, "Main").revision_number == 3

        create_revision(s1, "Main", "from s1", None, 3)
        s1.commit()

        with pytest.raises(ConcurrencyConflict) as exc:
            create_revision(s2, "Main", "from s2", None, 3)
        assert exc.value.actual == 4
        s2.rollback()
    finally:
        s1.close()
        s2.close()

    with session_scope(app) as s:
        assert get_current(s, "Main").markup == "from s1"
        assert [r.revision_number for r in list_revisions(s, "Main")] == [4, 3, 2, 1]


def test_lost_race_at_flush_is_a_conflict(app):
    _seed(app)
    sm = app.extensions["sqlalchemy_sessionmaker"]
    s1, s2 = sm(), sm()
    try:
        # s2 read revision 3 and prepares revision 4 while s1 commits its own revision 4.
        page = s2.scalars(select(WikiPage).where(WikiPage.page_name == "Main")).one()
        create_revision(s1, "Main", "winner", None, 3)
        s1.commit()

        page.latest_revision = 4
        s2.add(WikiRevision(page=page, revision_number=4, markup="loser", author_name="system"))
        with pytest.raises(ConcurrencyConflict):
            _flush(s2, "Main", 3)
        s2.rollback()
    finally:
        s1.close()
        s2.close()

    with session_scope(app) as s:
        assert get_current(s, "Main").markup == "winner"


def test_rollback_appends_copy_of_target(app):
    _seed(app)
    with session_scope(app) as s:
        rev = rollback(s, "Main", 1, None)
        assert rev.revision_number == 4
        assert rev.markup == "one"
        assert rev.revision_message == "Rolled back to revision 1"

    with session_scope(app) as s:
        assert [r.markup for r in list_revisions(s, "Main")] == ["one", "three", "two", "one"]


def test_rollback_checks_expected_and_target(app):
    _seed(app)
    with session_scope(app) as s:
        with pytest.raises(PageNotFound):
            rollback(s, "Main", 7, None)
        with pytest.raises(ConcurrencyConflict):
            rollback(s, "Main", 1, None, expected_prior_revision=2)
        with pytest.raises(PageNotFound):
            rollback(s, "Missing", 1, None)


def test_soft_delete_hides_page_but_keeps_history(app):
    _seed(app)
    with session_scope(app) as s:
        soft_delete(s, "Main", None)

    with session_scope(app) as s:
        assert get_current(s, "Main") is None
        assert get_revision(s, "Main", 2) is None
        assert get_revision(s, "Main", 2, include_deleted=True).markup == "two"
        revisions = list_revisions(s, "Main")
        assert [r.markup for r in revisions] == ["three", "two", "one"]
        assert revisions[0].is_deleted is True
        assert "Main" not in list_page_names(s)
        assert "Main" in list_page_names(s, include_deleted=True)

        with pytest.raises(PageNotFound):
            soft_delete(s, "Main", None)


def test_undelete_and_write_after_delete(app):
    _seed(app, "A")
    _seed(app, "B")
    with session_scope(app) as s:
        soft_delete(s, "A", None)
        soft_delete(s, "B", None)

    with session_scope(app) as s:
        undelete(s, "A", None)
        rev = create_revision(s, "B", "back again", None, 3)
        assert rev.revision_number == 4

    with session_scope(app) as s:
        assert get_current(s, "A").markup == "three"
        assert get_current(s, "B").markup == "back again"
        with pytest.raises(PageNotFound):
            undelete(s, "A", None)


def test_list_page_names_prefix(app):
    for name in ("GameResources/NES/A", "GameResources/NES/B", "GameResources_x", "Other"):
        _seed(app, name, ("x",))
    with session_scope(app) as s:
        assert list_page_names(s, "GameResources/") == ["GameResources/NES/A", "GameResources/NES/B"]
        assert len(list_page_names(s)) == 4


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("Main", "Main"),
        ("  /GameResources/NES/Title/ ", "GameResources/NES/Title"),
        ("v1.2_notes-draft", "v1.2_notes-draft"),
    ],
)
def test_normalize_page_name(raw, expected):
    assert normalize_page_name(raw) == expected


@pytest.mark.parametrize("raw", ["", "   ", "a//b", "../etc", "a/./b", "has space", "semi;colon"])
def test_invalid_page_names(raw):
    with pytest.raises(InvalidPageName):
        normalize_page_name(raw)
