from types import SimpleNamespace

import pytest
from sqlalchemy import func, select, text
from werkzeug.security import generate_password_hash

from app.pubwiki import create_app
from app.pubwiki.db import session_scope
from app.pubwiki.history import (
    CREATE,
    DELETE,
    UPDATE,
    HistoryWriteFailure,
    compute_diff,
    entity_snapshot,
    get_history,
    reconstruct,
    replay,
)
from app.pubwiki.models import Base, HistoryRecord, User
from app.pubwiki.modules.games.models import Game
from app.pubwiki.modules.games.service import create_game, delete_game, update_game
from app.pubwiki.modules.wiki.models import WikiPage, WikiRevision
from app.pubwiki.modules.wiki.service import create_revision, soft_delete


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")

    app = create_app()
    Base.metadata.create_all(bind=app.extensions["sqlalchemy_engine"])
    return app


def _reject_history_writes(app):
    engine = app.extensions["sqlalchemy_engine"]
    with engine.begin() as conn:
        conn.execute(
            text(
                "CREATE TRIGGER reject_history BEFORE INSERT ON history_records "
                "BEGIN SELECT RAISE(ABORT, 'history store unavailable'); END;"
            )
        )


class TestComputeDiff:
    def test_update_reports_only_changed_fields(self):
        before = {"a": 1, "b": "x", "c": None}
        after = {"a": 1, "b": "y", "c": 3}
        assert compute_diff(before, after) == [("b", "x", "y"), ("c", None, 3)]

    def test_create_and_delete_report_every_field(self):
        snap = {"a": 1, "b": None}
        assert compute_diff(None, snap) == [("a", None, 1), ("b", None, None)]
        assert compute_diff(snap, None) == [("a", 1, None), ("b", None, None)]

    def test_nothing_changed(self):
        assert compute_diff({"a": 1}, {"a": 1}) == []
        assert compute_diff(None, None) == []


class TestReplay:
    def _rec(self, kind, changes):
        return SimpleNamespace(change_kind=kind, changes=changes)

    def test_folds_records_in_order(self):
        records = [
            self._rec(CREATE, [("id", None, 1), ("name", None, "a")]),
            self._rec(UPDATE, [("name", "a", "b")]),
        ]
        assert replay(records) == {"id": 1, "name": "b"}

    def test_delete_clears_state(self):
        records = [self._rec(CREATE, [("id", None, 1)]), self._rec(DELETE, [("id", 1, None)])]
        assert replay(records) is None

    def test_history_starting_with_update(self):
        assert replay([self._rec(UPDATE, [("name", "a", "b")])]) == {"name": "b"}


def test_create_and_two_updates_give_three_records(app):
    with session_scope(app) as s:
        game = create_game(s, {"display_name": "Metroid", "abbreviation": "MET"}, None)
        game_id = game.id
    with session_scope(app) as s:
        update_game(s, s.get(Game, game_id), {"display_name": "Metroid (NES)"}, None)
    with session_scope(app) as s:
        update_game(s, s.get(Game, game_id), {"game_resources_page": "GameResources/NES/Metroid"}, None)

    with session_scope(app) as s:
        records = get_history(s, "Game", game_id)
        assert [r.change_kind for r in records] == [UPDATE, UPDATE, CREATE]

        created = dict((f, new) for f, _old, new in records[-1].changes)
        assert created["display_name"] == "Metroid"
        assert created["abbreviation"] == "MET"

        fields = [f for f, _old, _new in records[1].changes]
        assert "display_name" in fields
        assert "abbreviation" not in fields

        game = s.get(Game, game_id)
        assert replay(reversed(records)) == entity_snapshot(game)
        assert reconstruct(s, "Game", game_id) == entity_snapshot(game)
        assert reconstruct(s, "Game", game_id, upto_record_id=records[-1].id)["display_name"] == "Metroid"


def test_unchanged_update_writes_no_record(app):
    with session_scope(app) as s:
        game_id = create_game(s, {"display_name": "Contra"}, None).id
    with session_scope(app) as s:
        update_game(s, s.get(Game, game_id), {"display_name": "Contra"}, None)
    with session_scope(app) as s:
        assert len(get_history(s, "Game", game_id)) == 1


def test_delete_is_recorded(app):
    with session_scope(app) as s:
        game_id = create_game(s, {"display_name": "Gradius"}, None).id
    with session_scope(app) as s:
        delete_game(s, s.get(Game, game_id), None)
    with session_scope(app) as s:
        records = get_history(s, "Game", game_id)
        assert [r.change_kind for r in records] == [DELETE, CREATE]
        assert dict((f, old) for f, old, _new in records[0].changes)["display_name"] == "Gradius"
        assert reconstruct(s, "Game", game_id) is None


def test_actor_and_excluded_fields(app):
    with session_scope(app) as s:
        u = User(email="ed@example.com", password_hash=generate_password_hash("pw"), is_active=True)
        s.add(u)
    with session_scope(app) as s:
        ed = s.scalars(select(User)).one()
        create_revision(s, "Main", "hello", ed, 0)

    with session_scope(app) as s:
        ed = s.scalars(select(User)).one()
        user_fields = [f for f, _old, _new in get_history(s, "User", ed.id)[0].changes]
        assert "email" in user_fields
        assert "password_hash" not in user_fields

        page = s.scalars(select(WikiPage)).one()
        rec = get_history(s, "WikiPage", page.id)[0]
        assert rec.change_kind == CREATE
        assert rec.actor_user_id == ed.id
        assert rec.actor_user_email == "ed@example.com"


def test_page_revision_bump_is_an_update(app):
    with session_scope(app) as s:
        create_revision(s, "Main", "one", None, 0)
    with session_scope(app) as s:
        create_revision(s, "Main", "two", None, 1)
    with session_scope(app) as s:
        page = s.scalars(select(WikiPage)).one()
        latest = get_history(s, "WikiPage", page.id)[0]
        assert latest.change_kind == UPDATE
        assert ("latest_revision", 1, 2) in latest.changes


def test_failed_history_write_rolls_back_the_change(app):
    with session_scope(app) as s:
        game_id = create_game(s, {"display_name": "Zelda"}, None).id
    _reject_history_writes(app)

    with pytest.raises(HistoryWriteFailure):
        with session_scope(app) as s:
            update_game(s, s.get(Game, game_id), {"display_name": "Zelda II"}, None)

    with pytest.raises(HistoryWriteFailure):
        with session_scope(app) as s:
            create_revision(s, "Main", "never stored", None, 0)

    with session_scope(app) as s:
        assert s.get(Game, game_id).display_name == "Zelda"
        assert s.scalar(select(func.count()).select_from(WikiRevision)) == 0
        assert s.scalar(select(func.count()).select_from(WikiPage)) == 0
        assert s.scalar(select(func.count()).select_from(HistoryRecord)) == 1


def test_page_history_replays_to_current_state(app):
    with session_scope(app) as s:
        create_revision(s, "Main", "one", None, 0)
    with session_scope(app) as s:
        create_revision(s, "Main", "two", None, 1)

    with session_scope(app) as s:
        page = s.scalars(select(WikiPage)).one()
        page_id = page.id
        assert reconstruct(s, "WikiPage", page_id) == entity_snapshot(page)

    with session_scope(app) as s:
        soft_delete(s, "Main", None)

    with session_scope(app) as s:
        page = s.get(WikiPage, page_id)
        records = get_history(s, "WikiPage", page_id)
        assert [r.change_kind for r in records] == [UPDATE, UPDATE, CREATE]
        assert ("is_deleted", False, True) in records[0].changes
        rebuilt = reconstruct(s, "WikiPage", page_id)
        assert rebuilt == entity_snapshot(page)
        assert rebuilt["latest_revision"] == 2
        assert reconstruct(s, "WikiPage", page_id, upto_record_id=records[-1].id)["latest_revision"] == 1


def test_deleting_a_user_leaves_history_untouched(app):
    with session_scope(app) as s:
        s.add(User(email="gone@example.com", password_hash=generate_password_hash("pw"), is_active=True))
    with session_scope(app) as s:
        gone = s.scalars(select(User)).one()
        game_id = create_game(s, {"display_name": "Kid Icarus"}, gone).id
        create_revision(s, "Main", "hello", gone, 0)

    def rows():
        with session_scope(app) as s:
            history = s.execute(select(HistoryRecord.__table__).order_by(HistoryRecord.id)).all()
            revisions = s.execute(select(WikiRevision.__table__).order_by(WikiRevision.id)).all()
            return history, revisions

    before = rows()
    with session_scope(app) as s:
        s.delete(s.scalars(select(User)).one())

    history, revisions = rows()
    assert history[: len(before[0])] == before[0]
    assert revisions == before[1]
    assert [r.change_kind for r in history[len(before[0]):]] == [DELETE]
    with session_scope(app) as s:
        assert reconstruct(s, "Game", game_id) == entity_snapshot(s.get(Game, game_id))
