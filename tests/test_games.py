import pytest
from werkzeug.security import generate_password_hash

from app.pubwiki import create_app
from app.pubwiki.db import session_scope
from app.pubwiki.history import get_history
from app.pubwiki.models import Base, Permission, Role, User
from app.pubwiki.modules.games.models import GameSystem
from app.pubwiki.modules.games.service import GameCatalog, validate_game_payload


@pytest.fixture()
def client(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")

    app = create_app()
    Base.metadata.create_all(bind=app.extensions["sqlalchemy_engine"])

    with session_scope(app) as s:
        perms = [
            Permission(key="games.view", name="Games: view"),
            Permission(key="games.edit", name="Games: edit"),
        ]
        r = Role(key="curator", name="Curator")
        r.permissions.extend(perms)
        u = User(email="curator@example.com", password_hash=generate_password_hash("pw"), is_active=True)
        u.roles.append(r)
        s.add_all(perms + [r, u])

    c = app.test_client()
    r = c.post("/auth/login", data={"email": "curator@example.com", "password": "pw"})
    assert r.status_code == 200
    return c


def test_validate_game_payload():
    assert validate_game_payload({"display_name": "Kirby"}) == []
    assert "Display name is required." in validate_game_payload({"display_name": "  "})
    assert validate_game_payload({}, partial=True) == []
    assert any("Unknown field" in e for e in validate_game_payload({"display_name": "x", "price": "1"}))
    assert validate_game_payload({"display_name": "x", "game_resources_page": "/abs"}) != []


def test_game_crud_is_audited(client):
    r = client.post("/admin/games", json={"display_name": "Kirby", "abbreviation": "KDL"})
    assert r.status_code == 201
    gid = r.json["game"]["id"]

    r = client.post("/admin/games", json={"abbreviation": "X"})
    assert r.status_code == 400

    r = client.post(f"/admin/games/{gid}", json={"aliases": "Hoshi no Kirby"})
    assert r.status_code == 200
    assert r.json["game"]["aliases"] == "Hoshi no Kirby"

    r = client.get("/admin/games")
    assert [g["display_name"] for g in r.json["games"]] == ["Kirby"]

    catalog = GameCatalog(client.application.extensions["sqlalchemy_sessionmaker"])
    assert [g.display_name for g in catalog.by_ids([gid, 999])] == ["Kirby"]
    assert catalog.resource_pages() == set()

    with session_scope(client.application) as s:
        s.add(GameSystem(code="NES", display_name="Nintendo Entertainment System"))
    assert catalog.system_name("NES") == "Nintendo Entertainment System"
    assert catalog.system_name("SNES") is None

    assert client.post(f"/admin/games/{gid}/delete").status_code == 200
    assert client.post(f"/admin/games/{gid}/delete").status_code == 404

    with session_scope(client.application) as s:
        records = get_history(s, "Game", gid)
        assert [r.change_kind for r in records] == ["Delete", "Update", "Create"]
        assert records[-1].actor_user_email == "curator@example.com"
