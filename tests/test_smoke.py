import pytest
from werkzeug.security import generate_password_hash

from app.pubwiki import create_app
from app.pubwiki.db import session_scope
from app.pubwiki.models import Base, Permission, Role, User
from app.pubwiki.modules.wiki.registry import DuplicateModuleError, ModuleDescriptor


@pytest.fixture()
def client(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")

    app = create_app()

    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)

    with session_scope(app) as s:
        p = Permission(key="admin.view", name="Admin: view shell")
        r = Role(key="admin", name="Administrator")
        r.permissions.append(p)
        u = User(email="admin@example.com", password_hash=generate_password_hash("pw"), is_active=True)
        u.roles.append(r)
        s.add_all([p, r, u])

    return app.test_client()


def test_health_ok(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json["ok"] is True

    r = client.get("/healthz")
    assert r.status_code == 200
    assert r.data == b"ok"


def test_login_and_admin_access(client):
    # Anonymous is not authenticated
    r = client.get("/admin/")
    assert r.status_code == 401
    assert r.json["ok"] is False

    r = client.post("/auth/login", data={"email": "admin@example.com", "password": "wrong"})
    assert r.status_code == 401

    r = client.post("/auth/login", data={"email": "admin@example.com", "password": "pw"})
    assert r.status_code == 200
    assert r.json["user"]["email"] == "admin@example.com"

    r = client.get("/admin/")
    assert r.status_code == 200
    assert r.json["db_connected"] is True
    assert r.json["wiki_modules"] >= 6

    client.get("/auth/logout")
    assert client.get("/admin/").status_code == 401


def test_root_redirects_to_default_page(client):
    r = client.get("/", follow_redirects=False)
    assert r.status_code == 302
    assert r.headers["Location"].endswith("/wiki/page/FrontPage")


def test_module_catalog(client):
    r = client.get("/wiki/modules")
    assert r.status_code == 200
    names = [m["name"] for m in r.json["modules"]]
    assert "PageHistory" in names
    assert names == sorted(names, key=str.casefold)


def test_duplicate_module_aborts_startup(tmp_path, monkeypatch):
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'dup.db'}")
    monkeypatch.setenv("ENV", "test")
    clash = ModuleDescriptor(name="pagehistory", render=lambda call, ctx: "")
    with pytest.raises(DuplicateModuleError):
        create_app(extra_modules=[clash])


def test_bad_timeout_setting_is_rejected(tmp_path, monkeypatch):
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'cfg.db'}")
    monkeypatch.setenv("WIKI_MODULE_TIMEOUT", "soon")
    with pytest.raises(RuntimeError):
        create_app()


@pytest.mark.parametrize("value", ["0", "-1"])
def test_non_positive_timeout_setting_is_rejected(tmp_path, monkeypatch, value):
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'cfg.db'}")
    monkeypatch.setenv("WIKI_MODULE_TIMEOUT", value)
    with pytest.raises(RuntimeError, match="greater than zero"):
        create_app()
