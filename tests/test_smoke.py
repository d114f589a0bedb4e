import pytest
from werkzeug.security import generate_password_hash

from app.riskdocs.db import session_scope
from app.riskdocs.models import Permission, Role, User


@pytest.fixture()
def client(app):
    with session_scope(app) as s:
        p = Permission(key="docs.view", name="Documents: view")
        r = Role(key="reviewer", name="Reviewer")
        r.permissions.append(p)
        u = User(email="reviewer@example.com", password_hash=generate_password_hash("pw"), is_active=True)
        u.roles.append(r)
        s.add_all([p, r, u])

    return app.test_client()


def test_health_ok(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json["ok"] is True
    assert client.get("/healthz").data == b"ok"


def test_login_and_api_access(client):
    # Anonymous is rejected
    r = client.get("/api/documents")
    assert r.status_code == 401

    r = client.post("/auth/login", json={"email": "reviewer@example.com", "password": "wrong"})
    assert r.status_code == 401
    assert r.json["error"] == "invalid_credentials"

    r = client.post("/auth/login", json={"email": "reviewer@example.com", "password": "pw"})
    assert r.status_code == 200
    assert r.json["csrf_token"]

    r = client.get("/api/documents")
    assert r.status_code == 200
    assert r.json == {"documents": []}

    r = client.get("/api/documents/transitions")
    assert r.json["transitions"]["draft"] == {"request_approval": "pending_approval", "issue": "issued"}


def test_unknown_routes_are_json(client):
    r = client.get("/api/nope")
    assert r.status_code == 404
    assert r.json["error"] == "not_found"


def test_release_schema_verification(app, tmp_path):
    from app.riskdocs import REQUIRED_TABLES
    from scripts.release import missing_tables

    assert missing_tables(app.config["DATABASE_URL"]) == []
    assert missing_tables(f"sqlite:///{tmp_path/'empty.db'}") == list(REQUIRED_TABLES)


def test_start_script_helpers(monkeypatch):
    from scripts import start

    monkeypatch.setenv("PORT", "9000")
    assert start._port() == "9000"
    argv = start.gunicorn_argv("9000", "3")
    assert argv[:2] == ["gunicorn", "app.wsgi:app"]
    assert argv[argv.index("--bind") + 1] == "0.0.0.0:9000"
    assert argv[argv.index("--workers") + 1] == "3"

    monkeypatch.setenv("PORT", "70000")
    with pytest.raises(SystemExit):
        start._port()


def test_me_and_logout(client):
    assert client.get("/auth/me").status_code == 401
    token = client.post("/auth/login", json={"email": "reviewer@example.com", "password": "pw"}).json["csrf_token"]
    me = client.get("/auth/me").json["user"]
    assert me["email"] == "reviewer@example.com"
    assert me["roles"] == ["reviewer"]
    assert me["permissions"] == ["docs.view"]

    assert client.post("/auth/logout", headers={"X-CSRF-Token": token}).json == {"ok": True}
    assert client.get("/auth/me").status_code == 401


def test_login_throttle_counts_failures_per_address():
    from app.riskdocs.auth import LoginThrottle

    t = LoginThrottle(limit=2, window_seconds=60)
    t.failed("10.0.0.1")
    assert not t.blocked("10.0.0.1")
    t.failed("10.0.0.1")
    assert t.blocked("10.0.0.1")
    assert not t.blocked("10.0.0.2")
    t.reset("10.0.0.1")
    assert not t.blocked("10.0.0.1")
    assert t._failures == {}


def test_package_metadata_does_not_point_at_design_notes():
    from pathlib import Path

    pyproject = (Path(__file__).resolve().parents[1] / "pyproject.toml").read_text(encoding="utf-8")
    assert 'name = "riskdocs"' in pyproject
    assert ".md" not in pyproject.split("[project]", 1)[1].split("[", 1)[0]
