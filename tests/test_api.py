import io

import pytest
from werkzeug.security import generate_password_hash

from conftest import complete_content

from app.riskdocs.db import session_scope
from app.riskdocs.models import Permission, Role, User
from scripts.check_integrity import run_check
from scripts.init_db import PERMISSIONS, ROLES


@pytest.fixture()
def seeded(app):
    with session_scope(app) as s:
        perms = {key: Permission(key=key, name=name) for key, name in PERMISSIONS.items()}
        roles = {}
        for key, (name, perm_keys) in ROLES.items():
            role = Role(key=key, name=name)
            role.permissions.extend(perms[p] for p in perm_keys)
            roles[key] = role
        admin = User(email="admin@example.com", password_hash=generate_password_hash("pw"), is_active=True)
        admin.roles.append(roles["admin"])
        reviewer = User(email="reviewer@example.com", password_hash=generate_password_hash("pw"), is_active=True)
        reviewer.roles.append(roles["reviewer"])
        s.add_all([*perms.values(), *roles.values(), admin, reviewer])
    return app


def _login(client, email="admin@example.com"):
    r = client.post("/auth/login", json={"email": email, "password": "pw"})
    assert r.status_code == 200
    return {"X-CSRF-Token": r.json["csrf_token"]}


def test_unauthenticated_requests_get_401(seeded):
    client = seeded.test_client()
    r = client.get("/api/documents")
    assert r.status_code == 401
    assert r.json["error"] == "unauthenticated"


def test_missing_permission_gets_403(seeded):
    client = seeded.test_client()
    headers = _login(client, "reviewer@example.com")
    r = client.post("/api/documents", json={"title": "T", "doc_type": "FRA"}, headers=headers)
    assert r.status_code == 403
    assert r.json["missing_permission"] == "docs.create"


def test_writes_without_csrf_token_are_rejected(seeded):
    client = seeded.test_client()
    _login(client)
    r = client.post("/api/documents", json={"title": "T", "doc_type": "FRA"})
    assert r.status_code == 400
    assert r.json["error"] == "csrf_failed"


def test_document_lifecycle_over_http(seeded):
    client = seeded.test_client()
    h = _login(client)

    r = client.post("/api/documents", json={"title": "Block A", "doc_type": "FRA"}, headers=h)
    assert r.status_code == 201
    doc = r.json["document"]
    doc_id = doc["id"]
    assert doc["allowed_actions"] == ["request_approval", "edit"]

    r = client.get(f"/api/documents/{doc_id}/readiness")
    assert r.json["readiness"]["eligible"] is False
    assert "survey_info" in r.json["readiness"]["blockers_by_section"]
    assert "required sections must be completed" in r.json["requirements"]

    r = client.put(f"/api/documents/{doc_id}/content", json={"content": complete_content("FRA")}, headers=h)
    assert r.status_code == 200
    r = client.post(f"/api/documents/{doc_id}/actions", json={"title": "Fire door", "priority_band": "P2"}, headers=h)
    assert r.status_code == 201
    assert r.json["action"]["reference"] == "R-01"

    assert client.post(f"/api/documents/{doc_id}/request-approval", json={}, headers=h).status_code == 200
    r = client.post(f"/api/documents/{doc_id}/decide", json={"approve": True}, headers=h)
    assert r.json["document"]["status"] == "approved"

    r = client.post(
        f"/api/documents/{doc_id}/issue",
        data={"file": (io.BytesIO(b"%PDF-1.7 block a"), "block-a.pdf")},
        content_type="multipart/form-data",
        headers=h,
    )
    assert r.status_code == 200, r.json
    assert r.json["document"]["status"] == "issued"
    sha = r.json["artifact"]["sha256"]

    r = client.get(f"/api/documents/{doc_id}/artifact")
    assert r.status_code == 200
    assert r.data == b"%PDF-1.7 block a"
    assert r.headers["X-Content-SHA256"] == sha

    # issued content is frozen
    r = client.put(f"/api/documents/{doc_id}/content", json={"content": {}}, headers=h)
    assert r.status_code == 409
    assert r.json["error"] == "document_immutable"

    r = client.post(f"/api/documents/{doc_id}/versions", json={}, headers=h)
    assert r.status_code == 201
    v2_id = r.json["document"]["id"]
    assert r.json["document"]["version_number"] == 2

    r = client.get(f"/api/documents/{v2_id}/actions?open=1")
    (carried,) = r.json["actions"]
    r = client.post(f"/api/actions/{carried['id']}/close", json={"note": "Replaced"}, headers=h)
    assert r.json["action"]["status"] == "closed"

    client.post(f"/api/documents/{v2_id}/request-approval", json={}, headers=h)
    client.post(f"/api/documents/{v2_id}/decide", json={"approve": True}, headers=h)
    r = client.post(
        f"/api/documents/{v2_id}/issue",
        data={"file": (io.BytesIO(b"%PDF-1.7 block a v2"), "block-a.pdf")},
        content_type="multipart/form-data",
        headers=h,
    )
    assert r.json["superseded_document_id"] == doc_id

    r = client.get(f"/api/documents/{v2_id}/change-summary")
    assert r.json["stats"]["closed_actions"] == 1
    assert r.json["change_summary"]["closed"][0]["reference"] == "R-01"

    r = client.get(f"/api/documents/{doc_id}/change-summary")
    assert r.json["change_summary"] is None

    r = client.get(f"/api/documents/{doc_id}/history")
    assert [v["version_number"] for v in r.json["versions"]] == [2, 1]
    lineage_id = r.json["lineage_id"]

    r = client.get(f"/api/lineages/{lineage_id}/integrity")
    assert r.json == {"lineage_id": lineage_id, "ok": True, "problems": []}
    assert run_check(seeded.config["DATABASE_URL"]) == {}


def test_issue_with_blockers_returns_422(seeded):
    client = seeded.test_client()
    h = _login(client)
    doc_id = client.post("/api/documents", json={"title": "T", "doc_type": "FRA+DSEAR"}, headers=h).json["document"]["id"]
    client.post(f"/api/documents/{doc_id}/request-approval", json={}, headers=h)
    client.post(f"/api/documents/{doc_id}/decide", json={"approve": True}, headers=h)

    r = client.post(
        f"/api/documents/{doc_id}/issue",
        data={"file": (io.BytesIO(b"%PDF"), "x.pdf")},
        content_type="multipart/form-data",
        headers=h,
    )
    assert r.status_code == 422
    assert r.json["error"] == "not_eligible"
    assert r.json["blockers"]

    r = client.get(f"/api/documents/{doc_id}/artifact")
    assert r.status_code == 409
    assert r.json["error"] == "not_issued"


def test_reject_without_reason_is_a_validation_error(seeded):
    client = seeded.test_client()
    h = _login(client)
    doc_id = client.post("/api/documents", json={"title": "T", "doc_type": "FRA"}, headers=h).json["document"]["id"]
    client.post(f"/api/documents/{doc_id}/request-approval", json={}, headers=h)

    r = client.post(f"/api/documents/{doc_id}/decide", json={"approve": False}, headers=h)
    assert r.status_code == 400
    assert r.json["error"] == "validation_failed"

    r = client.post(f"/api/documents/{doc_id}/decide", json={"decision": "reject", "reason": "Photos"}, headers=h)
    assert r.json["document"]["status"] == "draft"
    assert "issue" not in r.json["document"]["allowed_actions"]


def test_permitted_actions_and_audit_trail(seeded):
    admin = seeded.test_client()
    h = _login(admin)
    doc = admin.post("/api/documents", json={"title": "Plant room", "doc_type": "DSEAR"}, headers=h).json["document"]
    assert doc["permitted_actions"] == ["request_approval", "edit"]
    assert admin.post(f"/api/documents/{doc['id']}/request-approval", json={}, headers=h).status_code == 200

    reviewer = seeded.test_client()
    _login(reviewer, "reviewer@example.com")
    r = reviewer.get(f"/api/documents/{doc['id']}")
    assert r.json["document"]["allowed_actions"] == ["approve", "reject", "recall", "edit"]
    assert r.json["document"]["permitted_actions"] == ["approve", "reject"]
    r = reviewer.get(f"/api/documents/{doc['id']}/audit")
    assert r.status_code == 403
    assert r.json["missing_permission"] == "admin.view"

    r = admin.get(f"/api/documents/{doc['id']}/audit")
    assert r.status_code == 200
    events = r.json["events"]
    assert [e["action"] for e in events] == ["document.create", "document.request_approval"]
    assert events[0]["actor_user_email"] == "admin@example.com"
    assert events[0]["metadata"]["doc_type"] == "DSEAR"


def test_discard_draft_over_http(seeded):
    client = seeded.test_client()
    h = _login(client)
    doc_id = client.post("/api/documents", json={"title": "Scratch", "doc_type": "FRA"}, headers=h).json["document"]["id"]

    assert client.delete(f"/api/documents/{doc_id}").status_code == 400
    r = client.delete(f"/api/documents/{doc_id}", headers=h)
    assert r.status_code == 200
    assert r.json == {"discarded_document_id": doc_id, "tip": None}
    assert client.get(f"/api/documents/{doc_id}").status_code == 404
