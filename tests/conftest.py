import pytest
from werkzeug.security import generate_password_hash

from app.riskdocs import create_app
from app.riskdocs.db import session_scope
from app.riskdocs.models import Base, User
from app.riskdocs.modules.documents.requirements import DSEAR_RULES, FRA_RULES, FSD_RULES
from app.riskdocs.storage import LocalStorage

_RULES = {"FRA": FRA_RULES, "FSD": FSD_RULES, "DSEAR": DSEAR_RULES}


def complete_sections(*frameworks: str) -> dict:
    sections: dict = {}
    for fw in frameworks:
        for rule in _RULES[fw]:
            entry = sections.setdefault(rule.key, {"status": "complete", "fields": {}})
            for f in rule.required_fields:
                entry["fields"][f] = "value"
    return sections


def complete_content(*frameworks: str, **context) -> dict:
    """Content that satisfies every unconditional requirement of ``frameworks``."""
    frameworks = frameworks or ("FRA",)
    ctx = {"no_significant_findings": True, "no_dangerous_substances": True, "no_zoned_areas": True}
    ctx["controls_adequate_confirmed"] = True
    ctx.update(context)
    return {"context": ctx, "sections": complete_sections(*frameworks)}


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    monkeypatch.setenv("APPROVAL_REQUIRED", "1")
    monkeypatch.setenv("LINEAGE_LOCK_TIMEOUT", "5")
    for k in ("S3_ENDPOINT", "S3_REGION", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY"):
        monkeypatch.delenv(k, raising=False)

    app = create_app()
    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)
    return app


@pytest.fixture()
def s(app):
    sm = app.extensions["sqlalchemy_sessionmaker"]
    session = sm()
    with app.app_context():
        yield session
    session.close()


@pytest.fixture()
def user(app):
    with session_scope(app) as session:
        u = User(email="assessor@example.com", password_hash=generate_password_hash("pw"), is_active=True)
        session.add(u)
    return u


@pytest.fixture()
def storage(tmp_path):
    return LocalStorage(root=tmp_path / "blobs")


@pytest.fixture()
def issue_approved(s, user, storage):
    """request approval -> approve -> issue, returning the IssueOutcome."""
    from app.riskdocs.modules.documents.lifecycle import decide, issue, request_approval

    def _issue(doc_id: int, data: bytes = b"%PDF-1.7 rendered"):
        request_approval(s, doc_id, actor=user)
        decide(s, doc_id, actor=user, approve=True, reason="Reviewed")
        return issue(
            s,
            doc_id,
            actor=user,
            rendered_bytes=data,
            filename="report.pdf",
            content_type="application/pdf",
            storage=storage,
        )

    return _issue
