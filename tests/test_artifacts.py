import hashlib

import pytest
from sqlalchemy import delete, select

from conftest import complete_content

from app.riskdocs.models import AuditEvent
from app.riskdocs.modules.artifacts.models import LockedArtifact
from app.riskdocs.modules.artifacts.service import (
    artifact_record,
    build_artifact_storage_key,
    fetch,
    get_locked_artifact,
    lock,
)
from app.riskdocs.modules.documents.errors import InvalidTransition, MissingLockedArtifact, NotIssued
from app.riskdocs.modules.documents.versioning import create_document, create_next_version, save_content


@pytest.fixture()
def issued(s, user, issue_approved):
    doc = create_document(s, title="T", doc_type="FRA", actor=user, content=complete_content("FRA"))
    outcome = issue_approved(doc.id, b"%PDF-1.7 locked bytes")
    return outcome.document


def _violations(s) -> list[AuditEvent]:
    return list(
        s.execute(select(AuditEvent).where(AuditEvent.action == "artifact.integrity_violation")).scalars()
    )


def test_fetch_returns_the_bytes_locked_at_issue(s, user, storage, issued):
    artifact, data = fetch(s, issued.id, storage=storage)
    assert data == b"%PDF-1.7 locked bytes"
    assert artifact.sha256 == hashlib.sha256(data).hexdigest()
    assert artifact.size_bytes == len(data)
    assert artifact.filename == "report.pdf"
    assert artifact.storage_key == f"artifacts/{issued.lineage_id}/v1/{artifact.sha256}.pdf"
    assert build_artifact_storage_key(issued, artifact.sha256, "x.pdf") == artifact.storage_key


def test_superseded_version_still_serves_its_own_bytes(s, user, storage, issued, issue_approved):
    v2 = create_next_version(s, issued.id, actor=user)
    save_content(s, v2.id, complete_content("FRA", site_note="changed"), actor=user)
    issue_approved(v2.id, b"%PDF-1.7 version two")

    assert issued.status == "superseded"
    _, old = fetch(s, issued.id, storage=storage)
    _, new = fetch(s, v2.id, storage=storage)
    assert old == b"%PDF-1.7 locked bytes"
    assert new == b"%PDF-1.7 version two"


def test_fetch_on_draft_is_not_issued(s, user, storage):
    doc = create_document(s, title="T", doc_type="FRA", actor=user)
    with pytest.raises(NotIssued):
        fetch(s, doc.id, storage=storage)
    assert _violations(s) == []


def test_missing_record_is_an_integrity_violation(s, user, storage, issued):
    s.execute(delete(LockedArtifact).where(LockedArtifact.document_id == issued.id))
    s.commit()

    with pytest.raises(MissingLockedArtifact) as exc:
        fetch(s, issued.id, actor=user, storage=storage)
    assert exc.value.reason == "artifact record missing"
    (event,) = _violations(s)
    assert event.entity_id == str(issued.id)
    assert event.actor_user_id == user.id


def test_artifact_record_reports_missing_row_for_issued_versions(s, user, storage, issued):
    draft = create_document(s, title="Other", doc_type="FRA", actor=user)
    assert artifact_record(s, draft.id) is None
    assert artifact_record(s, issued.id).sha256 == get_locked_artifact(s, issued.id).sha256

    s.execute(delete(LockedArtifact).where(LockedArtifact.document_id == issued.id))
    s.commit()
    with pytest.raises(MissingLockedArtifact) as exc:
        artifact_record(s, issued.id, actor=user)
    assert exc.value.reason == "artifact record missing"
    assert len(_violations(s)) == 1


def test_missing_blob_is_an_integrity_violation(s, user, storage, issued):
    artifact = get_locked_artifact(s, issued.id)
    (storage.root / artifact.storage_key).unlink()

    with pytest.raises(MissingLockedArtifact) as exc:
        fetch(s, issued.id, storage=storage)
    assert exc.value.reason.startswith("artifact blob missing")
    assert len(_violations(s)) == 1


def test_tampered_blob_fails_checksum(s, user, storage, issued):
    artifact = get_locked_artifact(s, issued.id)
    (storage.root / artifact.storage_key).write_bytes(b"%PDF-1.7 re-rendered")

    with pytest.raises(MissingLockedArtifact) as exc:
        fetch(s, issued.id, storage=storage)
    assert exc.value.reason == "artifact checksum mismatch"


def test_lock_refuses_second_artifact(s, user, storage, issued):
    with pytest.raises(InvalidTransition):
        lock(s, issued, b"other", actor=user, filename="other.pdf", storage=storage)
    s.rollback()
    assert s.execute(select(LockedArtifact)).scalars().all() == [get_locked_artifact(s, issued.id)]


def test_local_storage_writes_once_and_stays_under_root(storage):
    from app.riskdocs.storage import StorageError

    assert storage.put_if_absent("artifacts/x/v1/a.pdf", b"first") is True
    assert storage.put_if_absent("artifacts/x/v1/a.pdf", b"second") is False
    assert storage.get_bytes("artifacts/x/v1/a.pdf") == b"first"
    assert not list((storage.root / "artifacts/x/v1").glob(".upload-*"))
    with pytest.raises(StorageError):
        storage.put_bytes("../escape.pdf", b"x")
    with pytest.raises(StorageError):
        storage.open("artifacts/x/v1/missing.pdf")


def test_storage_from_config(tmp_path):
    from app.riskdocs.storage import LocalStorage, S3Storage, StorageError, storage_from_config

    local = storage_from_config({"STORAGE_BACKEND": "local", "STORAGE_ROOT": str(tmp_path / "blobs")})
    assert isinstance(local, LocalStorage) and local.root == tmp_path / "blobs"
    s3 = storage_from_config({"STORAGE_BACKEND": "s3", "S3_BUCKET": "riskdocs"})
    assert isinstance(s3, S3Storage) and s3.bucket == "riskdocs"
    with pytest.raises(StorageError):
        storage_from_config({"STORAGE_BACKEND": "ftp"})
