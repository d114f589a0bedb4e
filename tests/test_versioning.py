import pytest
from sqlalchemy import delete, select

from conftest import complete_content

from app.riskdocs.models import AuditEvent
from app.riskdocs.modules.actions.models import Action
from app.riskdocs.modules.actions.service import create_action
from app.riskdocs.modules.artifacts.models import LockedArtifact
from app.riskdocs.modules.documents.errors import (
    ChainNotAtTip,
    DocumentImmutable,
    DocumentNotFound,
    NotIssued,
    ValidationFailed,
)
from app.riskdocs.modules.documents.lifecycle import allowed_actions
from app.riskdocs.modules.documents.versioning import (
    check_lineage_integrity,
    create_document,
    create_next_version,
    discard_draft,
    get_lineage,
    load_content,
    save_content,
    version_history,
)


def test_create_document_starts_lineage_at_version_one(s, user):
    doc = create_document(s, title="  Plant room DSEAR ", doc_type="dsear+fra", actor=user)
    assert doc.version_number == 1
    assert doc.status == "draft"
    assert doc.title == "Plant room DSEAR"
    assert doc.doc_type == "DSEAR+FRA"
    lineage = get_lineage(s, doc.lineage_id)
    assert lineage.tip_document_id == doc.id
    assert lineage.issued_document_id is None
    assert check_lineage_integrity(s, doc.lineage_id) == []


def test_create_document_rejects_bad_input(s, user):
    with pytest.raises(ValidationFailed):
        create_document(s, title="", doc_type="FRA", actor=user)
    with pytest.raises(ValidationFailed):
        create_document(s, title="T", doc_type="EICR", actor=user)


def test_next_version_from_issued_tip(s, user, issue_approved):
    v1 = create_document(s, title="T", doc_type="FRA", actor=user, content=complete_content("FRA"))
    issue_approved(v1.id)

    v2 = create_next_version(s, v1.id, actor=user)
    assert v2.lineage_id == v1.lineage_id
    assert v2.version_number == 2
    assert v2.status == "draft"
    assert v2.content == v1.content
    # version-scoped fields start fresh
    assert v2.issued_at is None
    assert v2.approved_at is None
    assert v2.approval_requested_at is None
    assert v2.supersedes_document_id is None
    assert v1.status == "issued"
    assert "create_next_version" not in allowed_actions(v1)

    lineage = get_lineage(s, v1.lineage_id)
    assert lineage.tip_document_id == v2.id
    assert lineage.issued_document_id == v1.id
    assert check_lineage_integrity(s, v1.lineage_id) == []


def test_only_one_open_version_per_lineage(s, user, issue_approved):
    v1 = create_document(s, title="T", doc_type="FRA", actor=user, content=complete_content("FRA"))
    issue_approved(v1.id)
    create_next_version(s, v1.id, actor=user)
    with pytest.raises(ChainNotAtTip):
        create_next_version(s, v1.id, actor=user)
    assert [d.version_number for d in version_history(s, v1.lineage_id)] == [2, 1]


def test_revising_superseded_version_is_rejected(s, user, issue_approved):
    v1 = create_document(s, title="T", doc_type="FRA", actor=user, content=complete_content("FRA"))
    issue_approved(v1.id)
    v2 = create_next_version(s, v1.id, actor=user)
    issue_approved(v2.id)

    with pytest.raises(ChainNotAtTip) as exc:
        create_next_version(s, v1.id, actor=user)
    assert exc.value.details["tip_document_id"] == v2.id
    v3 = create_next_version(s, v2.id, actor=user)
    assert v3.version_number == 3


def test_revising_unissued_version_is_rejected(s, user):
    v1 = create_document(s, title="T", doc_type="FRA", actor=user)
    with pytest.raises(NotIssued):
        create_next_version(s, v1.id, actor=user)


def test_save_and_load_content(s, user):
    doc = create_document(s, title="T", doc_type="FRA", actor=user)
    assert load_content(s, doc.id) == {}
    save_content(s, doc.id, {"sections": {"survey_info": {"status": "in_progress"}}}, actor=user)
    assert load_content(s, doc.id)["sections"]["survey_info"]["status"] == "in_progress"
    with pytest.raises(ValidationFailed):
        save_content(s, doc.id, ["not", "an", "object"], actor=user)


def test_integrity_check_reports_missing_artifact(s, user, issue_approved):
    v1 = create_document(s, title="T", doc_type="FRA", actor=user, content=complete_content("FRA"))
    create_action(s, v1.id, actor=user, title="Fix")
    issue_approved(v1.id)
    assert check_lineage_integrity(s, v1.lineage_id) == []

    s.execute(delete(LockedArtifact).where(LockedArtifact.document_id == v1.id))
    s.commit()
    problems = check_lineage_integrity(s, v1.lineage_id)
    assert problems == ["version 1 is issued but has no locked artifact"]


def test_integrity_check_reports_pointer_drift(s, user):
    doc = create_document(s, title="T", doc_type="FRA", actor=user)
    lineage = get_lineage(s, doc.lineage_id)
    lineage.latest_version_number = 5
    lineage.next_reference_number = 0
    s.commit()

    problems = check_lineage_integrity(s, doc.lineage_id)
    assert any("latest_version_number 5" in p for p in problems)
    # no actions yet, so the counter is not checked
    assert not any("reference counter" in p for p in problems)


def test_discarded_revision_falls_back_to_issued_version(s, user, issue_approved):
    v1 = create_document(s, title="T", doc_type="FRA", actor=user, content=complete_content("FRA"))
    create_action(s, v1.id, actor=user, title="Fire door closer")
    issue_approved(v1.id)
    v2 = create_next_version(s, v1.id, actor=user)
    v2_id = v2.id
    assert create_action(s, v2_id, actor=user, title="Emergency lighting").reference == "R-02"

    tip = discard_draft(s, v2_id, actor=user)
    assert tip.id == v1.id

    s.expire_all()
    lineage = get_lineage(s, v1.lineage_id)
    assert lineage.tip_document_id == v1.id
    assert lineage.issued_document_id == v1.id
    assert lineage.latest_version_number == 1
    assert lineage.next_reference_number == 3
    assert s.execute(select(Action).where(Action.document_id == v2_id)).scalars().all() == []
    assert [d.version_number for d in version_history(s, v1.lineage_id)] == [1]
    assert check_lineage_integrity(s, v1.lineage_id) == []
    assert "document.discard" in s.execute(select(AuditEvent.action)).scalars().all()

    # the chain can be revised again and numbering keeps moving forward
    v2b = create_next_version(s, v1.id, actor=user)
    assert v2b.version_number == 2
    assert create_action(s, v2b.id, actor=user, title="Signage").reference == "R-03"
    assert check_lineage_integrity(s, v1.lineage_id) == []


def test_discard_refuses_issued_versions(s, user, issue_approved):
    v1 = create_document(s, title="T", doc_type="FRA", actor=user, content=complete_content("FRA"))
    issue_approved(v1.id)
    with pytest.raises(DocumentImmutable):
        discard_draft(s, v1.id, actor=user)
    s.expire_all()
    assert get_lineage(s, v1.lineage_id).tip_document_id == v1.id


def test_discarding_a_never_issued_document_removes_its_lineage(s, user):
    doc = create_document(s, title="T", doc_type="FRA", actor=user)
    create_action(s, doc.id, actor=user, title="Fire door closer")
    lineage_id = doc.lineage_id

    assert discard_draft(s, doc.id, actor=user) is None

    s.expire_all()
    with pytest.raises(DocumentNotFound):
        get_lineage(s, lineage_id)
    assert s.execute(select(Action).where(Action.lineage_id == lineage_id)).scalars().all() == []
