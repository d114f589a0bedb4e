"""
Document state machine.

    draft -> pending_approval -> approved -> issued -> superseded
    pending_approval | approved -> draft        (reject / recall)
    draft -> issued                             (only when approval is not required)

``issued -> superseded`` is never requested directly; it happens to the
previous issued version as part of issuing its successor. Each transition
runs inside one lineage transaction and emits one audit event after commit.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.riskdocs.audit import emit_event
from app.riskdocs.modules.actions.service import assign_reference_numbers, document_actions
from app.riskdocs.modules.artifacts.models import LockedArtifact
from app.riskdocs.modules.artifacts.service import default_storage, lock
from app.riskdocs.modules.change_summaries.models import ChangeSummary
from app.riskdocs.modules.change_summaries.service import diff
from app.riskdocs.storage import Storage

from .errors import DocumentNotFound, InvalidTransition, NotEligible, ValidationFailed
from .locking import lineage_transaction
from .models import Document, DocumentStatus
from .readiness import ReadinessResult, evaluate_document

if TYPE_CHECKING:
    from app.riskdocs.models import User

logger = logging.getLogger(__name__)

DRAFT = DocumentStatus.DRAFT.value
PENDING = DocumentStatus.PENDING_APPROVAL.value
APPROVED = DocumentStatus.APPROVED.value
ISSUED = DocumentStatus.ISSUED.value
SUPERSEDED = DocumentStatus.SUPERSEDED.value

# status -> {action: resulting status}
TRANSITIONS: dict[str, dict[str, str]] = {
    DRAFT: {"request_approval": PENDING, "issue": ISSUED},
    PENDING: {"approve": APPROVED, "reject": DRAFT, "recall": DRAFT},
    APPROVED: {"issue": ISSUED, "recall": DRAFT},
    ISSUED: {"supersede": SUPERSEDED},
    SUPERSEDED: {},
}

# Never requested by a user; applied by issue() to the previous version.
_SIDE_EFFECT_ACTIONS = frozenset({"supersede"})


@dataclass(frozen=True)
class IssueOutcome:
    document: Document
    artifact: LockedArtifact
    change_summary: ChangeSummary | None
    superseded: Document | None
    sealed_references: int


def transition_table() -> dict[str, dict[str, str]]:
    return {status: dict(moves) for status, moves in TRANSITIONS.items()}


def allowed_actions(document: Document) -> list[str]:
    """Actions a user could request on ``document`` right now (ignores permissions and readiness)."""
    actions = [a for a in TRANSITIONS.get(document.status, {}) if a not in _SIDE_EFFECT_ACTIONS]
    if document.status == DRAFT and document.approval_required:
        actions.remove("issue")
    if not document.immutable:
        actions.append("edit")
    if document.status == ISSUED and document.lineage is not None and document.lineage.tip_document_id == document.id:
        actions.append("create_next_version")
    return actions


def _get_document(s: Session, doc_id: int) -> Document:
    doc = s.get(Document, doc_id)
    if doc is None:
        raise DocumentNotFound("Document", doc_id)
    return doc


def _require(doc: Document, action: str) -> str:
    target = TRANSITIONS.get(doc.status, {}).get(action)
    if target is None or action in _SIDE_EFFECT_ACTIONS:
        logger.warning("Rejected transition action=%s document_id=%s status=%s", action, doc.id, doc.status)
        raise InvalidTransition(action, doc.status)
    return target


def _emit_transition(
    s: Session,
    actor: User | None,
    doc: Document,
    action: str,
    from_status: str,
    *,
    reason: str | None = None,
    **meta: Any,
) -> None:
    logger.info(
        "Document %s: %s -> %s document_id=%s lineage=%s v%s",
        action,
        from_status,
        doc.status,
        doc.id,
        doc.lineage_id,
        doc.version_number,
    )
    emit_event(
        s,
        actor=actor,
        action=f"document.{action}",
        entity_type="Document",
        entity_id=str(doc.id),
        reason=reason,
        metadata={
            "lineage_id": doc.lineage_id,
            "version_number": doc.version_number,
            "from_status": from_status,
            "to_status": doc.status,
            **meta,
        },
    )


def readiness(s: Session, doc_id: int) -> ReadinessResult:
    """Advisory readiness; the same evaluation ``issue()`` enforces."""
    doc = _get_document(s, doc_id)
    return evaluate_document(doc, document_actions(s, doc.id))


def request_approval(s: Session, doc_id: int, *, actor: User | None, notes: str | None = None) -> Document:
    lineage_id = _get_document(s, doc_id).lineage_id
    with lineage_transaction(s, lineage_id):
        doc = _get_document(s, doc_id)
        s.refresh(doc)
        from_status = doc.status
        doc.status = _require(doc, "request_approval")
        doc.approval_requested_at = datetime.utcnow()
        doc.approval_requested_by_user_id = actor.id if actor else None
        doc.approval_notes = (notes or "").strip() or None
        doc.rejection_reason = None
        doc.updated_at = datetime.utcnow()

    _emit_transition(s, actor, doc, "request_approval", from_status, reason=doc.approval_notes)
    return doc


def decide(
    s: Session,
    doc_id: int,
    *,
    actor: User | None,
    approve: bool,
    reason: str | None = None,
) -> Document:
    """Approve (-> approved) or reject (-> draft) a pending document. Rejection needs a reason."""
    reason = (reason or "").strip() or None
    action = "approve" if approve else "reject"

    lineage_id = _get_document(s, doc_id).lineage_id
    with lineage_transaction(s, lineage_id):
        doc = _get_document(s, doc_id)
        s.refresh(doc)
        from_status = doc.status
        target = _require(doc, action)
        if not approve and not reason:
            raise ValidationFailed("A reason is required to reject a document.", field="reason")
        doc.status = target
        now = datetime.utcnow()
        if approve:
            doc.approved_at = now
            doc.approved_by_user_id = actor.id if actor else None
            if reason:
                doc.approval_notes = reason
        else:
            doc.approved_at = None
            doc.approved_by_user_id = None
            doc.rejection_reason = reason
        doc.updated_at = now

    _emit_transition(s, actor, doc, action, from_status, reason=reason)
    return doc


def recall(s: Session, doc_id: int, *, actor: User | None, reason: str | None = None) -> Document:
    """Return a pending or approved document to draft, clearing its approval stamps."""
    lineage_id = _get_document(s, doc_id).lineage_id
    with lineage_transaction(s, lineage_id):
        doc = _get_document(s, doc_id)
        s.refresh(doc)
        from_status = doc.status
        doc.status = _require(doc, "recall")
        doc.approval_requested_at = None
        doc.approval_requested_by_user_id = None
        doc.approved_at = None
        doc.approved_by_user_id = None
        doc.updated_at = datetime.utcnow()

    _emit_transition(s, actor, doc, "recall", from_status, reason=(reason or "").strip() or None)
    return doc


def _previous_issued(s: Session, doc: Document, issued_document_id: int | None) -> Document | None:
    if issued_document_id is not None and issued_document_id != doc.id:
        prior = s.get(Document, issued_document_id)
        if prior is not None and prior.status == ISSUED:
            return prior
    return s.execute(
        select(Document)
        .where(Document.lineage_id == doc.lineage_id, Document.status == ISSUED, Document.id != doc.id)
        .order_by(Document.version_number.desc())
    ).scalars().first()


def issue(
    s: Session,
    doc_id: int,
    *,
    actor: User | None,
    rendered_bytes: bytes,
    filename: str,
    content_type: str = "application/pdf",
    storage: Storage | None = None,
) -> IssueOutcome:
    """
    Issue a version.

    Readiness is evaluated here against the stored content and actions; any
    blocker raises ``NotEligible`` with the complete list. On success the
    status flip, reference sealing, supersession of the previous issued
    version, change summary and artifact lock commit together or not at all.
    """
    storage = storage or default_storage()
    lineage_id = _get_document(s, doc_id).lineage_id
    with lineage_transaction(s, lineage_id) as lineage:
        doc = _get_document(s, doc_id)
        s.refresh(doc)
        from_status = doc.status
        target = _require(doc, "issue")
        if doc.status == DRAFT and doc.approval_required:
            logger.warning("Rejected issue of unapproved draft document_id=%s", doc.id)
            raise InvalidTransition("issue", doc.status, "approval is required before issue")

        result = evaluate_document(doc, document_actions(s, doc.id))
        if not result.eligible:
            logger.warning("Issue blocked document_id=%s blockers=%d", doc.id, len(result.blockers))
            raise NotEligible(list(result.blockers))

        now = datetime.utcnow()
        doc.status = target
        doc.issued_at = now
        doc.issued_by_user_id = actor.id if actor else None
        doc.updated_at = now
        sealed = assign_reference_numbers(s, lineage)

        prior = _previous_issued(s, doc, lineage.issued_document_id)
        summary: ChangeSummary | None = None
        if prior is not None:
            prior.status = TRANSITIONS[ISSUED]["supersede"]
            prior.superseded_by_document_id = doc.id
            prior.superseded_at = now
            prior.updated_at = now
            doc.supersedes_document_id = prior.id
            s.flush()
            summary = diff(s, doc, prior, actor=actor)

        artifact = lock(
            s,
            doc,
            rendered_bytes,
            actor=actor,
            filename=filename,
            content_type=content_type,
            storage=storage,
        )
        lineage.issued_document_id = doc.id
        lineage.tip_document_id = doc.id

    if prior is not None:
        _emit_transition(s, actor, prior, "supersede", ISSUED, superseded_by_document_id=doc.id)
    _emit_transition(
        s,
        actor,
        doc,
        "issue",
        from_status,
        artifact_sha256=artifact.sha256,
        change_summary_id=summary.id if summary else None,
        supersedes_document_id=prior.id if prior else None,
        sealed_references=len(sealed),
    )
    return IssueOutcome(
        document=doc,
        artifact=artifact,
        change_summary=summary,
        superseded=prior,
        sealed_references=len(sealed),
    )
