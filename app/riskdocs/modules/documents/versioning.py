"""
Version chain manager.

A lineage is created explicitly together with its first draft. New versions
are forked only from the issued tip; every version-scoped field starts
fresh on the fork and open actions are carried forward.
"""
from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime
from typing import TYPE_CHECKING, Any

from flask import current_app, has_app_context
from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from app.riskdocs.audit import emit_event
from app.riskdocs.modules.actions.models import Action
from app.riskdocs.modules.actions.service import carry_forward
from app.riskdocs.modules.artifacts.models import LockedArtifact

from .errors import ChainNotAtTip, DocumentImmutable, DocumentNotFound, NotIssued, ValidationFailed
from .locking import lineage_transaction
from .models import OPEN_STATUSES, Document, DocumentStatus, Lineage
from .requirements import normalize_doc_type

if TYPE_CHECKING:
    from app.riskdocs.models import User

logger = logging.getLogger(__name__)


def get_document(s: Session, doc_id: int) -> Document:
    doc = s.get(Document, doc_id)
    if doc is None:
        raise DocumentNotFound("Document", doc_id)
    return doc


def get_lineage(s: Session, lineage_id: str) -> Lineage:
    lineage = s.get(Lineage, lineage_id)
    if lineage is None:
        raise DocumentNotFound("Lineage", lineage_id)
    return lineage


def _default_approval_required() -> bool:
    if has_app_context():
        return bool(current_app.config.get("APPROVAL_REQUIRED", True))
    return True


def _dump_content(payload: Any) -> str:
    if not isinstance(payload, dict):
        raise ValidationFailed("Document content must be a JSON object.", field="content")
    return json.dumps(payload, sort_keys=True, default=str)


def create_document(
    s: Session,
    *,
    title: str,
    doc_type: str,
    actor: User | None,
    content: dict[str, Any] | None = None,
    approval_required: bool | None = None,
) -> Document:
    """Create a lineage and its version 1 draft."""
    title = (title or "").strip()
    if not title:
        raise ValidationFailed("Title is required.", field="title")
    try:
        doc_type = normalize_doc_type(doc_type)
    except ValueError as e:
        raise ValidationFailed(str(e), field="doc_type") from e
    if approval_required is None:
        approval_required = _default_approval_required()

    lineage = Lineage(
        id=uuid.uuid4().hex,
        title=title,
        doc_type=doc_type,
        next_reference_number=1,
        latest_version_number=1,
    )
    doc = Document(
        lineage_id=lineage.id,
        version_number=1,
        title=title,
        doc_type=doc_type,
        status=DocumentStatus.DRAFT.value,
        approval_required=approval_required,
        content_json=_dump_content(content or {}),
        created_by_user_id=actor.id if actor else None,
    )
    s.add(lineage)
    s.add(doc)
    s.flush()
    lineage.tip_document_id = doc.id
    s.commit()

    logger.info("Created lineage=%s document_id=%s doc_type=%s", lineage.id, doc.id, doc_type)
    emit_event(
        s,
        actor=actor,
        action="document.create",
        entity_type="Document",
        entity_id=str(doc.id),
        metadata={"lineage_id": lineage.id, "version_number": 1, "doc_type": doc_type, "title": title},
    )
    return doc


def create_next_version(s: Session, issued_doc_id: int, *, actor: User | None) -> Document:
    """
    Fork a new draft from the issued tip of its lineage.

    Raises ``NotIssued`` when the source was never issued and
    ``ChainNotAtTip`` when a newer version already exists.
    """
    lineage_id = get_document(s, issued_doc_id).lineage_id
    with lineage_transaction(s, lineage_id) as lineage:
        src = get_document(s, issued_doc_id)
        s.refresh(src)
        if src.status == DocumentStatus.SUPERSEDED.value:
            raise ChainNotAtTip(
                f"Version {src.version_number} has been superseded; revise the latest issued version.",
                document_id=src.id,
                tip_document_id=lineage.tip_document_id,
            )
        if src.status != DocumentStatus.ISSUED.value:
            raise NotIssued(
                f"Only issued versions can be revised (version {src.version_number} is {src.status}).",
                document_id=src.id,
                status=src.status,
            )
        open_tip = s.execute(
            select(Document.id).where(Document.lineage_id == lineage.id, Document.status.in_(sorted(OPEN_STATUSES)))
        ).first()
        if open_tip is not None or lineage.latest_version_number != src.version_number:
            raise ChainNotAtTip(
                "A newer version already exists in this lineage.",
                document_id=src.id,
                tip_document_id=lineage.tip_document_id,
            )

        new_doc = Document(
            lineage_id=lineage.id,
            version_number=src.version_number + 1,
            title=src.title,
            doc_type=src.doc_type,
            status=DocumentStatus.DRAFT.value,
            approval_required=src.approval_required,
            content_json=src.content_json,
            created_by_user_id=actor.id if actor else None,
        )
        s.add(new_doc)
        s.flush()
        carried = carry_forward(s, src, new_doc)
        lineage.tip_document_id = new_doc.id
        lineage.latest_version_number = new_doc.version_number

    logger.info(
        "Created version %s of lineage=%s from document_id=%s (%d action(s) carried)",
        new_doc.version_number,
        lineage_id,
        issued_doc_id,
        len(carried),
    )
    emit_event(
        s,
        actor=actor,
        action="document.create_next_version",
        entity_type="Document",
        entity_id=str(new_doc.id),
        metadata={
            "lineage_id": lineage_id,
            "version_number": new_doc.version_number,
            "source_document_id": issued_doc_id,
            "carried_actions": len(carried),
        },
    )
    return new_doc


def discard_draft(s: Session, doc_id: int, *, actor: User | None) -> Document | None:
    """
    Abandon an unissued version together with its action rows.

    The chain falls back to the last issued version, which is returned. A
    lineage that was never issued is removed entirely and None is returned.
    The reference counter is left alone, so discarded numbers are never reused.
    """
    lineage_id = get_document(s, doc_id).lineage_id
    with lineage_transaction(s, lineage_id) as lineage:
        doc = get_document(s, doc_id)
        s.refresh(doc)
        if doc.immutable:
            logger.warning("Rejected discard of %s document_id=%s", doc.status, doc.id)
            raise DocumentImmutable("discard", doc.status)
        version_number = doc.version_number
        discarded_actions = s.execute(delete(Action).where(Action.document_id == doc.id)).rowcount
        s.delete(doc)
        s.flush()
        s.expire(lineage, ["documents"])

        fallback = s.get(Document, lineage.issued_document_id) if lineage.issued_document_id else None
        if fallback is None:
            s.delete(lineage)
        else:
            lineage.tip_document_id = fallback.id
            lineage.latest_version_number = fallback.version_number

    logger.info(
        "Discarded version %s of lineage=%s document_id=%s (%d action(s))",
        version_number,
        lineage_id,
        doc_id,
        discarded_actions,
    )
    emit_event(
        s,
        actor=actor,
        action="document.discard",
        entity_type="Document",
        entity_id=str(doc_id),
        metadata={
            "lineage_id": lineage_id,
            "version_number": version_number,
            "discarded_actions": discarded_actions,
            "tip_document_id": fallback.id if fallback else None,
            "lineage_removed": fallback is None,
        },
    )
    return fallback


def load_content(s: Session, doc_id: int) -> dict[str, Any]:
    return get_document(s, doc_id).content


def save_content(s: Session, doc_id: int, payload: dict[str, Any], *, actor: User | None) -> Document:
    """Replace a mutable version's content payload."""
    raw = _dump_content(payload)
    lineage_id = get_document(s, doc_id).lineage_id
    with lineage_transaction(s, lineage_id):
        doc = get_document(s, doc_id)
        s.refresh(doc)
        if doc.immutable:
            logger.warning("Rejected content edit on %s document_id=%s", doc.status, doc.id)
            raise DocumentImmutable("edit_content", doc.status)
        doc.content_json = raw
        doc.updated_at = datetime.utcnow()

    emit_event(
        s,
        actor=actor,
        action="document.content.update",
        entity_type="Document",
        entity_id=str(doc.id),
        metadata={"lineage_id": doc.lineage_id, "version_number": doc.version_number, "status": doc.status},
    )
    return doc


def version_history(s: Session, lineage_id: str) -> list[Document]:
    get_lineage(s, lineage_id)
    return list(
        s.execute(
            select(Document).where(Document.lineage_id == lineage_id).order_by(Document.version_number.desc())
        )
        .scalars()
        .all()
    )


def check_lineage_integrity(s: Session, lineage_id: str) -> list[str]:
    """
    Report chain invariant violations; an empty list means the lineage is healthy.

    Read-only: nothing is repaired here.
    """
    lineage = get_lineage(s, lineage_id)
    docs = sorted(
        s.execute(select(Document).where(Document.lineage_id == lineage_id)).scalars().all(),
        key=lambda d: d.version_number,
    )
    problems: list[str] = []
    if not docs:
        return [f"lineage {lineage_id} has no versions"]

    by_id = {d.id: d for d in docs}
    open_docs = [d for d in docs if d.status in OPEN_STATUSES]
    issued_docs = [d for d in docs if d.status == DocumentStatus.ISSUED.value]

    if len(open_docs) > 1:
        problems.append(f"multiple open versions: {', '.join(str(d.version_number) for d in open_docs)}")
    if len(issued_docs) > 1:
        problems.append(f"multiple issued versions: {', '.join(str(d.version_number) for d in issued_docs)}")

    expected = list(range(1, len(docs) + 1))
    actual = [d.version_number for d in docs]
    if actual != expected:
        problems.append(f"version numbers are not contiguous: {actual}")

    newest = docs[-1]
    if open_docs and open_docs[0].id != newest.id:
        problems.append(f"open version {open_docs[0].version_number} is not the newest version")
    if lineage.tip_document_id != newest.id:
        problems.append(f"tip pointer {lineage.tip_document_id} does not match newest document {newest.id}")
    if lineage.latest_version_number != newest.version_number:
        problems.append(
            f"latest_version_number {lineage.latest_version_number} does not match newest version {newest.version_number}"
        )
    current_issued = issued_docs[-1].id if issued_docs else None
    if lineage.issued_document_id != current_issued:
        problems.append(f"issued pointer {lineage.issued_document_id} does not match issued document {current_issued}")

    locked = set(
        s.execute(
            select(LockedArtifact.document_id).where(LockedArtifact.document_id.in_(list(by_id)))
        ).scalars()
    )
    for d in docs:
        if d.immutable and d.id not in locked:
            problems.append(f"version {d.version_number} is {d.status} but has no locked artifact")
        if d.status == DocumentStatus.SUPERSEDED.value:
            successor = by_id.get(d.superseded_by_document_id or 0)
            if successor is None:
                problems.append(f"version {d.version_number} is superseded without a successor in this lineage")
            elif successor.supersedes_document_id != d.id:
                problems.append(
                    f"supersession pointers disagree between versions {d.version_number} and {successor.version_number}"
                )
        elif d.superseded_by_document_id is not None:
            problems.append(f"version {d.version_number} has a successor pointer but is {d.status}")

    max_ref = s.execute(select(func.max(Action.reference_number)).where(Action.lineage_id == lineage_id)).scalar()
    if max_ref is not None and max_ref >= lineage.next_reference_number:
        problems.append(
            f"reference counter {lineage.next_reference_number} is not ahead of highest reference {max_ref}"
        )

    for p in problems:
        logger.error("Lineage integrity violation lineage_id=%s: %s", lineage_id, p)
    return problems
