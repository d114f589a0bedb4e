"""
Action (finding) service layer.

Reference numbers are allocated from ``Lineage.next_reference_number`` and
only while the lineage is locked, so they are strictly increasing within a
lineage and never reused. Every mutation refuses rows that belong to an
issued or superseded version.
"""
from __future__ import annotations

import logging
from datetime import date, datetime
from typing import TYPE_CHECKING

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.riskdocs.audit import emit_event
from app.riskdocs.modules.documents.errors import (
    AlreadySuperseded,
    DocumentImmutable,
    DocumentNotFound,
    InvalidTransition,
    ValidationFailed,
)
from app.riskdocs.modules.documents.locking import lineage_transaction
from app.riskdocs.modules.documents.models import Document, Lineage

from .models import (
    CLOSED_ITEM_STATUSES,
    OPEN_ITEM_STATUSES,
    PRIORITY_BANDS,
    VALID_ACTION_STATUSES,
    Action,
    ActionStatus,
    format_reference,
)

if TYPE_CHECKING:
    from app.riskdocs.models import User

logger = logging.getLogger(__name__)

__all__ = [
    "ActionStatus",
    "OPEN_ITEM_STATUSES",
    "format_reference",
    "create_action",
    "assign_reference_numbers",
    "carry_forward",
    "supersede",
    "close_action",
    "reopen_action",
    "update_action_status",
    "reinstate_action",
    "lineage_actions",
    "document_actions",
    "open_actions",
]


def _get_action(s: Session, action_id: int) -> Action:
    action = s.get(Action, action_id)
    if action is None:
        raise DocumentNotFound("Action", action_id)
    return action


def _get_document(s: Session, doc_id: int) -> Document:
    doc = s.get(Document, doc_id)
    if doc is None:
        raise DocumentNotFound("Document", doc_id)
    return doc


def _mutable_document(s: Session, doc_id: int, operation: str) -> Document:
    doc = _get_document(s, doc_id)
    s.refresh(doc)
    if doc.immutable:
        raise DocumentImmutable(operation, doc.status)
    return doc


def _allocate(lineage: Lineage) -> int:
    n = lineage.next_reference_number
    lineage.next_reference_number = n + 1
    return n


def _emit(s: Session, actor: User | None, verb: str, action: Action, *, reason: str | None = None, **meta) -> None:
    emit_event(
        s,
        actor=actor,
        action=f"action.{verb}",
        entity_type="Action",
        entity_id=str(action.id),
        reason=reason,
        metadata={
            "document_id": action.document_id,
            "lineage_id": action.lineage_id,
            "reference": action.reference,
            "status": action.status,
            **meta,
        },
    )


def create_action(
    s: Session,
    doc_id: int,
    *,
    actor: User | None,
    title: str,
    section_key: str | None = None,
    priority_band: str | None = None,
    target_date: date | None = None,
) -> Action:
    """Raise a new action in a mutable version; it gets the next reference number immediately."""
    title = (title or "").strip()
    if not title:
        raise ValidationFailed("Action title is required.", field="title")
    band = (priority_band or "").strip().upper() or None
    if band is not None and band not in PRIORITY_BANDS:
        raise ValidationFailed(f"Invalid priority band: {priority_band}", field="priority_band")

    lineage_id = _get_document(s, doc_id).lineage_id
    with lineage_transaction(s, lineage_id) as lineage:
        doc = _mutable_document(s, doc_id, "create_action")
        action = Action(
            lineage_id=lineage.id,
            document_id=doc.id,
            reference_number=_allocate(lineage),
            first_raised_in_version=doc.version_number,
            status=ActionStatus.OPEN.value,
            title=title,
            section_key=(section_key or "").strip() or None,
            priority_band=band,
            target_date=target_date,
            created_by_user_id=actor.id if actor else None,
        )
        s.add(action)
        s.flush()

    _emit(s, actor, "create", action, title=action.title)
    return action


def assign_reference_numbers(s: Session, lineage: Lineage) -> list[Action]:
    """
    Number every action in the lineage that lacks a reference, in creation order.

    Must run inside ``lineage_transaction`` for ``lineage``; existing numbers
    are never changed.
    """
    rows = (
        s.execute(
            select(Action)
            .where(Action.lineage_id == lineage.id, Action.reference_number.is_(None))
            .order_by(Action.created_at.asc(), Action.id.asc())
        )
        .scalars()
        .all()
    )
    for a in rows:
        a.reference_number = _allocate(lineage)
        a.updated_at = datetime.utcnow()
    if rows:
        s.flush()
        logger.info("Assigned %d reference number(s) lineage_id=%s", len(rows), lineage.id)
    return list(rows)


def carry_forward(s: Session, source_doc: Document, target_doc: Document) -> list[Action]:
    """
    Clone the source version's open/in-progress/deferred actions into ``target_doc``.

    Status, reference number and ``first_raised_in_version`` are preserved.
    Closed, not-applicable and superseded actions stay behind on their own
    version. Must run inside the lineage transaction.
    """
    if source_doc.lineage_id != target_doc.lineage_id:
        raise ValidationFailed("Cannot carry actions across lineages.")
    lineage = s.get(Lineage, source_doc.lineage_id)
    if lineage is not None:
        assign_reference_numbers(s, lineage)

    sources = (
        s.execute(
            select(Action)
            .where(Action.document_id == source_doc.id, Action.status.in_(sorted(OPEN_ITEM_STATUSES)))
            .order_by(Action.reference_number.asc(), Action.id.asc())
        )
        .scalars()
        .all()
    )
    carried: list[Action] = []
    for src in sources:
        clone = Action(
            lineage_id=src.lineage_id,
            document_id=target_doc.id,
            origin_action_id=src.chain_id,
            carried_from_document_id=source_doc.id,
            reference_number=src.reference_number,
            first_raised_in_version=src.first_raised_in_version,
            status=src.status,
            title=src.title,
            section_key=src.section_key,
            priority_band=src.priority_band,
            target_date=src.target_date,
            created_by_user_id=src.created_by_user_id,
        )
        s.add(clone)
        carried.append(clone)
    s.flush()
    logger.info(
        "Carried forward %d action(s) from document %s to %s",
        len(carried),
        source_doc.id,
        target_doc.id,
    )
    return carried


def supersede(s: Session, action_id: int, replacement_action_id: int, *, actor: User | None) -> Action:
    """
    Mark an action superseded by ``replacement_action_id``.

    Repeating the call with the same replacement is a no-op; a different
    replacement raises ``AlreadySuperseded``.
    """
    if action_id == replacement_action_id:
        raise ValidationFailed("An action cannot supersede itself.")
    lineage_id = _get_action(s, action_id).lineage_id
    changed = False
    with lineage_transaction(s, lineage_id):
        action = _get_action(s, action_id)
        s.refresh(action)
        if action.superseded_by_action_id == replacement_action_id:
            return action
        if action.superseded_by_action_id is not None or action.status == ActionStatus.SUPERSEDED.value:
            raise AlreadySuperseded(
                f"Action {action.reference or action.id} is already superseded by {action.superseded_by_action_id}",
                action_id=action.id,
                superseded_by_action_id=action.superseded_by_action_id,
            )
        _mutable_document(s, action.document_id, "supersede_action")
        replacement = _get_action(s, replacement_action_id)
        if replacement.lineage_id != action.lineage_id:
            raise ValidationFailed("Replacement action must belong to the same lineage.")
        action.status = ActionStatus.SUPERSEDED.value
        action.superseded_by_action_id = replacement.id
        action.superseded_at = datetime.utcnow()
        action.updated_at = datetime.utcnow()
        changed = True

    if changed:
        _emit(s, actor, "supersede", action, replacement_action_id=replacement_action_id)
    return action


def close_action(s: Session, action_id: int, *, actor: User | None, note: str | None = None) -> Action:
    """Close an action. Closing an already-closed action returns it unchanged."""
    lineage_id = _get_action(s, action_id).lineage_id
    with lineage_transaction(s, lineage_id):
        action = _get_action(s, action_id)
        s.refresh(action)
        if action.status == ActionStatus.CLOSED.value:
            return action
        _mutable_document(s, action.document_id, "close_action")
        if action.status == ActionStatus.SUPERSEDED.value:
            raise InvalidTransition("close_action", action.status, "superseded actions cannot be closed")
        now = datetime.utcnow()
        action.status = ActionStatus.CLOSED.value
        action.closed_at = now
        action.closed_by_user_id = actor.id if actor else None
        action.closure_note = (note or "").strip() or None
        action.updated_at = now

    _emit(s, actor, "close", action, reason=action.closure_note)
    return action


def reopen_action(s: Session, action_id: int, *, actor: User | None, reason: str) -> Action:
    reason = (reason or "").strip()
    if not reason:
        raise ValidationFailed("A reason is required to reopen an action.", field="reason")
    lineage_id = _get_action(s, action_id).lineage_id
    with lineage_transaction(s, lineage_id):
        action = _get_action(s, action_id)
        s.refresh(action)
        _mutable_document(s, action.document_id, "reopen_action")
        if action.status not in (ActionStatus.CLOSED.value, ActionStatus.NOT_APPLICABLE.value):
            raise InvalidTransition("reopen_action", action.status, "only closed actions can be reopened")
        now = datetime.utcnow()
        action.status = ActionStatus.OPEN.value
        action.reopened_at = now
        action.reopened_by_user_id = actor.id if actor else None
        action.reopen_note = reason
        action.closed_at = None
        action.closed_by_user_id = None
        action.updated_at = now

    _emit(s, actor, "reopen", action, reason=reason)
    return action


def update_action_status(
    s: Session,
    action_id: int,
    status: str,
    *,
    actor: User | None,
    note: str | None = None,
) -> Action:
    """
    Move an action between working statuses (open, in_progress, deferred,
    not_applicable, closed). Supersession has its own operation.
    """
    status = (status or "").strip().lower()
    if status not in VALID_ACTION_STATUSES:
        raise ValidationFailed(f"Invalid action status: {status!r}", field="status")
    if status == ActionStatus.SUPERSEDED.value:
        raise ValidationFailed("Use supersede to replace an action.", field="status")
    if status == ActionStatus.CLOSED.value:
        return close_action(s, action_id, actor=actor, note=note)

    lineage_id = _get_action(s, action_id).lineage_id
    with lineage_transaction(s, lineage_id):
        action = _get_action(s, action_id)
        s.refresh(action)
        _mutable_document(s, action.document_id, "update_action_status")
        if action.status == ActionStatus.SUPERSEDED.value:
            raise InvalidTransition("update_action_status", action.status)
        previous = action.status
        if previous == status:
            return action
        action.status = status
        if previous in CLOSED_ITEM_STATUSES and status in OPEN_ITEM_STATUSES:
            action.reopened_at = datetime.utcnow()
            action.reopened_by_user_id = actor.id if actor else None
            action.reopen_note = (note or "").strip() or None
        action.updated_at = datetime.utcnow()

    _emit(s, actor, "status", action, reason=note, previous_status=previous)
    return action


def reinstate_action(
    s: Session,
    action_id: int,
    target_doc_id: int,
    *,
    actor: User | None,
    reason: str,
) -> Action:
    """
    Bring a historical closed action back into the current draft as open.

    The reinstated row keeps its original reference number and
    ``first_raised_in_version``; it is what the change summary reports as
    "reopened".
    """
    reason = (reason or "").strip()
    if not reason:
        raise ValidationFailed("A reason is required to reinstate an action.", field="reason")
    lineage_id = _get_action(s, action_id).lineage_id
    with lineage_transaction(s, lineage_id):
        src = _get_action(s, action_id)
        s.refresh(src)
        target = _mutable_document(s, target_doc_id, "reinstate_action")
        if target.lineage_id != src.lineage_id:
            raise ValidationFailed("Target document belongs to a different lineage.")
        if src.document_id == target.id:
            raise InvalidTransition("reinstate_action", src.status, "action already belongs to this version")
        if src.status not in (ActionStatus.CLOSED.value, ActionStatus.NOT_APPLICABLE.value):
            raise InvalidTransition("reinstate_action", src.status, "only closed actions can be reinstated")
        if src.reference_number is None:
            raise ValidationFailed("Only numbered actions can be reinstated.")
        clash = s.execute(
            select(Action.id).where(
                Action.document_id == target.id,
                Action.reference_number == src.reference_number,
            )
        ).first()
        if clash is not None:
            raise ValidationFailed(
                f"{src.reference} is already present in version {target.version_number}.",
                reference=src.reference,
            )
        now = datetime.utcnow()
        action = Action(
            lineage_id=src.lineage_id,
            document_id=target.id,
            origin_action_id=src.chain_id,
            carried_from_document_id=src.document_id,
            reference_number=src.reference_number,
            first_raised_in_version=src.first_raised_in_version,
            status=ActionStatus.OPEN.value,
            title=src.title,
            section_key=src.section_key,
            priority_band=src.priority_band,
            target_date=src.target_date,
            reopened_at=now,
            reopened_by_user_id=actor.id if actor else None,
            reopen_note=reason,
            created_by_user_id=actor.id if actor else None,
        )
        s.add(action)
        s.flush()

    _emit(s, actor, "reinstate", action, reason=reason, source_action_id=action_id)
    return action


def document_actions(s: Session, doc_id: int) -> list[Action]:
    return list(
        s.execute(
            select(Action)
            .where(Action.document_id == doc_id)
            .order_by(Action.reference_number.asc(), Action.id.asc())
        )
        .scalars()
        .all()
    )


def open_actions(s: Session, doc_id: int) -> list[Action]:
    return [a for a in document_actions(s, doc_id) if a.is_open]


def lineage_actions(s: Session, lineage_id: str) -> list[Action]:
    """Every action row ever recorded in the lineage, including closed history."""
    return list(
        s.execute(
            select(Action)
            .join(Document, Document.id == Action.document_id)
            .where(Action.lineage_id == lineage_id)
            .order_by(Action.reference_number.asc(), Document.version_number.asc(), Action.id.asc())
        )
        .scalars()
        .all()
    )
