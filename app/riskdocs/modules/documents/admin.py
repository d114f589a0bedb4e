"""
Document lifecycle JSON API.

Lifecycle errors propagate to the app-level ``LifecycleError`` handler,
which serialises them with their HTTP status.
"""
from __future__ import annotations

from typing import Any

from flask import Blueprint, abort, current_app, g, request
from sqlalchemy import select

from app.riskdocs.db import db_session
from app.riskdocs.models import AuditEvent, User
from app.riskdocs.rbac import permitted_actions, require_permission
from app.riskdocs.storage import storage_from_config

from .errors import ValidationFailed
from .lifecycle import (
    allowed_actions,
    decide,
    issue,
    readiness,
    recall,
    request_approval,
    transition_table,
)
from .models import Document
from .requirements import requirement_description
from .versioning import (
    check_lineage_integrity,
    create_document,
    create_next_version,
    discard_draft,
    get_document,
    load_content,
    save_content,
    version_history,
)

bp = Blueprint("documents", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        abort(401)
    return u


def _payload() -> dict[str, Any]:
    if request.is_json:
        data = request.get_json(silent=True)
        if data is None:
            raise ValidationFailed("Request body must be valid JSON.")
        if not isinstance(data, dict):
            raise ValidationFailed("Request body must be a JSON object.")
        return data
    return request.form.to_dict()


def _as_bool(value: Any) -> bool | None:
    if isinstance(value, bool):
        return value
    if value is None:
        return None
    raw = str(value).strip().lower()
    if raw in ("1", "true", "yes", "on", "approve", "approved"):
        return True
    if raw in ("0", "false", "no", "off", "reject", "rejected"):
        return False
    return None


def _document_view(doc: Document) -> dict[str, Any]:
    out = doc.to_dict()
    out["allowed_actions"] = allowed_actions(doc)
    # What the caller may actually do, for UI button state.
    out["permitted_actions"] = permitted_actions(getattr(g, "current_user", None), out["allowed_actions"])
    return out


@bp.get("/documents")
@require_permission("docs.view")
def list_documents():
    s = db_session()
    stmt = select(Document).order_by(Document.updated_at.desc(), Document.id.desc())
    status = (request.args.get("status") or "").strip()
    if status:
        stmt = stmt.where(Document.status == status)
    lineage_id = (request.args.get("lineage_id") or "").strip()
    if lineage_id:
        stmt = stmt.where(Document.lineage_id == lineage_id)
    docs = s.execute(stmt).scalars().all()
    return {"documents": [d.to_dict() for d in docs]}


@bp.post("/documents")
@require_permission("docs.create")
def create_document_post():
    s = db_session()
    data = _payload()
    content = data.get("content")
    if content is not None and not isinstance(content, dict):
        raise ValidationFailed("content must be a JSON object.", field="content")
    approval_required = _as_bool(data.get("approval_required"))
    doc = create_document(
        s,
        title=str(data.get("title") or ""),
        doc_type=str(data.get("doc_type") or ""),
        actor=_current_user(),
        content=content,
        approval_required=approval_required,
    )
    return {"document": _document_view(doc)}, 201


@bp.get("/documents/transitions")
@require_permission("docs.view")
def transitions():
    return {"transitions": transition_table()}


@bp.get("/documents/<int:doc_id>")
@require_permission("docs.view")
def document_detail(doc_id: int):
    s = db_session()
    return {"document": _document_view(get_document(s, doc_id))}


@bp.get("/documents/<int:doc_id>/content")
@require_permission("docs.view")
def content_get(doc_id: int):
    s = db_session()
    return {"document_id": doc_id, "content": load_content(s, doc_id)}


@bp.put("/documents/<int:doc_id>/content")
@require_permission("docs.edit")
def content_put(doc_id: int):
    s = db_session()
    data = _payload()
    if "content" in data:
        payload = data["content"]
    else:
        payload = {k: v for k, v in data.items() if k != "csrf_token"}
    doc = save_content(s, doc_id, payload, actor=_current_user())
    return {"document": _document_view(doc)}


@bp.get("/documents/<int:doc_id>/readiness")
@require_permission("docs.view")
def readiness_get(doc_id: int):
    s = db_session()
    doc = get_document(s, doc_id)
    ctx = doc.content.get("context")
    return {
        "document_id": doc_id,
        "readiness": readiness(s, doc_id).to_dict(),
        "requirements": requirement_description(doc.doc_type, ctx if isinstance(ctx, dict) else {}),
    }


@bp.post("/documents/<int:doc_id>/request-approval")
@require_permission("docs.edit")
def request_approval_post(doc_id: int):
    s = db_session()
    data = _payload()
    doc = request_approval(s, doc_id, actor=_current_user(), notes=data.get("notes"))
    return {"document": _document_view(doc)}


@bp.post("/documents/<int:doc_id>/decide")
@require_permission("docs.approve")
def decide_post(doc_id: int):
    s = db_session()
    data = _payload()
    approve = _as_bool(data.get("approve", data.get("decision")))
    if approve is None:
        raise ValidationFailed("approve (true/false) is required.", field="approve")
    doc = decide(s, doc_id, actor=_current_user(), approve=approve, reason=data.get("reason"))
    return {"document": _document_view(doc)}


@bp.post("/documents/<int:doc_id>/recall")
@require_permission("docs.edit")
def recall_post(doc_id: int):
    s = db_session()
    data = _payload()
    doc = recall(s, doc_id, actor=_current_user(), reason=data.get("reason"))
    return {"document": _document_view(doc)}


@bp.post("/documents/<int:doc_id>/issue")
@require_permission("docs.issue")
def issue_post(doc_id: int):
    s = db_session()
    f = request.files.get("file")
    if not f or not f.filename:
        raise ValidationFailed("A rendered artifact file is required.", field="file")
    outcome = issue(
        s,
        doc_id,
        actor=_current_user(),
        rendered_bytes=f.read(),
        filename=f.filename,
        content_type=f.mimetype or "application/pdf",
        storage=storage_from_config(current_app.config),
    )
    return {
        "document": _document_view(outcome.document),
        "artifact": outcome.artifact.to_dict(),
        "change_summary": outcome.change_summary.to_dict() if outcome.change_summary else None,
        "superseded_document_id": outcome.superseded.id if outcome.superseded else None,
    }


@bp.post("/documents/<int:doc_id>/versions")
@require_permission("docs.revise")
def create_version_post(doc_id: int):
    s = db_session()
    doc = create_next_version(s, doc_id, actor=_current_user())
    return {"document": _document_view(doc)}, 201


@bp.delete("/documents/<int:doc_id>")
@require_permission("docs.edit")
def discard_delete(doc_id: int):
    s = db_session()
    tip = discard_draft(s, doc_id, actor=_current_user())
    return {"discarded_document_id": doc_id, "tip": _document_view(tip) if tip else None}


@bp.get("/documents/<int:doc_id>/history")
@require_permission("docs.view")
def history_get(doc_id: int):
    s = db_session()
    doc = get_document(s, doc_id)
    return {
        "lineage_id": doc.lineage_id,
        "versions": [d.to_dict() for d in version_history(s, doc.lineage_id)],
    }


@bp.get("/documents/<int:doc_id>/audit")
@require_permission("admin.view")
def audit_trail(doc_id: int):
    s = db_session()
    get_document(s, doc_id)
    events = (
        s.execute(
            select(AuditEvent)
            .where(AuditEvent.entity_type == "Document", AuditEvent.entity_id == str(doc_id))
            .order_by(AuditEvent.id)
        )
        .scalars()
        .all()
    )
    return {"document_id": doc_id, "events": [e.to_dict() for e in events]}


@bp.get("/lineages/<lineage_id>/integrity")
@require_permission("admin.view")
def lineage_integrity(lineage_id: str):
    s = db_session()
    problems = check_lineage_integrity(s, lineage_id)
    return {"lineage_id": lineage_id, "ok": not problems, "problems": problems}
