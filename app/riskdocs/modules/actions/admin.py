from __future__ import annotations

from datetime import date
from typing import Any

from flask import Blueprint, abort, g, request

from app.riskdocs.db import db_session
from app.riskdocs.models import User
from app.riskdocs.modules.documents.errors import ValidationFailed
from app.riskdocs.modules.documents.versioning import get_document, get_lineage
from app.riskdocs.rbac import require_permission

from .service import (
    close_action,
    create_action,
    document_actions,
    lineage_actions,
    open_actions,
    reinstate_action,
    reopen_action,
    supersede,
    update_action_status,
)

bp = Blueprint("actions", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        abort(401)
    return u


def _payload() -> dict[str, Any]:
    if request.is_json:
        data = request.get_json(silent=True)
        if not isinstance(data, dict):
            raise ValidationFailed("Request body must be a JSON object.")
        return data
    return request.form.to_dict()


def _parse_date(raw: Any) -> date | None:
    if not raw:
        return None
    try:
        return date.fromisoformat(str(raw).strip())
    except ValueError as e:
        raise ValidationFailed(f"Invalid date: {raw!r} (expected YYYY-MM-DD).", field="target_date") from e


def _parse_id(raw: Any, field: str) -> int:
    try:
        return int(raw)
    except (TypeError, ValueError) as e:
        raise ValidationFailed(f"{field} must be an integer.", field=field) from e


@bp.get("/documents/<int:doc_id>/actions")
@require_permission("docs.view")
def list_document_actions(doc_id: int):
    s = db_session()
    get_document(s, doc_id)
    only_open = (request.args.get("open") or "").strip() in ("1", "true")
    rows = open_actions(s, doc_id) if only_open else document_actions(s, doc_id)
    return {"document_id": doc_id, "actions": [a.to_dict() for a in rows]}


@bp.post("/documents/<int:doc_id>/actions")
@require_permission("actions.edit")
def create_action_post(doc_id: int):
    s = db_session()
    data = _payload()
    action = create_action(
        s,
        doc_id,
        actor=_current_user(),
        title=str(data.get("title") or ""),
        section_key=data.get("section_key"),
        priority_band=data.get("priority_band"),
        target_date=_parse_date(data.get("target_date")),
    )
    return {"action": action.to_dict()}, 201


@bp.post("/actions/<int:action_id>/close")
@require_permission("actions.edit")
def close_action_post(action_id: int):
    s = db_session()
    data = _payload()
    action = close_action(s, action_id, actor=_current_user(), note=data.get("note"))
    return {"action": action.to_dict()}


@bp.post("/actions/<int:action_id>/reopen")
@require_permission("actions.edit")
def reopen_action_post(action_id: int):
    s = db_session()
    data = _payload()
    action = reopen_action(s, action_id, actor=_current_user(), reason=str(data.get("reason") or ""))
    return {"action": action.to_dict()}


@bp.post("/actions/<int:action_id>/supersede")
@require_permission("actions.edit")
def supersede_action_post(action_id: int):
    s = db_session()
    data = _payload()
    replacement_id = _parse_id(data.get("replacement_action_id"), "replacement_action_id")
    action = supersede(s, action_id, replacement_id, actor=_current_user())
    return {"action": action.to_dict()}


@bp.post("/actions/<int:action_id>/status")
@require_permission("actions.edit")
def action_status_post(action_id: int):
    s = db_session()
    data = _payload()
    action = update_action_status(
        s,
        action_id,
        str(data.get("status") or ""),
        actor=_current_user(),
        note=data.get("note"),
    )
    return {"action": action.to_dict()}


@bp.post("/actions/<int:action_id>/reinstate")
@require_permission("actions.edit")
def reinstate_action_post(action_id: int):
    s = db_session()
    data = _payload()
    target_doc_id = _parse_id(data.get("document_id"), "document_id")
    action = reinstate_action(
        s,
        action_id,
        target_doc_id,
        actor=_current_user(),
        reason=str(data.get("reason") or ""),
    )
    return {"action": action.to_dict()}, 201


@bp.get("/lineages/<lineage_id>/actions")
@require_permission("docs.view")
def list_lineage_actions(lineage_id: str):
    s = db_session()
    get_lineage(s, lineage_id)
    return {"lineage_id": lineage_id, "actions": [a.to_dict() for a in lineage_actions(s, lineage_id)]}
