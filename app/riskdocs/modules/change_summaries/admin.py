from __future__ import annotations

from flask import Blueprint

from app.riskdocs.db import db_session
from app.riskdocs.rbac import require_permission

from .service import change_summary_stats, get_change_summary

bp = Blueprint("change_summaries", __name__)


@bp.get("/documents/<int:doc_id>/change-summary")
@require_permission("docs.view")
def change_summary_get(doc_id: int):
    s = db_session()
    summary = get_change_summary(s, doc_id)
    if summary is None:
        # First issue of a lineage (or not yet issued): nothing to compare against.
        return {"document_id": doc_id, "change_summary": None, "stats": None}
    return {"document_id": doc_id, "change_summary": summary.to_dict(), "stats": change_summary_stats(summary)}
