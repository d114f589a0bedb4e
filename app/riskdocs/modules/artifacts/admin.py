from __future__ import annotations

from flask import Blueprint, current_app, g, send_file

from app.riskdocs.db import db_session
from app.riskdocs.rbac import require_permission
from app.riskdocs.storage import storage_from_config

from .service import artifact_record, fetch, to_download_fileobj

bp = Blueprint("artifacts", __name__)


@bp.get("/documents/<int:doc_id>/artifact")
@require_permission("docs.download")
def artifact_download(doc_id: int):
    s = db_session()
    artifact, data = fetch(
        s,
        doc_id,
        actor=getattr(g, "current_user", None),
        storage=storage_from_config(current_app.config),
    )
    resp = send_file(
        to_download_fileobj(data),
        mimetype=artifact.content_type,
        as_attachment=True,
        download_name=artifact.filename,
        max_age=0,
    )
    resp.headers["X-Content-SHA256"] = artifact.sha256
    return resp


@bp.get("/documents/<int:doc_id>/artifact/meta")
@require_permission("docs.view")
def artifact_meta(doc_id: int):
    s = db_session()
    artifact = artifact_record(s, doc_id, actor=getattr(g, "current_user", None))
    return {"document_id": doc_id, "artifact": artifact.to_dict() if artifact else None}
