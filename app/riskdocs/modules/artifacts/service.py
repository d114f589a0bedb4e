"""
Immutable artifact locker.

``lock()`` binds rendered bytes to an issued version: sha256 digest,
content-addressed storage key, one ``LockedArtifact`` row per document.
``fetch()`` returns exactly those bytes or raises ``MissingLockedArtifact``;
there is no fallback to re-rendering from current content.
"""
from __future__ import annotations

import hashlib
import io
import logging
from typing import TYPE_CHECKING

from flask import current_app, has_app_context
from sqlalchemy import select
from sqlalchemy.orm import Session
from werkzeug.utils import secure_filename

from app.riskdocs.audit import emit_event
from app.riskdocs.modules.documents.errors import (
    DocumentNotFound,
    InvalidTransition,
    MissingLockedArtifact,
    NotIssued,
    ValidationFailed,
)
from app.riskdocs.modules.documents.models import IMMUTABLE_STATUSES, Document, DocumentStatus
from app.riskdocs.storage import Storage, StorageError, storage_from_config

from .models import LockedArtifact

if TYPE_CHECKING:
    from app.riskdocs.models import User

logger = logging.getLogger(__name__)


def default_storage() -> Storage:
    if has_app_context():
        return storage_from_config(current_app.config)
    return storage_from_config({})


def file_digest_and_size(file_bytes: bytes) -> tuple[str, int]:
    h = hashlib.sha256()
    h.update(file_bytes)
    return (h.hexdigest(), len(file_bytes))


def sanitize_artifact_filename(filename: str) -> str:
    fn = secure_filename(filename or "")
    return fn or "document.pdf"


def build_artifact_storage_key(document: Document, sha256: str, filename: str) -> str:
    ext = filename.rsplit(".", 1)[-1].lower() if "." in filename else "bin"
    return f"artifacts/{document.lineage_id}/v{document.version_number}/{sha256}.{ext}"


def get_locked_artifact(s: Session, doc_id: int) -> LockedArtifact | None:
    return s.execute(select(LockedArtifact).where(LockedArtifact.document_id == doc_id)).scalar_one_or_none()


def lock(
    s: Session,
    document: Document,
    rendered_bytes: bytes,
    *,
    actor: User | None,
    filename: str,
    content_type: str = "application/pdf",
    storage: Storage | None = None,
) -> LockedArtifact:
    """
    Store ``rendered_bytes`` and bind them to ``document``.

    The document must already be ``issued`` in the caller's transaction and
    must not have an artifact yet. The row joins the caller's transaction;
    the blob is written first and is never overwritten.
    """
    if document.status != DocumentStatus.ISSUED.value:
        raise InvalidTransition("lock_artifact", document.status, "only issued versions can be locked")
    if not rendered_bytes:
        raise ValidationFailed("Rendered artifact is empty.", field="file")
    if get_locked_artifact(s, document.id) is not None:
        raise InvalidTransition("lock_artifact", document.status, "an artifact is already locked for this version")

    storage = storage or default_storage()
    safe_name = sanitize_artifact_filename(filename)
    sha256, size = file_digest_and_size(rendered_bytes)
    key = build_artifact_storage_key(document, sha256, safe_name)
    storage.put_if_absent(key, rendered_bytes, content_type=content_type)

    artifact = LockedArtifact(
        document_id=document.id,
        sha256=sha256,
        storage_key=key,
        size_bytes=size,
        content_type=content_type or "application/octet-stream",
        filename=safe_name,
        generated_by_user_id=actor.id if actor else None,
    )
    s.add(artifact)
    s.flush()
    logger.info("Locked artifact document_id=%s sha256=%s key=%s", document.id, sha256, key)
    return artifact


def _integrity_violation(s: Session, doc: Document, reason: str, actor: User | None) -> MissingLockedArtifact:
    logger.error("Locked artifact integrity violation document_id=%s: %s", doc.id, reason)
    emit_event(
        s,
        actor=actor,
        action="artifact.integrity_violation",
        entity_type="Document",
        entity_id=str(doc.id),
        reason=reason,
        metadata={"lineage_id": doc.lineage_id, "version_number": doc.version_number, "status": doc.status},
    )
    return MissingLockedArtifact(doc.id, reason)


def artifact_record(s: Session, doc_id: int, *, actor: User | None = None) -> LockedArtifact | None:
    """Locked artifact row for a version; None while it is still mutable."""
    doc = s.get(Document, doc_id)
    if doc is None:
        raise DocumentNotFound("Document", doc_id)
    artifact = get_locked_artifact(s, doc_id)
    if artifact is None and doc.status in IMMUTABLE_STATUSES:
        raise _integrity_violation(s, doc, "artifact record missing", actor)
    return artifact


def fetch(
    s: Session,
    doc_id: int,
    *,
    actor: User | None = None,
    storage: Storage | None = None,
) -> tuple[LockedArtifact, bytes]:
    doc = s.get(Document, doc_id)
    if doc is None:
        raise DocumentNotFound("Document", doc_id)
    if doc.status not in IMMUTABLE_STATUSES:
        raise NotIssued(
            f"Document {doc_id} has not been issued; there is no locked artifact.",
            document_id=doc_id,
            status=doc.status,
        )

    artifact = get_locked_artifact(s, doc_id)
    if artifact is None:
        raise _integrity_violation(s, doc, "artifact record missing", actor)

    storage = storage or default_storage()
    try:
        data = storage.get_bytes(artifact.storage_key)
    except StorageError as e:
        raise _integrity_violation(s, doc, f"artifact blob missing: {e}", actor) from e

    sha256, _size = file_digest_and_size(data)
    if sha256 != artifact.sha256:
        raise _integrity_violation(s, doc, "artifact checksum mismatch", actor)
    return artifact, data


def to_download_fileobj(file_bytes: bytes) -> io.BytesIO:
    bio = io.BytesIO(file_bytes)
    bio.seek(0)
    return bio
