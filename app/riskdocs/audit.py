from __future__ import annotations

import json
import logging
from typing import Any

from flask import g, has_request_context, request
from sqlalchemy.orm import Session

from app.riskdocs.models import AuditEvent, User

logger = logging.getLogger(__name__)


def _request_context() -> tuple[str | None, str | None]:
    if not has_request_context():
        return None, None
    return getattr(g, "request_id", None), request.remote_addr


def _build_event(
    *,
    actor: User | None,
    action: str,
    entity_type: str | None,
    entity_id: str | None,
    reason: str | None,
    metadata: dict[str, Any] | None,
    request_id: str | None,
) -> AuditEvent:
    rid, client_ip = _request_context()
    return AuditEvent(
        request_id=request_id or rid,
        actor_user_id=actor.id if actor else None,
        actor_user_email=actor.email if actor else None,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        reason=reason,
        metadata_json=json.dumps(metadata, sort_keys=True, default=str) if metadata else None,
        client_ip=client_ip,
    )


def record_event(
    s: Session,
    *,
    actor: User | None,
    action: str,
    entity_type: str | None = None,
    entity_id: str | None = None,
    reason: str | None = None,
    metadata: dict[str, Any] | None = None,
    request_id: str | None = None,
) -> AuditEvent:
    """
    Append-only audit event helper. The event joins the caller's transaction.
    """
    ev = _build_event(
        actor=actor,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        reason=reason,
        metadata=metadata,
        request_id=request_id,
    )
    s.add(ev)
    return ev


def emit_event(
    s: Session,
    *,
    actor: User | None,
    action: str,
    entity_type: str | None = None,
    entity_id: str | None = None,
    reason: str | None = None,
    metadata: dict[str, Any] | None = None,
    request_id: str | None = None,
) -> AuditEvent | None:
    """
    Fire-and-forget audit event for lifecycle transitions.

    Call only after the transition has committed. The event is written through
    its own short-lived session on the same engine, so a delivery failure is
    logged and never rolls back (or blocks) the transition that produced it.
    """
    logger.info(
        "audit action=%s entity=%s:%s actor=%s",
        action,
        entity_type,
        entity_id,
        actor.id if actor else None,
    )
    try:
        ev = _build_event(
            actor=actor,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            reason=reason,
            metadata=metadata,
            request_id=request_id,
        )
        with Session(bind=s.get_bind(), expire_on_commit=False) as sink:
            sink.add(ev)
            sink.commit()
        return ev
    except Exception:
        logger.warning("Audit delivery failed (action=%s entity_id=%s)", action, entity_id, exc_info=True)
        return None
