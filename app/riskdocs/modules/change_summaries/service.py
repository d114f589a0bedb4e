"""
Change-summary diff engine.

Actions are matched across versions by their lineage-scoped reference
number, which carry-forward and reinstatement preserve. Buckets:

- new: raised in the new version (``first_raised_in_version`` == new version)
- closed: open in the previous version, absent or no longer open in the new one
- reopened: open in the new version, raised earlier, not open in the previous one
- outstanding: every other action still open in the new version
"""
from __future__ import annotations

import hashlib
import json
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.riskdocs.modules.actions.models import OPEN_ITEM_STATUSES, format_reference
from app.riskdocs.modules.actions.service import document_actions
from app.riskdocs.modules.documents.errors import DocumentNotFound, ValidationFailed
from app.riskdocs.modules.documents.models import Document

from .models import ChangeSummary

if TYPE_CHECKING:
    from app.riskdocs.models import User


BUCKETS = ("new", "closed", "reopened", "outstanding")


@dataclass(frozen=True)
class ChangeDelta:
    new: list[dict[str, Any]] = field(default_factory=list)
    closed: list[dict[str, Any]] = field(default_factory=list)
    reopened: list[dict[str, Any]] = field(default_factory=list)
    outstanding: list[dict[str, Any]] = field(default_factory=list)

    @property
    def material(self) -> bool:
        return len(self.new) + len(self.closed) + len(self.reopened) > 0

    def counts(self) -> dict[str, int]:
        return {b: len(getattr(self, b)) for b in BUCKETS}


def _get(item: Any, name: str) -> Any:
    if isinstance(item, Mapping):
        return item.get(name)
    return getattr(item, name, None)


def _key(item: Any) -> Any:
    ref = _get(item, "reference_number")
    if ref is not None:
        return ("ref", ref)
    return ("id", _get(item, "origin_action_id") or _get(item, "id"))


def _is_open(item: Any) -> bool:
    return (_get(item, "status") or "") in OPEN_ITEM_STATUSES


def _entry(item: Any) -> dict[str, Any]:
    target = _get(item, "target_date")
    return {
        "action_id": _get(item, "id"),
        "reference": format_reference(_get(item, "reference_number")),
        "reference_number": _get(item, "reference_number"),
        "title": _get(item, "title"),
        "status": _get(item, "status"),
        "priority_band": _get(item, "priority_band"),
        "section_key": _get(item, "section_key"),
        "first_raised_in_version": _get(item, "first_raised_in_version"),
        "target_date": target.isoformat() if hasattr(target, "isoformat") else target,
    }


def _sort_key(entry: dict[str, Any]) -> tuple[int, int]:
    ref = entry.get("reference_number")
    return (ref if ref is not None else 1 << 30, entry.get("action_id") or 0)


def compute_delta(new_items: Sequence[Any], previous_items: Sequence[Any], new_version: int) -> ChangeDelta:
    """Pure bucket computation over two versions' action rows."""
    previous_by_key = {_key(i): i for i in previous_items}
    new_by_key = {_key(i): i for i in new_items}

    new_bucket: list[dict[str, Any]] = []
    reopened: list[dict[str, Any]] = []
    outstanding: list[dict[str, Any]] = []
    for key, item in new_by_key.items():
        if _get(item, "first_raised_in_version") == new_version:
            new_bucket.append(_entry(item))
            continue
        if not _is_open(item):
            continue
        prev = previous_by_key.get(key)
        if prev is None or not _is_open(prev):
            reopened.append(_entry(item))
        else:
            outstanding.append(_entry(item))

    closed: list[dict[str, Any]] = []
    for key, prev in previous_by_key.items():
        if not _is_open(prev):
            continue
        cur = new_by_key.get(key)
        if cur is None or not _is_open(cur):
            entry = _entry(prev)
            if cur is not None:
                entry["status"] = _get(cur, "status")
            closed.append(entry)

    return ChangeDelta(
        new=sorted(new_bucket, key=_sort_key),
        closed=sorted(closed, key=_sort_key),
        reopened=sorted(reopened, key=_sort_key),
        outstanding=sorted(outstanding, key=_sort_key),
    )


def _line(entry: dict[str, Any]) -> str:
    band = f"[{entry['priority_band']}] " if entry.get("priority_band") else ""
    ref = f"{entry['reference']}: " if entry.get("reference") else ""
    return f"- {ref}{band}{entry.get('title') or ''}".rstrip()


def render_summary_text(delta: ChangeDelta) -> str:
    """Markdown rendering stored alongside the structured buckets."""
    lines = ["# Changes Since Last Issue", ""]
    for bucket, heading in (("new", "New Actions"), ("closed", "Closed Actions"), ("reopened", "Reopened Actions")):
        entries = getattr(delta, bucket)
        if not entries:
            continue
        lines.append(f"## {heading} ({len(entries)})")
        lines.extend(_line(e) for e in entries)
        lines.append("")
    if delta.outstanding:
        lines.append(f"**Outstanding Actions:** {len(delta.outstanding)}")
        lines.append("")
    if not delta.material:
        lines.append("_No material changes since last issue._")
    return "\n".join(lines).rstrip() + "\n"


def canonical_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


def _payload_digest(delta: ChangeDelta, text: str) -> str:
    payload = {b: getattr(delta, b) for b in BUCKETS}
    payload["material"] = delta.material
    payload["summary_text"] = text
    return hashlib.sha256(canonical_json(payload).encode("utf-8")).hexdigest()


def find_summary(s: Session, new_doc_id: int, previous_doc_id: int) -> ChangeSummary | None:
    return s.execute(
        select(ChangeSummary).where(
            ChangeSummary.document_id == new_doc_id,
            ChangeSummary.previous_document_id == previous_doc_id,
        )
    ).scalar_one_or_none()


def diff(s: Session, new_doc: Document, previous_doc: Document, *, actor: User | None = None) -> ChangeSummary:
    """
    Return the change summary for ``(new_doc, previous_doc)``, creating it on first call.

    An existing row is returned as stored, never recomputed. A new row joins
    the caller's transaction (``issue()`` runs this inside the lineage lock).
    """
    existing = find_summary(s, new_doc.id, previous_doc.id)
    if existing is not None:
        return existing
    if new_doc.lineage_id != previous_doc.lineage_id:
        raise ValidationFailed("Change summaries compare versions of the same lineage.")
    if previous_doc.version_number >= new_doc.version_number:
        raise ValidationFailed(
            "Previous version must be older than the new version.",
            version_number=new_doc.version_number,
            previous_version_number=previous_doc.version_number,
        )

    delta = compute_delta(
        document_actions(s, new_doc.id),
        document_actions(s, previous_doc.id),
        new_doc.version_number,
    )
    text = render_summary_text(delta)
    summary = ChangeSummary(
        lineage_id=new_doc.lineage_id,
        document_id=new_doc.id,
        previous_document_id=previous_doc.id,
        version_number=new_doc.version_number,
        previous_version_number=previous_doc.version_number,
        new_count=len(delta.new),
        closed_count=len(delta.closed),
        reopened_count=len(delta.reopened),
        outstanding_count=len(delta.outstanding),
        new_items_json=canonical_json(delta.new),
        closed_items_json=canonical_json(delta.closed),
        reopened_items_json=canonical_json(delta.reopened),
        outstanding_items_json=canonical_json(delta.outstanding),
        has_material_changes=delta.material,
        summary_text=text,
        content_sha256=_payload_digest(delta, text),
        generated_by_user_id=actor.id if actor else None,
    )
    s.add(summary)
    s.flush()
    return summary


def get_change_summary(s: Session, doc_id: int) -> ChangeSummary | None:
    """Summary for which ``doc_id`` is the new side; None for a first issue."""
    if s.get(Document, doc_id) is None:
        raise DocumentNotFound("Document", doc_id)
    return s.execute(select(ChangeSummary).where(ChangeSummary.document_id == doc_id)).scalar_one_or_none()


def change_summary_stats(summary: ChangeSummary) -> dict[str, Any]:
    return {
        "total_changes": summary.new_count + summary.closed_count + summary.reopened_count,
        "new_actions": summary.new_count,
        "closed_actions": summary.closed_count,
        "reopened_actions": summary.reopened_count,
        "outstanding_actions": summary.outstanding_count,
        "has_material_changes": summary.has_material_changes,
        "improvement": summary.closed_count > summary.new_count,
        "deterioration": summary.new_count > summary.closed_count,
    }
