from __future__ import annotations

from datetime import date, datetime
from enum import Enum
from typing import Any

from sqlalchemy import Date, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from app.riskdocs.models import Base


class ActionStatus(str, Enum):
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    CLOSED = "closed"
    DEFERRED = "deferred"
    NOT_APPLICABLE = "not_applicable"
    SUPERSEDED = "superseded"


# Statuses that are carried into the next version and count as outstanding.
OPEN_ITEM_STATUSES = frozenset(s.value for s in (ActionStatus.OPEN, ActionStatus.IN_PROGRESS, ActionStatus.DEFERRED))
CLOSED_ITEM_STATUSES = frozenset(
    s.value for s in (ActionStatus.CLOSED, ActionStatus.NOT_APPLICABLE, ActionStatus.SUPERSEDED)
)
VALID_ACTION_STATUSES = frozenset(s.value for s in ActionStatus)

PRIORITY_BANDS = ("P1", "P2", "P3", "P4")


def format_reference(n: int | None) -> str | None:
    if n is None:
        return None
    return f"R-{n:02d}"


class Action(Base):
    """
    One finding/recommendation row, scoped to a single document version.

    Carry-forward clones the row into the next version; the clone keeps the
    lineage-scoped ``reference_number`` and ``first_raised_in_version`` and
    points back through ``origin_action_id``.
    """

    __tablename__ = "actions"
    __table_args__ = (
        UniqueConstraint("document_id", "reference_number", name="uq_actions_document_reference"),
        Index("idx_actions_lineage", "lineage_id"),
        Index("idx_actions_document", "document_id"),
        Index("idx_actions_origin", "origin_action_id"),
        Index("idx_actions_status", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    lineage_id: Mapped[str] = mapped_column(ForeignKey("lineages.id", ondelete="RESTRICT"), nullable=False)
    document_id: Mapped[int] = mapped_column(ForeignKey("documents.id", ondelete="CASCADE"), nullable=False)

    # Carry-forward links
    origin_action_id: Mapped[int | None] = mapped_column(ForeignKey("actions.id", ondelete="SET NULL"), nullable=True)
    carried_from_document_id: Mapped[int | None] = mapped_column(
        ForeignKey("documents.id", ondelete="SET NULL"), nullable=True
    )

    reference_number: Mapped[int | None] = mapped_column(Integer, nullable=True)  # displayed as R-01
    first_raised_in_version: Mapped[int] = mapped_column(Integer, nullable=False)

    status: Mapped[str] = mapped_column(String(32), nullable=False, default=ActionStatus.OPEN.value)
    superseded_by_action_id: Mapped[int | None] = mapped_column(
        ForeignKey("actions.id", ondelete="SET NULL"), nullable=True
    )
    superseded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    title: Mapped[str] = mapped_column(Text, nullable=False)
    section_key: Mapped[str | None] = mapped_column(String(64), nullable=True)
    priority_band: Mapped[str | None] = mapped_column(String(8), nullable=True)  # P1..P4
    target_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    closed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    closed_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    closure_note: Mapped[str | None] = mapped_column(Text, nullable=True)

    reopened_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    reopened_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    reopen_note: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    created_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    @property
    def reference(self) -> str | None:
        return format_reference(self.reference_number)

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_ITEM_STATUSES

    @property
    def chain_id(self) -> int:
        """Identity of this action across versions."""
        return self.origin_action_id or self.id

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "lineage_id": self.lineage_id,
            "document_id": self.document_id,
            "origin_action_id": self.origin_action_id,
            "carried_from_document_id": self.carried_from_document_id,
            "reference_number": self.reference_number,
            "reference": self.reference,
            "first_raised_in_version": self.first_raised_in_version,
            "status": self.status,
            "superseded_by_action_id": self.superseded_by_action_id,
            "title": self.title,
            "section_key": self.section_key,
            "priority_band": self.priority_band,
            "target_date": self.target_date.isoformat() if self.target_date else None,
            "closed_at": self.closed_at.isoformat() if self.closed_at else None,
            "closure_note": self.closure_note,
            "reopened_at": self.reopened_at.isoformat() if self.reopened_at else None,
            "reopen_note": self.reopen_note,
        }
