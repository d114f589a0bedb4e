from __future__ import annotations

import json
from datetime import datetime
from typing import Any

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from app.riskdocs.models import Base


class ChangeSummary(Base):
    """
    Delta between an issued version and the previously issued one.

    Written once when the new version is issued and never regenerated; the
    JSON bucket columns hold canonical (sorted-key) serialisations.
    """

    __tablename__ = "change_summaries"
    __table_args__ = (
        UniqueConstraint("document_id", "previous_document_id", name="uq_change_summaries_pair"),
        UniqueConstraint("document_id", name="uq_change_summaries_document"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    lineage_id: Mapped[str] = mapped_column(ForeignKey("lineages.id", ondelete="RESTRICT"), nullable=False)
    document_id: Mapped[int] = mapped_column(ForeignKey("documents.id", ondelete="CASCADE"), nullable=False)
    previous_document_id: Mapped[int] = mapped_column(ForeignKey("documents.id", ondelete="CASCADE"), nullable=False)
    version_number: Mapped[int] = mapped_column(Integer, nullable=False)
    previous_version_number: Mapped[int] = mapped_column(Integer, nullable=False)

    new_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    closed_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    reopened_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    outstanding_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    new_items_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    closed_items_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    reopened_items_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    outstanding_items_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")

    has_material_changes: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    summary_text: Mapped[str] = mapped_column(Text, nullable=False, default="")
    content_sha256: Mapped[str] = mapped_column(String(64), nullable=False)  # digest of the canonical payload

    generated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    generated_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    def bucket(self, name: str) -> list[dict[str, Any]]:
        raw = getattr(self, f"{name}_items_json")
        return json.loads(raw or "[]")

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "lineage_id": self.lineage_id,
            "document_id": self.document_id,
            "previous_document_id": self.previous_document_id,
            "version_number": self.version_number,
            "previous_version_number": self.previous_version_number,
            "counts": {
                "new": self.new_count,
                "closed": self.closed_count,
                "reopened": self.reopened_count,
                "outstanding": self.outstanding_count,
            },
            "new": self.bucket("new"),
            "closed": self.bucket("closed"),
            "reopened": self.bucket("reopened"),
            "outstanding": self.bucket("outstanding"),
            "has_material_changes": self.has_material_changes,
            "summary_text": self.summary_text,
            "content_sha256": self.content_sha256,
            "generated_at": self.generated_at.isoformat() if self.generated_at else None,
            "generated_by_user_id": self.generated_by_user_id,
        }
