from __future__ import annotations

import json
from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.riskdocs.models import Base


class DocumentStatus(str, Enum):
    DRAFT = "draft"
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    ISSUED = "issued"
    SUPERSEDED = "superseded"


OPEN_STATUSES = frozenset(s.value for s in (DocumentStatus.DRAFT, DocumentStatus.PENDING_APPROVAL, DocumentStatus.APPROVED))
IMMUTABLE_STATUSES = frozenset(s.value for s in (DocumentStatus.ISSUED, DocumentStatus.SUPERSEDED))

_OPEN_TIP_PREDICATE = text("status IN ('draft', 'pending_approval', 'approved')")


class Lineage(Base):
    """
    Aggregate root for every version of one logical document.

    The tip pointers and the reference-number counter are the only shared
    mutable state in a chain; they change only inside a lineage transaction.
    """

    __tablename__ = "lineages"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    doc_type: Mapped[str] = mapped_column(String(64), nullable=False)

    next_reference_number: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    latest_version_number: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Pointers (no FK: documents already reference lineages)
    tip_document_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    issued_document_id: Mapped[int | None] = mapped_column(Integer, nullable=True)

    lock_version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    __mapper_args__ = {"version_id_col": lock_version}

    documents: Mapped[list["Document"]] = relationship(
        "Document",
        back_populates="lineage",
        lazy="selectin",
        order_by="Document.version_number",
    )


class Document(Base):
    __tablename__ = "documents"
    __table_args__ = (
        UniqueConstraint("lineage_id", "version_number", name="uq_documents_lineage_version"),
        Index("idx_documents_lineage", "lineage_id"),
        Index("idx_documents_status", "status"),
        # At most one draft/pending/approved version per lineage.
        Index(
            "uq_documents_open_tip",
            "lineage_id",
            unique=True,
            sqlite_where=_OPEN_TIP_PREDICATE,
            postgresql_where=_OPEN_TIP_PREDICATE,
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    lineage_id: Mapped[str] = mapped_column(ForeignKey("lineages.id", ondelete="RESTRICT"), nullable=False)
    version_number: Mapped[int] = mapped_column(Integer, nullable=False)

    title: Mapped[str] = mapped_column(String(255), nullable=False)
    doc_type: Mapped[str] = mapped_column(String(64), nullable=False)  # e.g. "FRA", "FRA+DSEAR"

    # draft -> pending_approval -> approved -> issued -> superseded
    status: Mapped[str] = mapped_column(String(32), nullable=False, default=DocumentStatus.DRAFT.value)

    # Approval (version-scoped; reset on every new version)
    approval_required: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    approval_requested_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    approval_requested_by_user_id: Mapped[int | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    approved_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    approval_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Issue control
    issued_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    issued_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    supersedes_document_id: Mapped[int | None] = mapped_column(
        ForeignKey("documents.id", ondelete="SET NULL"), nullable=True
    )
    superseded_by_document_id: Mapped[int | None] = mapped_column(
        ForeignKey("documents.id", ondelete="SET NULL"), nullable=True
    )
    superseded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    # Opaque editor payload; the core only reads "context" and "sections".
    content_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    created_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    lineage: Mapped[Lineage] = relationship("Lineage", back_populates="documents", lazy="selectin")

    @property
    def immutable(self) -> bool:
        return self.status in IMMUTABLE_STATUSES

    @property
    def content(self) -> dict[str, Any]:
        try:
            value = json.loads(self.content_json or "{}")
        except json.JSONDecodeError:
            return {}
        return value if isinstance(value, dict) else {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "lineage_id": self.lineage_id,
            "version_number": self.version_number,
            "title": self.title,
            "doc_type": self.doc_type,
            "status": self.status,
            "immutable": self.immutable,
            "approval_required": self.approval_required,
            "approved_at": self.approved_at.isoformat() if self.approved_at else None,
            "approved_by_user_id": self.approved_by_user_id,
            "rejection_reason": self.rejection_reason,
            "issued_at": self.issued_at.isoformat() if self.issued_at else None,
            "issued_by_user_id": self.issued_by_user_id,
            "supersedes_document_id": self.supersedes_document_id,
            "superseded_by_document_id": self.superseded_by_document_id,
            "superseded_at": self.superseded_at.isoformat() if self.superseded_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
