"""
Typed lifecycle errors.

Every lifecycle operation either completes or raises one of these. Blueprints
register a single handler against ``LifecycleError`` and serialise
``to_dict()``; the ``http_status`` on each class is the response code.
"""
from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from app.riskdocs.modules.documents.readiness import Blocker


class LifecycleError(Exception):
    code = "lifecycle_error"
    http_status = 400

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"error": self.code, "message": self.message}
        if self.details:
            out["details"] = self.details
        return out


class DocumentNotFound(LifecycleError):
    code = "not_found"
    http_status = 404

    def __init__(self, resource: str, resource_id: object) -> None:
        super().__init__(f"{resource} id={resource_id} not found", resource=resource, resource_id=str(resource_id))


class ValidationFailed(LifecycleError):
    code = "validation_failed"
    http_status = 400


class InvalidTransition(LifecycleError):
    code = "invalid_transition"
    http_status = 409

    def __init__(self, action: str, current_status: str, reason: str | None = None) -> None:
        msg = f"Cannot '{action}' from status '{current_status}'"
        if reason:
            msg += f": {reason}"
        super().__init__(msg, action=action, current_status=current_status)
        self.action = action
        self.current_status = current_status


class DocumentImmutable(InvalidTransition):
    code = "document_immutable"

    def __init__(self, action: str, current_status: str) -> None:
        super().__init__(
            action,
            current_status,
            "document is issued and locked; create a new version to make changes",
        )


class NotEligible(LifecycleError):
    code = "not_eligible"
    http_status = 422

    def __init__(self, blockers: list[Blocker]) -> None:
        n = len(blockers)
        super().__init__(f"{n} issue{'s' if n != 1 else ''} must be resolved before issuing")
        self.blockers = list(blockers)

    def to_dict(self) -> dict[str, Any]:
        from app.riskdocs.modules.documents.readiness import group_blockers_by_section

        out = super().to_dict()
        out["blockers"] = [b.to_dict() for b in self.blockers]
        out["blockers_by_section"] = {
            key: [b.to_dict() for b in items] for key, items in group_blockers_by_section(self.blockers).items()
        }
        return out


class NotIssued(LifecycleError):
    code = "not_issued"
    http_status = 409


class ChainNotAtTip(LifecycleError):
    code = "chain_not_at_tip"
    http_status = 409


class AlreadySuperseded(LifecycleError):
    code = "already_superseded"
    http_status = 409


class ConcurrentModification(LifecycleError):
    code = "concurrent_modification"
    http_status = 409

    def __init__(self, lineage_id: str, reason: str = "another operation holds this document chain") -> None:
        super().__init__(f"Lineage {lineage_id} is busy: {reason}", lineage_id=lineage_id)


class MissingLockedArtifact(LifecycleError):
    """Integrity violation: an issued version has no retrievable locked artifact."""

    code = "missing_locked_artifact"
    http_status = 500

    def __init__(self, document_id: int, reason: str) -> None:
        super().__init__(
            f"Locked artifact for document {document_id} is unavailable ({reason}); operator attention required",
            document_id=document_id,
            reason=reason,
        )
        self.document_id = document_id
        self.reason = reason
