"""
Readiness (issue gating) validator.

Pure functions only: no session, no clock, no I/O. The advisory endpoint and
``lifecycle.issue()`` both call ``evaluate_document()`` so the rules a user
sees in the editor are exactly the rules enforced at issue time.
"""
from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from app.riskdocs.modules.documents.requirements import SectionSet, declared_section_sets


class BlockerKind(str, Enum):
    SECTION_INCOMPLETE = "section_incomplete"
    REQUIRED_FIELD_MISSING = "required_field_missing"
    CONDITIONAL_REQUIREMENT_UNMET = "conditional_requirement_unmet"


@dataclass(frozen=True)
class Blocker:
    kind: BlockerKind
    message: str
    section_key: str | None = None
    field: str | None = None

    @property
    def dedup_key(self) -> tuple[str, str | None, str | None]:
        return (self.kind.value, self.section_key, self.field)

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "section_key": self.section_key,
            "field": self.field,
            "message": self.message,
        }


@dataclass(frozen=True)
class ReadinessResult:
    eligible: bool
    blockers: tuple[Blocker, ...] = field(default=())
    frameworks: tuple[str, ...] = field(default=())

    def to_dict(self) -> dict[str, Any]:
        return {
            "eligible": self.eligible,
            "frameworks": list(self.frameworks),
            "summary": readiness_summary(self),
            "blockers": [b.to_dict() for b in self.blockers],
            "blockers_by_section": {
                key: [b.to_dict() for b in items] for key, items in group_blockers_by_section(self.blockers).items()
            },
        }


_CLOSED_ITEM_STATUSES = frozenset({"closed", "not_applicable", "superseded"})


def _context(content: Mapping[str, Any]) -> Mapping[str, Any]:
    ctx = content.get("context") if isinstance(content, Mapping) else None
    return ctx if isinstance(ctx, Mapping) else {}


def _section(content: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    sections = content.get("sections") if isinstance(content, Mapping) else None
    if not isinstance(sections, Mapping):
        return {}
    sec = sections.get(key)
    return sec if isinstance(sec, Mapping) else {}


def _answer(content: Mapping[str, Any], section_key: str, field_name: str) -> Any:
    fields = _section(content, section_key).get("fields")
    if not isinstance(fields, Mapping):
        return None
    return fields.get(field_name)


def _is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple, dict, set)):
        return len(value) == 0
    return False


def _item_status(item: Any) -> str:
    if isinstance(item, Mapping):
        return str(item.get("status") or "")
    return str(getattr(item, "status", "") or "")


def _has_open_items(items: Sequence[Any]) -> bool:
    return any(_item_status(i) not in _CLOSED_ITEM_STATUSES for i in items)


def section_is_complete(content: Mapping[str, Any], key: str) -> bool:
    return _section(content, key).get("status") == "complete"


# --- framework-specific checks -------------------------------------------------


def check_fra_scope(content: Mapping[str, Any], items: Sequence[Any]) -> list[Blocker]:
    ctx = _context(content)
    scope_type = ctx.get("scope_type") or _answer(content, "survey_info", "scope_type")
    if scope_type in ("limited", "desktop") and _is_blank(_answer(content, "survey_info", "scope_limitations")):
        return [
            Blocker(
                BlockerKind.CONDITIONAL_REQUIREMENT_UNMET,
                "Scope limitations must be specified for limited/desktop assessments",
                section_key="survey_info",
                field="scope_limitations",
            )
        ]
    return []


def check_fra_findings(content: Mapping[str, Any], items: Sequence[Any]) -> list[Blocker]:
    if _has_open_items(items) or _context(content).get("no_significant_findings") is True:
        return []
    return [
        Blocker(
            BlockerKind.CONDITIONAL_REQUIREMENT_UNMET,
            "Must have at least one recommendation OR confirm no significant findings",
            section_key="recommendations",
        )
    ]


def check_dsear_substances(content: Mapping[str, Any], items: Sequence[Any]) -> list[Blocker]:
    if not _is_blank(_answer(content, "substances", "substance_list")):
        return []
    if _context(content).get("no_dangerous_substances") is True:
        return []
    return [
        Blocker(
            BlockerKind.REQUIRED_FIELD_MISSING,
            "At least one dangerous substance must be identified OR confirm no dangerous substances",
            section_key="substances",
            field="substance_list",
        )
    ]


def check_dsear_zones(content: Mapping[str, Any], items: Sequence[Any]) -> list[Blocker]:
    if not _is_blank(_answer(content, "hazardous_area_classification", "zone_entries")):
        return []
    if _context(content).get("no_zoned_areas") is True:
        return []
    return [
        Blocker(
            BlockerKind.REQUIRED_FIELD_MISSING,
            "Zone classification must be documented OR confirm no zoned areas",
            section_key="hazardous_area_classification",
            field="zone_entries",
        )
    ]


def check_dsear_actions(content: Mapping[str, Any], items: Sequence[Any]) -> list[Blocker]:
    if _has_open_items(items) or _context(content).get("controls_adequate_confirmed") is True:
        return []
    return [
        Blocker(
            BlockerKind.CONDITIONAL_REQUIREMENT_UNMET,
            "Must have at least one action OR confirm controls are adequate",
            section_key="actions",
        )
    ]


# --- evaluation ------------------------------------------------------------------


def evaluate_section_set(section_set: SectionSet, content: Mapping[str, Any], items: Sequence[Any]) -> list[Blocker]:
    """Blockers for one declared section set, in rule order."""
    ctx = _context(content)
    blockers: list[Blocker] = []
    for rule in section_set.rules:
        if not rule.is_required(ctx):
            continue
        if not section_is_complete(content, rule.key):
            kind = BlockerKind.CONDITIONAL_REQUIREMENT_UNMET if rule.conditional else BlockerKind.SECTION_INCOMPLETE
            blockers.append(Blocker(kind, f"{rule.label} must be completed", section_key=rule.key))
        for field_name in rule.required_fields:
            if _is_blank(_answer(content, rule.key, field_name)):
                blockers.append(
                    Blocker(
                        BlockerKind.REQUIRED_FIELD_MISSING,
                        f"{rule.label}: '{field_name}' is required",
                        section_key=rule.key,
                        field=field_name,
                    )
                )
    for check in section_set.checks:
        blockers.extend(check(content, items))
    return blockers


def evaluate(
    doc_type: str,
    declared_sections: Sequence[SectionSet],
    content: Mapping[str, Any],
    items: Sequence[Any],
) -> ReadinessResult:
    """
    Evaluate every declared section set independently and union the blockers.

    A section shared by several sets is reported once (dedup on kind, section
    and field); a set that does not require it cannot suppress the blocker of
    a set that does.
    """
    seen: set[tuple[str, str | None, str | None]] = set()
    blockers: list[Blocker] = []
    for section_set in declared_sections:
        for b in evaluate_section_set(section_set, content, items):
            if b.dedup_key in seen:
                continue
            seen.add(b.dedup_key)
            blockers.append(b)
    frameworks = tuple(s.framework for s in declared_sections) or (doc_type,)
    return ReadinessResult(eligible=not blockers, blockers=tuple(blockers), frameworks=frameworks)


def evaluate_document(document: Any, items: Sequence[Any]) -> ReadinessResult:
    """Readiness of a stored document against its own declared requirements."""
    return evaluate(document.doc_type, declared_section_sets(document.doc_type), document.content, items)


def group_blockers_by_section(blockers: Sequence[Blocker]) -> dict[str, list[Blocker]]:
    grouped: dict[str, list[Blocker]] = {}
    for b in blockers:
        grouped.setdefault(b.section_key or "general", []).append(b)
    return grouped


def readiness_summary(result: ReadinessResult) -> str:
    if result.eligible:
        return "All requirements met - ready to issue"
    n = len(result.blockers)
    return f"{n} issue{'s' if n != 1 else ''} must be resolved before issuing"
