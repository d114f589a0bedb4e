"""
Issue requirements matrix.

Each assessment framework declares the sections a report must complete
before it can be issued. Conditional sections are required only when a flag
in the document's ``context`` payload is set. A composite report type such
as ``FRA+DSEAR`` declares one section set per framework.
"""
from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, TYPE_CHECKING

if TYPE_CHECKING:
    from app.riskdocs.modules.documents.readiness import Blocker


Condition = Callable[[Mapping[str, Any]], bool]
Check = Callable[[Mapping[str, Any], Sequence[Any]], "list[Blocker]"]


@dataclass(frozen=True)
class SectionRule:
    key: str
    label: str
    required: bool = True
    condition: Condition | None = None
    required_fields: tuple[str, ...] = ()

    @property
    def conditional(self) -> bool:
        return not self.required and self.condition is not None

    def is_required(self, ctx: Mapping[str, Any]) -> bool:
        if self.required:
            return True
        if self.condition is not None:
            return bool(self.condition(ctx))
        return False


@dataclass(frozen=True)
class SectionSet:
    framework: str
    rules: tuple[SectionRule, ...]
    checks: tuple[Check, ...] = field(default=())

    def required_keys(self, ctx: Mapping[str, Any]) -> list[str]:
        return [r.key for r in self.rules if r.is_required(ctx)]


def _flag(name: str) -> Condition:
    return lambda ctx: ctx.get(name) is True


def _any_flag(*names: str) -> Condition:
    return lambda ctx: any(ctx.get(n) is True for n in names)


FRA_RULES: tuple[SectionRule, ...] = (
    SectionRule(
        "survey_info",
        "Survey Information",
        required_fields=("inspection_date", "surveyor_name", "company_name", "site_name", "scope_type"),
    ),
    SectionRule("property_details", "Property Details"),
    SectionRule("construction", "Construction"),
    SectionRule("occupancy", "Occupancy"),
    SectionRule("hazards", "Fire Hazards"),
    SectionRule("fire_protection", "Fire Protection"),
    SectionRule("management", "Management"),
    SectionRule("risk_evaluation", "Risk Evaluation", required_fields=("overall_risk_rating",)),
    SectionRule("recommendations", "Recommendations"),
)

FSD_RULES: tuple[SectionRule, ...] = (
    SectionRule(
        "strategy_scope_basis",
        "Strategy Scope & Basis",
        required_fields=("design_stage", "standards_basis"),
    ),
    SectionRule("building_description", "Building Description"),
    SectionRule("occupancy_fire_load", "Occupancy & Fire Load"),
    SectionRule("means_of_escape", "Means of Escape"),
    SectionRule("compartmentation", "Compartmentation"),
    SectionRule("detection_alarm", "Detection & Alarm"),
    SectionRule(
        "management_assumptions",
        "Management Assumptions",
        required=False,
        condition=_flag("engineered_solutions_used"),
        required_fields=("management_assumptions_text",),
    ),
    SectionRule(
        "limitations_reliance",
        "Limitations & Reliance",
        required=False,
        condition=_flag("engineered_solutions_used"),
        required_fields=("limitations_text",),
    ),
    SectionRule(
        "suppression",
        "Suppression Systems",
        required=False,
        condition=_any_flag("has_suppression", "requires_suppression"),
    ),
    SectionRule("smoke_control", "Smoke Control", required=False, condition=_flag("has_smoke_control")),
)

DSEAR_RULES: tuple[SectionRule, ...] = (
    SectionRule("assessment_scope", "Assessment Scope"),
    SectionRule("substances", "Dangerous Substances"),
    SectionRule("processes", "Processes"),
    SectionRule("hazardous_area_classification", "Hazardous Area Classification"),
    SectionRule("ignition_sources", "Ignition Sources"),
    SectionRule("control_measures", "Control Measures"),
    SectionRule("equipment_compliance", "Equipment Compliance"),
    SectionRule("management_controls", "Management Controls"),
    SectionRule("risk_evaluation", "Risk Evaluation"),
    SectionRule("actions", "Actions"),
)


def _framework_sets() -> dict[str, SectionSet]:
    # Imported late: the checks build Blocker values.
    from app.riskdocs.modules.documents import readiness

    return {
        "FRA": SectionSet("FRA", FRA_RULES, (readiness.check_fra_scope, readiness.check_fra_findings)),
        "FSD": SectionSet("FSD", FSD_RULES),
        "DSEAR": SectionSet(
            "DSEAR",
            DSEAR_RULES,
            (readiness.check_dsear_substances, readiness.check_dsear_zones, readiness.check_dsear_actions),
        ),
    }


FRAMEWORKS: tuple[str, ...] = ("FRA", "FSD", "DSEAR")


def parse_doc_type(doc_type: str) -> list[str]:
    """
    Split a report type into its frameworks: ``"FRA+DSEAR"`` -> ``["FRA", "DSEAR"]``.
    Raises ValueError for an unknown or empty type.
    """
    parts = [p.strip().upper() for p in (doc_type or "").split("+") if p.strip()]
    if not parts:
        raise ValueError("doc_type is required")
    unknown = [p for p in parts if p not in FRAMEWORKS]
    if unknown:
        raise ValueError(f"Unknown assessment framework(s): {', '.join(unknown)}")
    out: list[str] = []
    for p in parts:
        if p not in out:
            out.append(p)
    return out


def normalize_doc_type(doc_type: str) -> str:
    return "+".join(parse_doc_type(doc_type))


def declared_section_sets(doc_type: str) -> list[SectionSet]:
    sets = _framework_sets()
    return [sets[f] for f in parse_doc_type(doc_type)]


def requirement_description(doc_type: str, ctx: Mapping[str, Any]) -> str:
    """Human-readable count of required and conditional sections."""
    # Shared sections count once; required by any set wins.
    required: set[str] = set()
    conditional: set[str] = set()
    for section_set in declared_section_sets(doc_type):
        keys = section_set.required_keys(ctx)
        required.update(keys)
        conditional.update(r.key for r in section_set.rules if r.conditional and r.key in keys)
    required_count = len(required)
    text = f"{required_count} required sections must be completed"
    if conditional:
        text += f", {len(conditional)} of them because of your selections"
    return text
