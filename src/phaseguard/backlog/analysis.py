from __future__ import annotations

import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Literal

AnalysisStatus = Literal["raw", "partial", "analyzed"]

ANALYSIS_PHASES = (
    "00-quick-scan",
    "01-requirements",
    "02-impact-analysis",
    "03-architecture",
    "04-design",
)
IMPLEMENTATION_PHASES = (
    "05-test-strategy",
    "06-implementation",
    "16-quality-loop",
    "08-code-review",
)
FEATURE_PHASES = ANALYSIS_PHASES + IMPLEMENTATION_PHASES

UNTITLED_SLUG = "untitled-item"
SLUG_MAX_LENGTH = 50

BACKLOG_MARKERS: dict[str, str] = {"raw": " ", "partial": "~", "analyzed": "A"}
DONE_MARKER = "x"


def generate_slug(description: Any) -> str:
    if not isinstance(description, str) or not description:
        return UNTITLED_SLUG
    slug = re.sub(r"[^a-z0-9\s-]", "", description.lower())
    slug = re.sub(r"\s+", "-", slug)
    slug = re.sub(r"-+", "-", slug).strip("-")
    slug = slug[:SLUG_MAX_LENGTH]
    return slug or UNTITLED_SLUG


def derive_backlog_marker(status: str | None) -> str:
    return BACKLOG_MARKERS.get(status or "", " ")


def _light_skip_phases(sizing_decision: Any) -> list[str] | None:
    if not isinstance(sizing_decision, Mapping):
        return None
    intensity = sizing_decision.get("effective_intensity") or sizing_decision.get("intensity")
    if intensity != "light":
        return None
    skip = sizing_decision.get("light_skip_phases")
    if not isinstance(skip, list):
        return None
    return [str(item) for item in skip]


def derive_analysis_status(
    phases_completed: Any, sizing_decision: Any = None
) -> AnalysisStatus:
    if not isinstance(phases_completed, (list, tuple)):
        return "raw"
    completed = {phase for phase in phases_completed if phase in ANALYSIS_PHASES}
    if not completed:
        return "raw"

    skip = _light_skip_phases(sizing_decision)
    if skip is not None:
        required = [phase for phase in ANALYSIS_PHASES if phase not in skip]
        if all(phase in completed for phase in required):
            return "analyzed"

    if len(completed) < len(ANALYSIS_PHASES):
        return "partial"
    return "analyzed"


def validate_phases_completed(
    phases_completed: Any, sequence: Sequence[str] = ANALYSIS_PHASES
) -> tuple[list[str], list[str]]:
    """Return the contiguous prefix of ``sequence`` present in the input, plus warnings."""
    if not isinstance(phases_completed, (list, tuple)):
        return [], ["phases_completed is not a list"]

    recognized = [phase for phase in phases_completed if phase in sequence]
    valid: list[str] = []
    for phase in sequence:
        if phase not in recognized:
            break
        valid.append(phase)

    warnings: list[str] = []
    if len(recognized) > len(valid):
        warnings.append(
            "Non-contiguous phases detected: found ["
            + ", ".join(recognized)
            + "] but only ["
            + ", ".join(valid)
            + "] form a contiguous prefix"
        )
    return valid, warnings


@dataclass(slots=True)
class StartPoint:
    status: AnalysisStatus
    start_phase: str | None
    completed_phases: list[str] = field(default_factory=list)
    remaining_phases: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "start_phase": self.start_phase,
            "completed_phases": list(self.completed_phases),
            "remaining_phases": list(self.remaining_phases),
            "warnings": list(self.warnings),
        }


def _implementation_start(
    workflow_phases: Sequence[str], excluded: Sequence[str]
) -> tuple[str | None, list[str]]:
    start = next(
        (
            phase
            for phase in workflow_phases
            if phase not in ANALYSIS_PHASES and phase not in excluded
        ),
        None,
    )
    if start is None:
        return None, []
    remaining = [
        phase
        for phase in workflow_phases[list(workflow_phases).index(start):]
        if phase not in excluded
    ]
    return start, remaining


def compute_start_phase(meta: Any, workflow_phases: Sequence[str]) -> StartPoint:
    phases = list(workflow_phases)
    if not isinstance(meta, Mapping):
        return StartPoint(status="raw", start_phase=None, remaining_phases=phases)

    valid, warnings = validate_phases_completed(meta.get("phases_completed"))
    if not valid:
        return StartPoint(
            status="raw", start_phase=None, remaining_phases=phases, warnings=warnings
        )

    skip = _light_skip_phases(meta.get("sizing_decision"))
    sizing_complete = skip is not None and all(
        phase in valid for phase in ANALYSIS_PHASES if phase not in skip
    )
    if len(valid) == len(ANALYSIS_PHASES) or sizing_complete:
        start, remaining = _implementation_start(phases, skip or [])
        return StartPoint(
            status="analyzed",
            start_phase=start,
            completed_phases=valid,
            remaining_phases=remaining,
            warnings=warnings,
        )

    next_phase = next(phase for phase in ANALYSIS_PHASES if phase not in valid)
    remaining = phases[phases.index(next_phase):] if next_phase in phases else phases
    return StartPoint(
        status="partial",
        start_phase=next_phase,
        completed_phases=valid,
        remaining_phases=remaining,
        warnings=warnings,
    )
