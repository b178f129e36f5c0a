from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from phaseguard.checks.base import FILE_WRITE_KINDS, CheckContext, CheckResult
from phaseguard.state.store import is_state_path, read_json_document

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class IntegrityIssue:
    phase: str
    issue: str
    rule: str

    def render(self, path: str) -> str:
        return (
            f"[state-integrity] WARNING: {self.issue}\n"
            f"  Phase: {self.phase}\n"
            f"  Rule: {self.rule}\n"
            f"  Path: {path}"
        )


def _completed_without(
    record: Any, counter: str, phase: str, label: str, rule: str
) -> IntegrityIssue | None:
    if not isinstance(record, dict) or record.get("completed") is not True:
        return None
    value = record.get(counter)
    if isinstance(value, (int, float)) and not isinstance(value, bool) and value >= 1:
        return None
    rendered = "null" if value is None else value
    return IntegrityIssue(
        phase=phase,
        issue=f"{label}.completed is true but {counter} is {rendered}",
        rule=rule,
    )


def validate_phase(phase: str, data: dict[str, Any]) -> list[IntegrityIssue]:
    requirements = data.get("iteration_requirements")
    if not isinstance(requirements, dict):
        requirements = {}
    candidates = (
        _completed_without(
            data.get("constitutional_validation"),
            "iterations_used",
            phase,
            "constitutional_validation",
            "A completed constitutional validation must have at least 1 iteration",
        ),
        _completed_without(
            requirements.get("interactive_elicitation"),
            "menu_interactions",
            phase,
            "interactive_elicitation",
            "A completed elicitation must have at least 1 menu interaction",
        ),
        _completed_without(
            requirements.get("test_iteration"),
            "current_iteration",
            phase,
            "test_iteration",
            "A completed test iteration must have at least 1 test run",
        ),
    )
    return [issue for issue in candidates if issue is not None]


def cross_location_issues(state: dict[str, Any]) -> list[IntegrityIssue]:
    issues: list[IntegrityIssue] = []
    phases = state.get("phases")
    workflow = state.get("active_workflow")
    if not isinstance(workflow, dict):
        return issues

    phase_status = workflow.get("phase_status")
    if isinstance(phases, dict) and isinstance(phase_status, dict):
        for phase, data in phases.items():
            if not isinstance(data, dict):
                continue
            detailed = data.get("status")
            summary = phase_status.get(phase)
            if detailed and summary and detailed != summary:
                issues.append(
                    IntegrityIssue(
                        phase=phase,
                        issue=(
                            f"Phase status divergence: phases[].status='{detailed}' vs "
                            f"active_workflow.phase_status[]='{summary}'"
                        ),
                        rule="Phase status must match in both locations",
                    )
                )

    top_level = state.get("current_phase")
    current = workflow.get("current_phase")
    if top_level and current and top_level != current:
        issues.append(
            IntegrityIssue(
                phase=str(current),
                issue=(
                    f"Current phase divergence: current_phase='{top_level}' vs "
                    f"active_workflow.current_phase='{current}'"
                ),
                rule="Top-level current_phase must mirror active_workflow.current_phase",
            )
        )

    index = workflow.get("current_phase_index")
    ordered = workflow.get("phases")
    if (
        isinstance(index, int)
        and not isinstance(index, bool)
        and isinstance(ordered, list)
        and 0 <= index < len(ordered)
        and current
    ):
        expected = ordered[index]
        previous = ordered[index - 1] if index > 0 else None
        # tolerated: index advanced before current_phase caught up
        if expected and expected != current and previous != current:
            issues.append(
                IntegrityIssue(
                    phase=str(current),
                    issue=(
                        f"Phase index mismatch: phases[{index}]='{expected}' vs "
                        f"current_phase='{current}'"
                    ),
                    rule="active_workflow.phases[current_phase_index] must equal current_phase",
                )
            )
    return issues


def validate_state(state: dict[str, Any]) -> list[IntegrityIssue]:
    issues: list[IntegrityIssue] = []
    phases = state.get("phases")
    if isinstance(phases, dict):
        for phase, data in phases.items():
            if isinstance(data, dict):
                issues.extend(validate_phase(phase, data))
    issues.extend(cross_location_issues(state))
    return issues


def check_state_integrity(ctx: CheckContext) -> CheckResult:
    """Warn about impossible combinations in a freshly written state document."""
    if ctx.event.action_kind not in FILE_WRITE_KINDS or not is_state_path(ctx.event.file_path):
        return CheckResult.allow()
    path = ctx.written_path()
    state = read_json_document(path)
    if not isinstance(state, dict):
        logger.debug("State at %s unreadable; skipping integrity validation", path)
        return CheckResult.allow()

    issues = validate_state(state)
    if not issues:
        return CheckResult.allow()
    return CheckResult.allow(
        stderr="\n".join(issue.render(ctx.event.file_path) for issue in issues)
    )
