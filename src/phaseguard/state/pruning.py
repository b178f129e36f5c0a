from __future__ import annotations

import math
from collections.abc import Iterable, Mapping
from datetime import UTC, datetime
from typing import Any

VERBOSE_PHASE_FIELDS = (
    "iteration_requirements",
    "constitutional_validation",
    "gate_validation",
    "testing_environment",
    "verification_summary",
    "atdd_validation",
)

SUMMARY_MAX_CHARS = 150

PHASE_AGENTS = {
    "00-quick-scan": "quick-scan-agent",
    "01-requirements": "requirements-analyst",
    "02-impact-analysis": "impact-analysis-orchestrator",
    "02-tracing": "tracing-orchestrator",
    "03-architecture": "solution-architect",
    "04-design": "system-designer",
    "05-test-strategy": "test-design-engineer",
    "06-implementation": "software-developer",
    "07-testing": "integration-tester",
    "08-code-review": "qa-engineer",
    "09-validation": "security-compliance-auditor",
    "10-cicd": "cicd-engineer",
    "11-local-testing": "environment-builder",
    "13-test-deploy": "deployment-engineer-staging",
    "14-production": "release-manager",
    "15-operations": "site-reliability-engineer",
    "16-quality-loop": "quality-loop-engineer",
}


def parse_timestamp(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def duration_minutes(started: Any, finished: Any) -> int | None:
    start = parse_timestamp(started)
    end = parse_timestamp(finished)
    if start is None or end is None:
        return None
    minutes = (end - start).total_seconds() / 60
    if minutes < 0:
        return None
    return int(math.floor(minutes + 0.5))


def _truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + "..."


def prune_skill_usage_log(state: dict[str, Any], max_entries: int = 20) -> dict[str, Any]:
    log = state.get("skill_usage_log")
    if isinstance(log, list) and len(log) > max_entries:
        state["skill_usage_log"] = log[-max_entries:]
    return state


def prune_pending_escalations(state: dict[str, Any], max_entries: int = 20) -> dict[str, Any]:
    escalations = state.get("pending_escalations")
    if isinstance(escalations, list) and len(escalations) > max_entries:
        state["pending_escalations"] = escalations[-max_entries:]
    return state


def prune_completed_phases(
    state: dict[str, Any], protected_phases: Iterable[str] = ()
) -> dict[str, Any]:
    phases = state.get("phases")
    if not isinstance(phases, dict):
        return state
    protected = set(protected_phases)
    for phase_key, phase in phases.items():
        if phase_key in protected or not isinstance(phase, dict):
            continue
        if phase.get("status") != "completed" and not phase.get("gate_passed"):
            continue
        for field_name in VERBOSE_PHASE_FIELDS:
            phase.pop(field_name, None)
    return state


def prune_history(
    state: dict[str, Any], max_entries: int = 50, max_chars: int = 200
) -> dict[str, Any]:
    history = state.get("history")
    if not isinstance(history, list):
        return state
    history = history[-max_entries:]
    for entry in history:
        if isinstance(entry, dict) and isinstance(entry.get("action"), str):
            entry["action"] = _truncate(entry["action"], max_chars)
    state["history"] = history
    return state


def prune_workflow_history(
    state: dict[str, Any], max_entries: int = 50, max_chars: int = 200
) -> dict[str, Any]:
    history = state.get("workflow_history")
    if not isinstance(history, list):
        return state
    history = history[-max_entries:]
    for entry in history:
        if not isinstance(entry, dict):
            continue
        if isinstance(entry.get("description"), str):
            entry["description"] = _truncate(entry["description"], max_chars)
        branch = entry.get("git_branch")
        if isinstance(branch, dict):
            entry["git_branch"] = {"name": branch.get("name")}
    state["workflow_history"] = history
    return state


def _history_summary(
    history: Any, agent: str | None, started: Any, completed: Any
) -> str | None:
    if not isinstance(history, list) or not agent:
        return None
    window_start = parse_timestamp(started)
    window_end = parse_timestamp(completed)
    for entry in reversed(history):
        if not isinstance(entry, dict) or entry.get("agent") != agent:
            continue
        at = parse_timestamp(entry.get("timestamp"))
        if at is None:
            continue
        if window_start is not None and at < window_start:
            continue
        if window_end is not None and at > window_end:
            continue
        action = entry.get("action")
        if isinstance(action, str) and action:
            return action
    return None


def _test_iterations(phase: Mapping[str, Any]) -> dict[str, Any] | None:
    requirements = phase.get("iteration_requirements")
    if not isinstance(requirements, dict):
        return None
    test_iteration = requirements.get("test_iteration")
    if not isinstance(test_iteration, dict):
        return None
    count = test_iteration.get("current_iteration", test_iteration.get("current"))
    if not isinstance(count, int):
        return None
    escalated = bool(test_iteration.get("escalated")) or test_iteration.get("status") == "escalated"
    if escalated:
        result = "escalated"
    elif test_iteration.get("completed"):
        result = "passed"
    else:
        result = "unknown"
    return {"count": count, "result": result, "escalated": escalated}


def _empty_metrics() -> dict[str, Any]:
    return {
        "total_phases": 0,
        "phases_completed": 0,
        "total_duration_minutes": None,
        "test_iterations_total": 0,
        "gates_passed_first_try": 0,
        "gates_required_iteration": 0,
    }


def collect_phase_snapshots(
    state: Mapping[str, Any], phase_agents: Mapping[str, str] | None = None
) -> dict[str, Any]:
    workflow = state.get("active_workflow")
    phases = state.get("phases")
    if not isinstance(workflow, dict) or not isinstance(phases, dict):
        return {"phase_snapshots": [], "metrics": _empty_metrics()}

    agents = PHASE_AGENTS if phase_agents is None else phase_agents
    history = state.get("history")
    snapshots: list[dict[str, Any]] = []
    for phase_key in workflow.get("phases") or []:
        if not isinstance(phase_key, str):
            continue
        phase = phases.get(phase_key)
        if not isinstance(phase, dict):
            continue

        summary = phase.get("summary")
        if not isinstance(summary, str) or not summary:
            summary = _history_summary(
                history, agents.get(phase_key), phase.get("started"), phase.get("completed")
            )
        snapshot: dict[str, Any] = {
            "key": phase_key,
            "status": phase.get("status"),
            "started": phase.get("started"),
            "completed": phase.get("completed"),
            "gate_passed": phase.get("gate_passed"),
            "duration_minutes": duration_minutes(phase.get("started"), phase.get("completed")),
            "artifacts": list(phase.get("artifacts") or []),
            "summary": summary[:SUMMARY_MAX_CHARS] if summary else None,
        }
        iterations = _test_iterations(phase)
        if iterations is not None:
            snapshot["test_iterations"] = iterations
        snapshots.append(snapshot)

    metrics = _empty_metrics()
    metrics["total_phases"] = len(snapshots)
    metrics["phases_completed"] = sum(1 for item in snapshots if item["status"] == "completed")
    metrics["total_duration_minutes"] = duration_minutes(
        workflow.get("started_at"),
        workflow.get("completed_at") or workflow.get("cancelled_at"),
    )
    for item in snapshots:
        iterations = item.get("test_iterations")
        count = iterations["count"] if iterations else 0
        metrics["test_iterations_total"] += count
        if not item["gate_passed"]:
            continue
        if count > 1:
            metrics["gates_required_iteration"] += 1
        else:
            metrics["gates_passed_first_try"] += 1
    return {"phase_snapshots": snapshots, "metrics": metrics}
