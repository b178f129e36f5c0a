from __future__ import annotations

import logging
import math
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from phaseguard.checks.base import FILE_WRITE_KINDS, CheckContext, CheckResult
from phaseguard.config import PhaseguardConfig
from phaseguard.state.pruning import (
    collect_phase_snapshots,
    parse_timestamp,
    prune_completed_phases,
    prune_history,
    prune_pending_escalations,
    prune_skill_usage_log,
    prune_workflow_history,
)
from phaseguard.state.store import is_state_path, read_json_document, write_json_document

logger = logging.getLogger(__name__)

DEFAULT_TIER = "standard"
MIN_BASELINE_ENTRIES = 2


@dataclass(slots=True, frozen=True)
class RollingAverage:
    avg_minutes: int
    count: int


def _entry_tier(entry: dict[str, Any]) -> str:
    sizing = entry.get("sizing")
    tier = sizing.get("effective_intensity") if isinstance(sizing, dict) else None
    return tier if isinstance(tier, str) and tier else DEFAULT_TIER


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def compute_rolling_average(
    workflow_history: Sequence[Any], tier: str | None, window: int = 5
) -> RollingAverage | None:
    """Average the most recent same-tier durations, newest first, up to ``window`` entries."""
    if not workflow_history:
        return None
    wanted = tier if isinstance(tier, str) and tier else DEFAULT_TIER
    limit = window if isinstance(window, int) and window > 0 else 5

    durations: list[float] = []
    for entry in reversed(workflow_history):
        if not isinstance(entry, dict) or _entry_tier(entry) != wanted:
            continue
        minutes = (entry.get("metrics") or {}).get("total_duration_minutes")
        if isinstance(minutes, (int, float)) and not isinstance(minutes, bool) and minutes > 0:
            durations.append(minutes)
        if len(durations) >= limit:
            break
    if len(durations) < MIN_BASELINE_ENTRIES:
        return None
    return RollingAverage(_round_half_up(sum(durations) / len(durations)), len(durations))


def detect_regression(
    current_minutes: Any, rolling: RollingAverage | None, threshold: float = 0.20
) -> dict[str, Any] | None:
    if rolling is None or rolling.avg_minutes <= 0:
        return None
    if (
        not isinstance(current_minutes, (int, float))
        or isinstance(current_minutes, bool)
        or current_minutes <= 0
    ):
        return None
    baseline = rolling.avg_minutes
    return {
        "baseline_avg_minutes": baseline,
        "current_minutes": current_minutes,
        "percent_over": _round_half_up((current_minutes - baseline) / baseline * 100),
        "regressed": current_minutes > baseline * (1 + threshold),
        "compared_against": rolling.count,
    }


def slowest_phase(snapshots: Sequence[dict[str, Any]]) -> dict[str, Any] | None:
    timed = [item for item in snapshots if isinstance(item.get("duration_minutes"), int)]
    if not timed:
        return None
    slowest = max(timed, key=lambda item: item["duration_minutes"])
    return {"phase": slowest["key"], "duration_minutes": slowest["duration_minutes"]}


def _needs_remediation(entry: Any) -> bool:
    if not isinstance(entry, dict):
        return False
    metrics = entry.get("metrics")
    return not (
        isinstance(entry.get("phase_snapshots"), list) and isinstance(metrics, dict) and metrics
    )


def _is_recent(entry: dict[str, Any], staleness_seconds: int, now: datetime) -> bool:
    stamp = entry.get("completed_at") or entry.get("cancelled_at")
    if not stamp:
        return True
    finished = parse_timestamp(stamp)
    if finished is None:
        return False
    return (now - finished).total_seconds() <= staleness_seconds


def remediate(
    state: dict[str, Any], settings: PhaseguardConfig, now: datetime | None = None
) -> list[str]:
    """Patch the latest archived workflow in place; returns the diagnostics to emit."""
    history = state.get("workflow_history")
    if state.get("active_workflow") or not isinstance(history, list) or not history:
        return []
    entry = history[-1]
    if not _needs_remediation(entry):
        return []
    if not _is_recent(entry, settings.regression.staleness_seconds, now or datetime.now(UTC)):
        logger.debug("Latest workflow_history entry is stale; skipping remediation")
        return []

    phase_keys = entry.get("phases")
    if not isinstance(phase_keys, list) or not phase_keys:
        phase_keys = list((state.get("phases") or {}).keys())
    collected = collect_phase_snapshots(
        {
            "active_workflow": {
                "phases": phase_keys,
                "started_at": entry.get("started_at"),
                "completed_at": entry.get("completed_at") or entry.get("cancelled_at"),
            },
            "phases": state.get("phases"),
            "history": state.get("history"),
        }
    )
    entry["phase_snapshots"] = collected["phase_snapshots"]
    entry["metrics"] = collected["metrics"]
    messages = [
        "[SELF-HEAL] completion-remediator: Added "
        f"{len(entry['phase_snapshots'])} phase snapshots and metrics to workflow_history entry"
    ]

    rolling = compute_rolling_average(history[:-1], _entry_tier(entry), settings.regression.window)
    regression = detect_regression(
        entry["metrics"].get("total_duration_minutes"), rolling, settings.regression.threshold
    )
    if regression is not None:
        regression["slowest_phase"] = slowest_phase(entry["phase_snapshots"])
        entry["regression_check"] = regression
        if regression["regressed"]:
            slowest = regression["slowest_phase"]
            detail = (
                f" Slowest phase: {slowest['phase']} ({slowest['duration_minutes']}m)."
                if slowest
                else ""
            )
            messages.append(
                "[completion-remediator] WARNING: Workflow duration regression. "
                f"{regression['current_minutes']}m vs {regression['baseline_avg_minutes']}m "
                f"rolling average ({regression['percent_over']}% over, "
                f"{regression['compared_against']} prior workflows).{detail}"
            )

    pruning = settings.pruning
    prune_skill_usage_log(state, pruning.skill_usage_log_max)
    prune_pending_escalations(state, pruning.pending_escalations_max)
    prune_completed_phases(state)
    prune_history(state, pruning.history_max, pruning.text_max_chars)
    prune_workflow_history(state, pruning.workflow_history_max, pruning.text_max_chars)
    return messages


def check_completion(ctx: CheckContext) -> CheckResult:
    """Backfill snapshots and metrics after a workflow is archived; owns its own write."""
    if ctx.event.action_kind not in FILE_WRITE_KINDS or not is_state_path(ctx.event.file_path):
        return CheckResult.allow()
    path = ctx.written_path()
    state = read_json_document(path)
    if not isinstance(state, dict):
        return CheckResult.allow()

    messages = remediate(state, ctx.settings)
    if not messages:
        return CheckResult.allow()
    write_json_document(path, state)
    return CheckResult.allow(stderr="\n".join(messages))
