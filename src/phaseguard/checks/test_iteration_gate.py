from __future__ import annotations

import logging
from typing import Any

from phaseguard.checks.base import CheckContext, CheckResult
from phaseguard.checks.policy_gate import GateStatus, is_completion_attempt

logger = logging.getLogger(__name__)


def evaluate_test_iteration(
    phase_state: Any, test_requirements: dict[str, Any] | None
) -> GateStatus:
    if not isinstance(test_requirements, dict) or not test_requirements.get("enabled"):
        return GateStatus(True, "not_required")
    iteration = None
    if isinstance(phase_state, dict):
        iteration = (phase_state.get("iteration_requirements") or {}).get("test_iteration")
    if not isinstance(iteration, dict):
        return GateStatus(False, "not_started")

    if iteration.get("status") == "escalated":
        if iteration.get("escalation_approved"):
            return GateStatus(True, "escalation_approved")
        return GateStatus(False, "escalated_pending")
    if not iteration.get("completed"):
        if iteration.get("last_test_result") == "failed":
            return GateStatus(False, "failing")
        return GateStatus(False, "incomplete")
    return GateStatus(True, "tests_passing")


def block_message(phase: str, status: GateStatus, iteration: dict[str, Any]) -> str:
    used = iteration.get("current_iteration", 0)
    limit = iteration.get("max_iterations", "?")
    if status.reason == "escalated_pending":
        detail = iteration.get("escalation_details") or "no details recorded"
        return (
            "PHASE COMPLETION BLOCKED: Test iteration escalated "
            f"({iteration.get('escalation_reason') or 'unknown'}): {detail}.\n"
            "Human approval required. Set "
            f"phases.{phase}.iteration_requirements.test_iteration.escalation_approved "
            "once the escalation has been reviewed."
        )
    if status.reason == "failing":
        return (
            "PHASE COMPLETION BLOCKED: Test iteration incomplete. "
            f"{used}/{limit} iterations used. Last result: FAILED.\n"
            "Fix the failing tests and re-run them before declaring the phase complete."
        )
    if status.reason == "incomplete":
        return (
            "PHASE COMPLETION BLOCKED: Test iteration not completed.\n"
            "Run the tests until they pass before declaring the phase complete."
        )
    return (
        "PHASE COMPLETION BLOCKED: Test iteration not started.\n"
        "Run tests and iterate until passing."
    )


def check_test_iteration_gate(ctx: CheckContext) -> CheckResult:
    """Block phase completion while the phase's test iteration is unresolved."""
    if not is_completion_attempt(ctx):
        return CheckResult.allow()
    state = ctx.state
    if not isinstance(state, dict):
        return CheckResult.allow()
    if (state.get("iteration_enforcement") or {}).get("enabled") is False:
        return CheckResult.allow()
    phase = ctx.current_phase
    if phase is None:
        return CheckResult.allow()

    requirements = ctx.phase_requirements(phase) or {}
    phase_state = (state.get("phases") or {}).get(phase)
    status = evaluate_test_iteration(phase_state, requirements.get("test_iteration"))
    if status.satisfied:
        logger.debug("Test iteration gate satisfied for %s (%s)", phase, status.reason)
        return CheckResult.allow()

    iteration: dict[str, Any] = {}
    if isinstance(phase_state, dict):
        iteration = (phase_state.get("iteration_requirements") or {}).get("test_iteration") or {}
    return CheckResult.block(block_message(phase, status, iteration))
