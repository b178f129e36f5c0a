from pathlib import Path
from typing import Any

from phaseguard.checks import CheckContext, HookEvent, check_test_iteration_gate
from phaseguard.checks.test_iteration_gate import evaluate_test_iteration
from phaseguard.config import PhaseguardConfig
from phaseguard.state import ProjectPaths

PHASE = "06-implementation"
REQUIREMENTS = {
    "phase_requirements": {
        PHASE: {
            "test_iteration": {"enabled": True, "max_iterations": 5},
            "constitutional_validation": {"enabled": True, "articles": ["I"]},
        }
    }
}
COMPLIANT = {"status": "compliant", "completed": True, "iterations_used": 1}


def _state(test_iteration: dict[str, Any] | None, **extra: Any) -> dict[str, Any]:
    phase: dict[str, Any] = {"status": "in_progress", "constitutional_validation": COMPLIANT}
    if test_iteration is not None:
        phase["iteration_requirements"] = {"test_iteration": test_iteration}
    state = {
        "current_phase": PHASE,
        "active_workflow": {"type": "feature", "current_phase": PHASE},
        "phases": {PHASE: phase},
    }
    state.update(extra)
    return state


def _completion(
    tmp_path: Path,
    state: dict[str, Any],
    subagent: str = "sdlc-orchestrator",
    prompt: str = "Phase complete, ready for gate",
) -> CheckContext:
    return CheckContext(
        event=HookEvent.parse(
            {"tool_name": "Task", "tool_input": {"subagent_type": subagent, "prompt": prompt}}
        ),
        state=state,
        paths=ProjectPaths(root=tmp_path),
        settings=PhaseguardConfig.default(),
        requirements=REQUIREMENTS,
        manifest={"ownership": {"sdlc-orchestrator": {"phase": "all"}}},
    )


def test_evaluate_test_iteration_statuses() -> None:
    enabled = {"enabled": True}

    assert evaluate_test_iteration({}, None).reason == "not_required"
    assert evaluate_test_iteration({}, {"enabled": False}).satisfied is True
    assert evaluate_test_iteration({}, enabled).reason == "not_started"

    def status(record: dict[str, Any]) -> tuple[bool, str]:
        result = evaluate_test_iteration(
            {"iteration_requirements": {"test_iteration": record}}, enabled
        )
        return result.satisfied, result.reason

    assert status({"completed": False}) == (False, "incomplete")
    assert status({"completed": False, "last_test_result": "failed"}) == (False, "failing")
    assert status({"completed": True, "status": "success"}) == (True, "tests_passing")
    assert status({"completed": True, "status": "escalated"}) == (False, "escalated_pending")
    approved = {"completed": True, "status": "escalated", "escalation_approved": True}
    assert status(approved) == (True, "escalation_approved")


def test_unapproved_circuit_breaker_escalation_blocks(tmp_path: Path) -> None:
    state = _state(
        {
            "completed": True,
            "status": "escalated",
            "escalation_reason": "circuit_breaker",
            "escalation_details": "Same error repeated 3 times: AssertionError",
            "current_iteration": 3,
        }
    )

    result = check_test_iteration_gate(_completion(tmp_path, state))

    assert result.blocked is True
    assert result.state_modified is False
    assert result.stop_reason.startswith("PHASE COMPLETION BLOCKED: Test iteration escalated")
    assert "(circuit_breaker)" in result.stop_reason
    assert "Human approval required" in result.stop_reason
    assert f"phases.{PHASE}.iteration_requirements.test_iteration" in result.stop_reason


def test_failing_iteration_blocks_with_progress(tmp_path: Path) -> None:
    state = _state(
        {
            "completed": False,
            "current_iteration": 2,
            "max_iterations": 5,
            "last_test_result": "failed",
        }
    )

    result = check_test_iteration_gate(_completion(tmp_path, state))

    assert result.blocked is True
    assert "2/5 iterations used. Last result: FAILED." in result.stop_reason


def test_missing_iteration_record_blocks(tmp_path: Path) -> None:
    result = check_test_iteration_gate(_completion(tmp_path, _state(None)))

    assert result.blocked is True
    assert "Test iteration not started." in result.stop_reason


def test_approved_escalation_and_passing_tests_allow(tmp_path: Path) -> None:
    approved = _state(
        {
            "completed": True,
            "status": "escalated",
            "escalation_reason": "max_iterations",
            "escalation_approved": True,
        }
    )
    passing = _state({"completed": True, "status": "success", "current_iteration": 1})

    assert check_test_iteration_gate(_completion(tmp_path, approved)).blocked is False
    assert check_test_iteration_gate(_completion(tmp_path, passing)).blocked is False


def test_gate_ignores_non_completion_delegations(tmp_path: Path) -> None:
    state = _state(None)

    working = _completion(tmp_path, state, prompt="Keep working on the parser")
    assert check_test_iteration_gate(working).blocked is False

    disabled = _state(None, iteration_enforcement={"enabled": False})
    assert check_test_iteration_gate(_completion(tmp_path, disabled)).blocked is False
