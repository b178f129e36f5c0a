from phaseguard.checks.base import (
    CheckContext,
    CheckResult,
    EventParseError,
    HookEvent,
    guarded,
)
from phaseguard.checks.completion import check_completion
from phaseguard.checks.phase_authorization import check_phase_authorization
from phaseguard.checks.policy_gate import check_policy_gate
from phaseguard.checks.state_integrity import check_state_integrity
from phaseguard.checks.test_iteration_gate import check_test_iteration_gate
from phaseguard.checks.test_iterations import check_test_iteration

__all__ = [
    "CheckContext",
    "CheckResult",
    "EventParseError",
    "HookEvent",
    "check_completion",
    "check_phase_authorization",
    "check_policy_gate",
    "check_state_integrity",
    "check_test_iteration",
    "check_test_iteration_gate",
    "guarded",
]
