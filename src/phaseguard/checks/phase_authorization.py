from __future__ import annotations

import logging
from typing import Any

from phaseguard.checks.base import DELEGATION, CheckContext, CheckResult

logger = logging.getLogger(__name__)

DEFAULT_PHASE = "01-requirements"
ALWAYS_AUTHORIZED_PHASES = frozenset({"all", "setup"})
PERMISSIVE_MODES = frozenset({"warn", "audit", "observe"})

AGENT_ALIASES = {
    "orchestrator": "sdlc-orchestrator",
    "00-sdlc-orchestrator": "sdlc-orchestrator",
    "requirements": "requirements-analyst",
    "01-requirements-analyst": "requirements-analyst",
    "architect": "solution-architect",
    "02-solution-architect": "solution-architect",
    "designer": "system-designer",
    "03-system-designer": "system-designer",
    "test-design": "test-design-engineer",
    "04-test-design-engineer": "test-design-engineer",
    "developer": "software-developer",
    "05-software-developer": "software-developer",
    "tester": "integration-tester",
    "06-integration-tester": "integration-tester",
    "qa": "qa-engineer",
    "07-qa-engineer": "qa-engineer",
    "security": "security-compliance-auditor",
    "08-security-compliance-auditor": "security-compliance-auditor",
    "cicd": "cicd-engineer",
    "09-cicd-engineer": "cicd-engineer",
    "dev-env": "environment-builder",
    "10-dev-environment-engineer": "environment-builder",
    "staging": "deployment-engineer-staging",
    "11-deployment-engineer-staging": "deployment-engineer-staging",
    "release": "release-manager",
    "12-release-manager": "release-manager",
    "sre": "site-reliability-engineer",
    "13-site-reliability-engineer": "site-reliability-engineer",
    "d0": "discover-orchestrator",
    "d0-discover-orchestrator": "discover-orchestrator",
    "discovery": "discover-orchestrator",
    "d1": "architecture-analyzer",
    "d1-architecture-analyzer": "architecture-analyzer",
    "arch-analyzer": "architecture-analyzer",
    "d2": "test-evaluator",
    "d2-test-evaluator": "test-evaluator",
    "d3": "constitution-generator",
    "d3-constitution-generator": "constitution-generator",
    "d4": "skills-researcher",
    "d4-skills-researcher": "skills-researcher",
    "d5": "data-model-analyzer",
    "d5-data-model-analyzer": "data-model-analyzer",
    "d6": "feature-mapper",
    "d6-feature-mapper": "feature-mapper",
    "d7": "product-analyst",
    "d7-product-analyst": "product-analyst",
    "d8": "architecture-designer",
    "d8-architecture-designer": "architecture-designer",
    "arch-designer": "architecture-designer",
}


def normalize_agent_name(name: Any) -> str:
    if not isinstance(name, str) or not name:
        return ""
    normalized = name.strip().lower().replace("_", "-")
    return AGENT_ALIASES.get(normalized, normalized)


def agent_phase(manifest: dict[str, Any] | None, agent: str) -> str | None:
    if not isinstance(manifest, dict):
        return None
    ownership = manifest.get("ownership")
    if not isinstance(ownership, dict):
        return None
    entry = ownership.get(agent)
    if not isinstance(entry, dict):
        return None
    phase = entry.get("phase")
    return phase if isinstance(phase, str) else None


def _fail_behavior(ctx: CheckContext, enforcement: dict[str, Any]) -> str:
    configured = enforcement.get("fail_behavior")
    if configured in {"allow", "block"}:
        return configured
    return "allow" if ctx.settings.enforcement.fail_open else "block"


def check_phase_authorization(ctx: CheckContext) -> CheckResult:
    """Block delegations to an agent whose owning phase is not the current one."""
    if ctx.event.action_kind != DELEGATION:
        return CheckResult.allow()
    requested = ctx.event.action_target.get("subagent_type")
    agent = normalize_agent_name(requested)
    if not agent:
        return CheckResult.allow()
    if not isinstance(ctx.state, dict):
        logger.debug("No state document; allowing delegation to %s", agent)
        return CheckResult.allow()

    enforcement = ctx.state.get("skill_enforcement")
    if not isinstance(enforcement, dict):
        enforcement = {}
    if enforcement.get("enabled") is False:
        return CheckResult.allow()
    mode = enforcement.get("mode") or ctx.settings.enforcement.default_mode
    current = ctx.current_phase or DEFAULT_PHASE

    if ctx.manifest is None:
        if mode != "observe" and _fail_behavior(ctx, enforcement) == "block":
            return CheckResult.block(
                "SKILL ENFORCEMENT ERROR: skills-manifest.json not found. "
                "Cannot validate agent authorization."
            )
        logger.debug("No ownership manifest; allowing delegation to %s", agent)
        return CheckResult.allow()

    owner = agent_phase(ctx.manifest, agent)
    if owner is None:
        logger.debug("Agent %s not in ownership manifest; allowing", agent)
        return CheckResult.allow()
    if owner in ALWAYS_AUTHORIZED_PHASES or owner == current:
        return CheckResult.allow()

    if mode in PERMISSIVE_MODES:
        logger.debug(
            "%s: agent %s (phase %s) used during %s; allowing", mode, agent, owner, current
        )
        return CheckResult.allow()
    return CheckResult.block(
        f"SKILL ENFORCEMENT: Agent '{agent}' (phase: {owner}) is not authorized for "
        f"current phase '{current}'. Delegate to the appropriate agent via the orchestrator."
    )
