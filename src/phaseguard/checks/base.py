from __future__ import annotations

import copy
import functools
import json
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

from phaseguard.config import PhaseguardConfig
from phaseguard.state.store import ProjectPaths

logger = logging.getLogger(__name__)

Decision = Literal["allow", "block"]

DELEGATION = "Task"
COMMAND = "Bash"
FILE_WRITE_KINDS = frozenset({"Write", "Edit"})


class EventParseError(ValueError):
    """Raised when a hook payload is not a JSON object."""


@dataclass(slots=True, frozen=True)
class HookEvent:
    action_kind: str
    action_target: dict[str, Any] = field(default_factory=dict)
    action_result: Any = None

    @classmethod
    def parse(cls, raw: str | bytes | dict[str, Any]) -> HookEvent:
        if isinstance(raw, dict):
            payload = raw
        else:
            try:
                payload = json.loads(raw)
            except (TypeError, ValueError) as exc:
                raise EventParseError(f"Invalid hook payload: {exc}") from exc
        if not isinstance(payload, dict):
            raise EventParseError("Hook payload must be a JSON object.")

        kind = payload.get("action_kind", payload.get("tool_name"))
        target = payload.get("action_target", payload.get("tool_input"))
        result = payload.get("action_result")
        if result is None:
            result = payload.get("tool_result", payload.get("tool_response"))
        return cls(
            action_kind=str(kind or ""),
            action_target=target if isinstance(target, dict) else {},
            action_result=result,
        )

    @property
    def file_path(self) -> str:
        value = self.action_target.get("file_path") or self.action_target.get("filePath")
        return str(value or "")

    @property
    def command(self) -> str:
        value = self.action_target.get("command")
        return value if isinstance(value, str) else ""


@dataclass(slots=True)
class CheckContext:
    """Everything one check invocation may read; built fresh for every event."""

    event: HookEvent
    state: dict[str, Any] | None
    paths: ProjectPaths
    settings: PhaseguardConfig = field(default_factory=PhaseguardConfig)
    requirements: dict[str, Any] | None = None
    manifest: dict[str, Any] | None = None

    @property
    def active_workflow(self) -> dict[str, Any] | None:
        if not isinstance(self.state, dict):
            return None
        workflow = self.state.get("active_workflow")
        return workflow if isinstance(workflow, dict) else None

    @property
    def current_phase(self) -> str | None:
        workflow = self.active_workflow or {}
        phase = workflow.get("current_phase")
        if not phase and isinstance(self.state, dict):
            phase = self.state.get("current_phase")
        return phase if isinstance(phase, str) and phase else None

    def written_path(self) -> Path:
        path = Path(self.event.file_path)
        if not path.is_absolute():
            path = self.paths.root / path
        return path

    def phase_requirements(self, phase: str) -> dict[str, Any] | None:
        if not isinstance(self.requirements, dict):
            return None
        phases = self.requirements.get("phase_requirements")
        if not isinstance(phases, dict) or not isinstance(phases.get(phase), dict):
            return None
        merged = dict(phases[phase])
        overrides = self.requirements.get("workflow_overrides")
        workflow_type = (self.active_workflow or {}).get("type")
        if isinstance(overrides, dict) and workflow_type:
            phase_override = (overrides.get(workflow_type) or {}).get(phase)
            if isinstance(phase_override, dict):
                for key, value in phase_override.items():
                    if isinstance(value, dict) and isinstance(merged.get(key), dict):
                        merged[key] = {**merged[key], **value}
                    else:
                        merged[key] = value
        return merged


@dataclass(slots=True)
class CheckResult:
    decision: Decision = "allow"
    stop_reason: str | None = None
    stderr: str | None = None
    stdout: str | None = None
    state_modified: bool = False

    @classmethod
    def allow(cls, stderr: str | None = None, state_modified: bool = False) -> CheckResult:
        return cls(stderr=stderr, state_modified=state_modified)

    @classmethod
    def block(
        cls, reason: str, stderr: str | None = None, state_modified: bool = False
    ) -> CheckResult:
        return cls(
            decision="block", stop_reason=reason, stderr=stderr, state_modified=state_modified
        )

    @property
    def blocked(self) -> bool:
        return self.decision == "block"


Check = Callable[[CheckContext], CheckResult]


def guarded(check: Check) -> Check:
    """Convert any fault raised by ``check`` into an unchanged allow."""

    @functools.wraps(check)
    def _wrapper(ctx: CheckContext) -> CheckResult:
        snapshot = copy.deepcopy(ctx.state)
        try:
            result = check(ctx)
        except Exception:
            logger.debug("%s failed; allowing", check.__name__, exc_info=True)
            if isinstance(ctx.state, dict) and isinstance(snapshot, dict):
                ctx.state.clear()
                ctx.state.update(snapshot)
            return CheckResult.allow()
        if not isinstance(result, CheckResult):
            return CheckResult.allow()
        return result

    return _wrapper
