from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from phaseguard.checks.base import (
    COMMAND,
    DELEGATION,
    FILE_WRITE_KINDS,
    Check,
    CheckContext,
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
from phaseguard.config import CONFIG_FILENAME, ConfigError, PhaseguardConfig, load_config
from phaseguard.state.store import (
    ProjectPaths,
    StateStore,
    StateStoreError,
    is_state_path,
    read_json_document,
)

logger = logging.getLogger(__name__)
timing_logger = logging.getLogger("dispatcher")


@dataclass(slots=True, frozen=True)
class DispatchEntry:
    name: str
    predicate: Callable[[CheckContext], bool]
    handler: Check


@dataclass(slots=True)
class DispatchOutcome:
    stop_reason: str | None = None
    stderr: list[str] = field(default_factory=list)
    stdout: list[str] = field(default_factory=list)
    checks_run: int = 0
    state_written: bool = False

    @property
    def blocked(self) -> bool:
        return self.stop_reason is not None

    def block_response(self) -> str | None:
        if self.stop_reason is None:
            return None
        return json.dumps({"continue": False, "stopReason": self.stop_reason})


def _is_delegation(ctx: CheckContext) -> bool:
    return ctx.event.action_kind == DELEGATION


def _is_command_in_workflow(ctx: CheckContext) -> bool:
    return ctx.event.action_kind == COMMAND and ctx.active_workflow is not None


def _writes_state(ctx: CheckContext) -> bool:
    return ctx.event.action_kind in FILE_WRITE_KINDS and is_state_path(ctx.event.file_path)


def _archived_workflow(ctx: CheckContext) -> bool:
    if not _writes_state(ctx):
        return False
    state = read_json_document(ctx.written_path())
    return isinstance(state, dict) and not state.get("active_workflow")


PRE_TASK: Sequence[DispatchEntry] = (
    DispatchEntry("phase-authorization", _is_delegation, guarded(check_phase_authorization)),
    DispatchEntry("test-iteration-gate", _is_delegation, guarded(check_test_iteration_gate)),
    DispatchEntry("policy-gate", _is_delegation, guarded(check_policy_gate)),
)

POST_BASH: Sequence[DispatchEntry] = (
    DispatchEntry("iteration-control", _is_command_in_workflow, guarded(check_test_iteration)),
)

POST_WRITE: Sequence[DispatchEntry] = (
    DispatchEntry("state-integrity", _writes_state, guarded(check_state_integrity)),
    DispatchEntry("completion-remediator", _archived_workflow, guarded(check_completion)),
)


def load_settings(paths: ProjectPaths) -> PhaseguardConfig:
    try:
        return load_config(paths.root / CONFIG_FILENAME)
    except ConfigError as exc:
        logger.warning("%s; using defaults", exc)
        return PhaseguardConfig.default()


def build_context(
    raw: str | bytes | dict[str, Any],
    cwd: Path | None = None,
    env: Mapping[str, str] | None = None,
    settings: PhaseguardConfig | None = None,
) -> CheckContext | None:
    """Parse one event and load everything its checks may read; None when unparseable."""
    try:
        event = HookEvent.parse(raw)
    except EventParseError as exc:
        logger.debug("%s", exc)
        return None
    paths = ProjectPaths.discover(cwd, env)
    store = StateStore(paths)
    return CheckContext(
        event=event,
        state=store.read(),
        paths=paths,
        settings=settings or load_settings(paths),
        requirements=store.load_requirements(),
        manifest=store.load_manifest(),
    )


def dispatch(
    name: str,
    table: Sequence[DispatchEntry],
    ctx: CheckContext,
    short_circuit: bool = False,
    persist: bool = True,
) -> DispatchOutcome:
    started = time.perf_counter()
    outcome = DispatchOutcome()
    modified = False
    for entry in table:
        if not entry.predicate(ctx):
            continue
        result = entry.handler(ctx)
        outcome.checks_run += 1
        modified = modified or result.state_modified
        if result.stderr:
            outcome.stderr.append(result.stderr)
        if result.stdout:
            outcome.stdout.append(result.stdout)
        if result.blocked:
            logger.debug("%s blocked by %s", name, entry.name)
            if outcome.stop_reason is None:
                outcome.stop_reason = result.stop_reason or f"Blocked by {entry.name}"
            if short_circuit:
                break

    if persist and modified and isinstance(ctx.state, dict):
        try:
            StateStore(ctx.paths).write(ctx.state)
            outcome.state_written = True
        except StateStoreError as exc:
            logger.debug("%s", exc)

    elapsed = (time.perf_counter() - started) * 1000
    timing_logger.debug("%s: %d checks in %.1fms", name, outcome.checks_run, elapsed)
    return outcome


def run_pre_task(
    raw: str | bytes | dict[str, Any],
    cwd: Path | None = None,
    env: Mapping[str, str] | None = None,
) -> DispatchOutcome:
    ctx = build_context(raw, cwd, env)
    if ctx is None or ctx.state is None:
        return DispatchOutcome()
    return dispatch("pre-task", PRE_TASK, ctx, short_circuit=True)


def run_post_bash(
    raw: str | bytes | dict[str, Any],
    cwd: Path | None = None,
    env: Mapping[str, str] | None = None,
) -> DispatchOutcome:
    ctx = build_context(raw, cwd, env)
    if ctx is None or ctx.active_workflow is None:
        return DispatchOutcome()
    outcome = dispatch("post-bash", POST_BASH, ctx)
    outcome.stop_reason = None
    return outcome


def run_post_write(
    raw: str | bytes | dict[str, Any],
    cwd: Path | None = None,
    env: Mapping[str, str] | None = None,
) -> DispatchOutcome:
    ctx = build_context(raw, cwd, env)
    if ctx is None or not _writes_state(ctx):
        return DispatchOutcome()
    outcome = dispatch("post-write", POST_WRITE, ctx, persist=False)
    outcome.stop_reason = None
    return outcome
