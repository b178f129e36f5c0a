from __future__ import annotations

import json
import logging
import os
import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any

import click

from phaseguard.backlog import (
    ANALYSIS_PHASES,
    FEATURE_PHASES,
    AnalysisRecord,
    check_blast_radius_staleness,
    check_staleness,
    compute_recommended_tier,
    compute_start_phase,
    derive_backlog_marker,
    generate_slug,
    read_meta,
    resolve_item,
    validate_phases_completed,
    write_meta,
)
from phaseguard.backlog.index import append_to_backlog, next_item_number, update_backlog_marker
from phaseguard.backlog.staleness import current_codebase_hash
from phaseguard.classifiers import detect_source
from phaseguard.config import (
    CONFIG_FILENAME,
    ConfigError,
    PhaseguardConfig,
    load_config,
    save_config,
)
from phaseguard.dispatch import DispatchOutcome, run_post_bash, run_post_write, run_pre_task
from phaseguard.state import ProjectPaths, StateStore, StateStoreError
from phaseguard.state.pruning import (
    collect_phase_snapshots,
    prune_completed_phases,
    prune_history,
    prune_pending_escalations,
    prune_skill_usage_log,
    prune_workflow_history,
)

logger = logging.getLogger(__name__)

DEBUG_ENV_VARS = ("PHASEGUARD_DEBUG", "SKILL_VALIDATOR_DEBUG")
IMPACT_ANALYSIS_FILENAME = "impact-analysis.md"


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _load_settings(paths: ProjectPaths) -> PhaseguardConfig:
    try:
        return load_config(paths.root / CONFIG_FILENAME)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc


def _debug_enabled(flag: bool) -> bool:
    if flag:
        return True
    if any(os.environ.get(name, "").lower() == "true" for name in DEBUG_ENV_VARS):
        return True
    try:
        return load_config(ProjectPaths.discover().root / CONFIG_FILENAME).logging.debug
    except ConfigError:
        return False


def _echo_json(payload: Any) -> None:
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


@click.group()
@click.option("--debug", is_flag=True, default=False, help="Log diagnostics to stderr.")
def cli(debug: bool) -> None:
    """Phaseguard workflow enforcement engine."""
    level = logging.DEBUG if _debug_enabled(debug) else logging.WARNING
    logging.basicConfig(stream=sys.stderr, level=level, format="[%(name)s] %(message)s")
    logging.getLogger().setLevel(level)


@cli.command("init")
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def init_command(config_value: str) -> None:
    paths = ProjectPaths.discover()
    config_path = _resolve_config_path(paths.root, config_value)
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc
    save_config(config_path, config)
    paths.state_dir.mkdir(parents=True, exist_ok=True)

    click.echo(f"Initialized phaseguard in {paths.root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"State: {paths.state_file}")


@cli.group("hook")
def hook_group() -> None:
    """Run the checks for one event read from stdin."""


def _run_hook(runner: Callable[[str], DispatchOutcome]) -> None:
    raw = click.get_text_stream("stdin").read()
    if not raw.strip():
        return
    try:
        outcome = runner(raw)
    except Exception:
        logger.debug("Hook dispatch failed; allowing", exc_info=True)
        return
    for message in outcome.stderr:
        click.echo(message, err=True)
    for message in outcome.stdout:
        click.echo(message)
    response = outcome.block_response()
    if response is not None:
        click.echo(response)


@hook_group.command("pre-task")
def pre_task_command() -> None:
    _run_hook(run_pre_task)


@hook_group.command("post-bash")
def post_bash_command() -> None:
    _run_hook(run_post_bash)


@hook_group.command("post-write")
def post_write_command() -> None:
    _run_hook(run_post_write)


@cli.group("backlog")
def backlog_group() -> None:
    """Backlog and analysis helpers."""


def _backlog_locations(paths: ProjectPaths, settings: PhaseguardConfig) -> tuple[Path, Path]:
    return (
        paths.root / settings.backlog.requirements_dir,
        paths.root / settings.backlog.backlog_file,
    )


@backlog_group.command("slug")
@click.argument("text")
def slug_command(text: str) -> None:
    click.echo(generate_slug(text))


@backlog_group.command("detect")
@click.argument("text")
@click.option("--tracker", type=click.Choice(["github", "jira"]), default=None)
@click.option("--project-key", default=None)
def detect_command(text: str, tracker: str | None, project_key: str | None) -> None:
    settings = _load_settings(ProjectPaths.discover())
    reference = detect_source(
        text,
        tracker=tracker or settings.backlog.tracker or None,
        project_key=project_key or settings.backlog.project_key or None,
    )
    _echo_json(reference.to_dict())


@backlog_group.command("status")
@click.argument("slug")
@click.option(
    "--phases",
    "phase_list",
    default=",".join(FEATURE_PHASES),
    show_default=True,
    help="Comma-separated workflow phase list.",
)
def status_command(slug: str, phase_list: str) -> None:
    paths = ProjectPaths.discover()
    requirements_dir, _ = _backlog_locations(paths, _load_settings(paths))
    record = read_meta(requirements_dir / slug)
    phases = [phase.strip() for phase in phase_list.split(",") if phase.strip()]
    start = compute_start_phase(record.to_dict() if record else None, phases)
    _echo_json(start.to_dict())


@backlog_group.command("resolve")
@click.argument("query")
def resolve_command(query: str) -> None:
    paths = ProjectPaths.discover()
    requirements_dir, backlog_path = _backlog_locations(paths, _load_settings(paths))
    resolved = resolve_item(query, requirements_dir, backlog_path)
    if resolved is None:
        raise click.ClickException(f"No backlog item matches: {query}")
    _echo_json(resolved.to_dict())


@backlog_group.command("tier")
@click.argument("files", type=int)
@click.option(
    "--risk", type=click.Choice(["low", "medium", "high"]), default="low", show_default=True
)
def tier_command(files: int, risk: str) -> None:
    settings = _load_settings(ProjectPaths.discover())
    click.echo(compute_recommended_tier(files, risk, settings.tiers.thresholds()))


@backlog_group.command("staleness")
@click.argument("slug")
@click.option("--impact", "impact_value", type=click.Path(dir_okay=False), default=None)
def staleness_command(slug: str, impact_value: str | None) -> None:
    paths = ProjectPaths.discover()
    requirements_dir, _ = _backlog_locations(paths, _load_settings(paths))
    slug_dir = requirements_dir / slug
    record = read_meta(slug_dir)
    if record is None:
        raise click.ClickException(f"No analysis record for {slug}")

    current = current_codebase_hash(paths.root)
    impact_path = Path(impact_value) if impact_value else slug_dir / IMPACT_ANALYSIS_FILENAME
    if not impact_value and not impact_path.exists():
        _echo_json(check_staleness(record, current).to_dict())
        return
    impact = impact_path.read_text(encoding="utf-8") if impact_path.exists() else None
    result = check_blast_radius_staleness(record, current, impact, repo_root=paths.root)
    _echo_json(result.to_dict())


@backlog_group.command("add")
@click.argument("description")
def add_command(description: str) -> None:
    paths = ProjectPaths.discover()
    settings = _load_settings(paths)
    requirements_dir, backlog_path = _backlog_locations(paths, settings)
    reference = detect_source(
        description,
        tracker=settings.backlog.tracker or None,
        project_key=settings.backlog.project_key or None,
    )
    slug = generate_slug(reference.description)
    slug_dir = requirements_dir / slug
    if read_meta(slug_dir) is not None:
        raise click.ClickException(f"Backlog item already exists: {slug}")

    record = AnalysisRecord(
        description=reference.description,
        slug=slug,
        source=reference.source,
        source_id=reference.source_id,
        codebase_hash=current_codebase_hash(paths.root),
    )
    write_meta(slug_dir, record)
    item_number = next_item_number(backlog_path)
    append_to_backlog(
        backlog_path,
        item_number,
        reference.description,
        derive_backlog_marker(record.analysis_status),
    )
    click.echo(f"Added {item_number} {slug}")


@backlog_group.command("complete-phase")
@click.argument("slug")
@click.argument("phase", type=click.Choice(ANALYSIS_PHASES))
def complete_phase_command(slug: str, phase: str) -> None:
    """Record a finished analysis phase and refresh the item's backlog marker."""
    paths = ProjectPaths.discover()
    requirements_dir, backlog_path = _backlog_locations(paths, _load_settings(paths))
    slug_dir = requirements_dir / slug
    record = read_meta(slug_dir)
    if record is None:
        raise click.ClickException(f"No analysis record for {slug}")

    completed = [*record.phases_completed, phase]
    record.phases_completed, warnings = validate_phases_completed(completed)
    for warning in warnings:
        click.echo(warning, err=True)
    write_meta(slug_dir, record)

    marker = derive_backlog_marker(record.analysis_status)
    _echo_json(
        {
            "slug": slug,
            "phases_completed": record.phases_completed,
            "analysis_status": record.analysis_status,
            "marker_updated": update_backlog_marker(backlog_path, slug, marker),
        }
    )


@cli.group("state")
def state_group() -> None:
    """Workflow state maintenance."""


def _read_state(store: StateStore) -> dict[str, Any]:
    state = store.read()
    if state is None:
        raise click.ClickException(f"No readable state document at {store.path}")
    return state


@state_group.command("prune")
def prune_command() -> None:
    paths = ProjectPaths.discover()
    pruning = _load_settings(paths).pruning
    store = StateStore(paths)

    def _prune(state: dict[str, Any]) -> dict[str, Any]:
        workflow = state.get("active_workflow")
        protected: list[str] = []
        if isinstance(workflow, dict) and workflow.get("current_phase"):
            protected.append(workflow["current_phase"])
        prune_skill_usage_log(state, pruning.skill_usage_log_max)
        prune_pending_escalations(state, pruning.pending_escalations_max)
        prune_completed_phases(state, protected)
        prune_history(state, pruning.history_max, pruning.text_max_chars)
        prune_workflow_history(state, pruning.workflow_history_max, pruning.text_max_chars)
        return state

    try:
        updated = store.update(_prune)
    except StateStoreError as exc:
        raise click.ClickException(str(exc)) from exc
    if updated is None:
        raise click.ClickException(f"No readable state document at {store.path}")
    click.echo(f"Pruned {store.path}")


@state_group.command("snapshot")
def snapshot_command() -> None:
    state = _read_state(StateStore(ProjectPaths.discover()))
    _echo_json(collect_phase_snapshots(state))
