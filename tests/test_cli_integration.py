import json
from pathlib import Path
from typing import Any

import pytest
from click.testing import CliRunner

from phaseguard.cli import cli
from phaseguard.config import load_config

PHASE = "06-implementation"
ENV_VARS = ("CLAUDE_PROJECT_DIR", "ISDLC_PROJECT", "PHASEGUARD_DEBUG", "SKILL_VALIDATOR_DEBUG")


@pytest.fixture
def project(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    monkeypatch.chdir(tmp_path)
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    return tmp_path


def _write_json(path: Path, payload: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload), encoding="utf-8")


def _seed_workflow(root: Path) -> None:
    _write_json(
        root / ".isdlc" / "state.json",
        {
            "current_phase": PHASE,
            "active_workflow": {"type": "feature", "current_phase": PHASE},
            "phases": {PHASE: {"status": "in_progress"}},
            "history": [{"action": f"step {index}"} for index in range(60)],
        },
    )
    _write_json(
        root / ".isdlc" / "config" / "skills-manifest.json",
        {"ownership": {"requirements-analyst": {"phase": "01-requirements"}}},
    )
    _write_json(
        root / ".isdlc" / "config" / "iteration-requirements.json",
        {"phase_requirements": {PHASE: {"test_iteration": {"enabled": True}}}},
    )


def test_init_writes_default_config(project: Path) -> None:
    runner = CliRunner()

    result = runner.invoke(cli, ["init"])

    assert result.exit_code == 0, result.output
    assert "Initialized phaseguard" in result.output
    assert (project / ".isdlc").is_dir()
    config = load_config(project / "phaseguard.toml")
    assert config.enforcement.default_mode == "strict"


def test_backlog_add_status_and_resolve(project: Path) -> None:
    runner = CliRunner()

    added = runner.invoke(cli, ["backlog", "add", "Add login page"])
    assert added.exit_code == 0, added.output
    assert "Added 1.1 add-login-page" in added.output
    assert "- 1.1 [ ] Add login page" in (project / "BACKLOG.md").read_text(encoding="utf-8")

    duplicate = runner.invoke(cli, ["backlog", "add", "Add login page"])
    assert duplicate.exit_code != 0
    assert "already exists" in duplicate.output

    status = runner.invoke(cli, ["backlog", "status", "add-login-page"])
    assert status.exit_code == 0, status.output
    assert json.loads(status.output)["status"] == "raw"

    resolved = runner.invoke(cli, ["backlog", "resolve", "1.1"])
    assert resolved.exit_code == 0, resolved.output
    payload = json.loads(resolved.output)
    assert payload["slug"] == "add-login-page"
    assert payload["strategy"] == "item-number"

    missing = runner.invoke(cli, ["backlog", "resolve", "unrelated"])
    assert missing.exit_code != 0
    assert "No backlog item matches" in missing.output


def test_backlog_complete_phase_updates_meta_and_marker(project: Path) -> None:
    runner = CliRunner()
    runner.invoke(cli, ["backlog", "add", "Add login page"])
    meta_path = project / "docs" / "requirements" / "add-login-page" / "meta.json"

    first = runner.invoke(cli, ["backlog", "complete-phase", "add-login-page", "00-quick-scan"])
    assert first.exit_code == 0, first.output
    payload = json.loads(first.output)
    assert payload["analysis_status"] == "partial"
    assert payload["marker_updated"] is True
    assert "- 1.1 [~] Add login page" in (project / "BACKLOG.md").read_text(encoding="utf-8")

    gap = runner.invoke(cli, ["backlog", "complete-phase", "add-login-page", "03-architecture"])
    assert gap.exit_code == 0, gap.output
    assert "Non-contiguous phases detected" in gap.output
    meta = json.loads(meta_path.read_text(encoding="utf-8"))
    assert meta["phases_completed"] == ["00-quick-scan"]

    for phase in ("01-requirements", "02-impact-analysis", "03-architecture", "04-design"):
        done = runner.invoke(cli, ["backlog", "complete-phase", "add-login-page", phase])
        assert done.exit_code == 0, done.output
    assert json.loads(done.output)["analysis_status"] == "analyzed"
    assert "- 1.1 [A] Add login page" in (project / "BACKLOG.md").read_text(encoding="utf-8")

    missing = runner.invoke(cli, ["backlog", "complete-phase", "unknown-item", "00-quick-scan"])
    assert missing.exit_code != 0
    assert "No analysis record for unknown-item" in missing.output


def test_backlog_helpers(project: Path) -> None:
    runner = CliRunner()

    slug = runner.invoke(cli, ["backlog", "slug", "Hello, World!"])
    assert slug.output.strip() == "hello-world"
    tier = runner.invoke(cli, ["backlog", "tier", "15", "--risk", "medium"])
    assert tier.output.strip() == "epic"

    detected = runner.invoke(
        cli, ["backlog", "detect", "7", "--tracker", "jira", "--project-key", "OPS"]
    )
    assert detected.exit_code == 0, detected.output
    assert json.loads(detected.output)["source_id"] == "OPS-7"


def test_hook_pre_task_emits_block_response(project: Path) -> None:
    _seed_workflow(project)
    runner = CliRunner()
    event = {"tool_name": "Task", "tool_input": {"subagent_type": "requirements-analyst"}}

    result = runner.invoke(cli, ["hook", "pre-task"], input=json.dumps(event))

    assert result.exit_code == 0, result.output
    response = json.loads(result.output.strip().splitlines()[-1])
    assert response["continue"] is False
    assert "not authorized" in response["stopReason"]


def test_hook_falls_back_to_defaults_for_undecodable_config(project: Path) -> None:
    _seed_workflow(project)
    (project / "phaseguard.toml").write_bytes(b"[logging]\ndebug = \xff\xfe\n")
    runner = CliRunner()
    event = {"tool_name": "Task", "tool_input": {"subagent_type": "requirements-analyst"}}

    result = runner.invoke(cli, ["hook", "pre-task"], input=json.dumps(event))

    assert result.exit_code == 0, result.output
    response = json.loads(result.output.strip().splitlines()[-1])
    assert response["continue"] is False

    tier = runner.invoke(cli, ["backlog", "tier", "3"])
    assert tier.exit_code != 0
    assert "Cannot read" in tier.output


def test_hook_post_bash_reports_failure_and_persists(project: Path) -> None:
    _seed_workflow(project)
    runner = CliRunner()
    event = {
        "tool_name": "Bash",
        "tool_input": {"command": "npm test"},
        "tool_result": {"stdout": "FAIL src/app.test.js\nTests: 1 failed, 1 total", "exitCode": 1},
    }

    result = runner.invoke(cli, ["hook", "post-bash"], input=json.dumps(event))

    assert result.exit_code == 0, result.output
    assert "TESTS FAILED (iteration 1/10)" in result.output
    state = json.loads((project / ".isdlc" / "state.json").read_text(encoding="utf-8"))
    assert state["phases"][PHASE]["iteration_requirements"]["test_iteration"]["failures_count"] == 1


def test_hook_ignores_empty_or_invalid_input(project: Path) -> None:
    runner = CliRunner()

    empty = runner.invoke(cli, ["hook", "pre-task"], input="")
    assert empty.exit_code == 0
    assert empty.output == ""

    invalid = runner.invoke(cli, ["hook", "post-write"], input="{not json")
    assert invalid.exit_code == 0
    assert invalid.output == ""


def test_state_prune_and_snapshot(project: Path) -> None:
    _seed_workflow(project)
    state_path = project / ".isdlc" / "state.json"
    seeded = json.loads(state_path.read_text(encoding="utf-8"))
    seeded["pending_escalations"] = [{"type": "constitution_blocked", "n": n} for n in range(25)]
    state_path.write_text(json.dumps(seeded), encoding="utf-8")
    runner = CliRunner()

    pruned = runner.invoke(cli, ["state", "prune"])
    assert pruned.exit_code == 0, pruned.output
    state = json.loads((project / ".isdlc" / "state.json").read_text(encoding="utf-8"))
    assert len(state["history"]) == 50
    assert [entry["n"] for entry in state["pending_escalations"]] == list(range(5, 25))

    snapshot = runner.invoke(cli, ["state", "snapshot"])
    assert snapshot.exit_code == 0, snapshot.output
    assert json.loads(snapshot.output)["metrics"]["total_phases"] == 0


def test_state_commands_require_state(project: Path) -> None:
    result = CliRunner().invoke(cli, ["state", "snapshot"])

    assert result.exit_code != 0
    assert "No readable state document" in result.output
