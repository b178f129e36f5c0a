from __future__ import annotations

import json
import logging
import os
import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

STATE_DIR = ".isdlc"
STATE_FILENAME = "state.json"
MONOREPO_FILENAME = "monorepo.json"
REQUIREMENTS_FILENAME = "iteration-requirements.json"
MANIFEST_FILENAME = "skills-manifest.json"

STATE_PATH_PATTERN = re.compile(r"\.isdlc[/\\](?:projects[/\\][^/\\]+[/\\])?state\.json$")


class StateStoreError(RuntimeError):
    """Raised when a state document cannot be persisted."""


def utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def is_state_path(file_path: str) -> bool:
    return bool(file_path) and STATE_PATH_PATTERN.search(file_path) is not None


def read_json_document(path: Path) -> Any:
    if not path.exists():
        return None
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError, UnicodeDecodeError):
        logger.debug("Unreadable JSON document: %s", path)
        return None


def write_json_document(path: Path, payload: Any) -> None:
    try:
        serialized = json.dumps(payload, ensure_ascii=False, indent=2)
    except (TypeError, ValueError) as exc:
        raise StateStoreError(f"State for {path} is not serializable: {exc}") from exc
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(serialized + "\n", encoding="utf-8")
    except OSError as exc:
        raise StateStoreError(f"Unable to write {path}: {exc}") from exc


def find_project_root(cwd: Path | None = None, env: Mapping[str, str] | None = None) -> Path:
    environ = os.environ if env is None else env
    explicit = environ.get("CLAUDE_PROJECT_DIR")
    if explicit:
        return Path(explicit).resolve()

    start = (cwd or Path.cwd()).resolve()
    for candidate in (start, *start.parents):
        if (candidate / STATE_DIR).is_dir():
            return candidate
    return start


def read_monorepo_config(project_root: Path) -> dict[str, Any] | None:
    payload = read_json_document(project_root / STATE_DIR / MONOREPO_FILENAME)
    return payload if isinstance(payload, dict) else None


def resolve_project_from_cwd(
    project_root: Path, cwd: Path, monorepo: Mapping[str, Any]
) -> str | None:
    projects = monorepo.get("projects")
    if not isinstance(projects, dict):
        return None
    try:
        relative_cwd = cwd.resolve().relative_to(project_root.resolve()).as_posix()
    except ValueError:
        return None
    if relative_cwd == ".":
        relative_cwd = ""

    best_match: str | None = None
    best_length = -1
    for project_id, project_config in projects.items():
        if not isinstance(project_config, dict):
            continue
        project_path = str(project_config.get("path") or "").rstrip("/")
        if not project_path:
            continue
        if relative_cwd == project_path or relative_cwd.startswith(project_path + "/"):
            if len(project_path) > best_length:
                best_match = str(project_id)
                best_length = len(project_path)
    return best_match


def resolve_active_project(
    project_root: Path,
    cwd: Path | None = None,
    env: Mapping[str, str] | None = None,
) -> str | None:
    monorepo = read_monorepo_config(project_root)
    if monorepo is None:
        return None

    environ = os.environ if env is None else env
    if environ.get("ISDLC_PROJECT"):
        return environ["ISDLC_PROJECT"]

    from_cwd = resolve_project_from_cwd(project_root, cwd or Path.cwd(), monorepo)
    if from_cwd:
        return from_cwd

    default_project = monorepo.get("default_project")
    return str(default_project) if default_project else None


@dataclass(slots=True)
class ProjectPaths:
    root: Path
    project_id: str | None = None

    @classmethod
    def discover(
        cls,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
        project_id: str | None = None,
    ) -> ProjectPaths:
        root = find_project_root(cwd, env)
        active = project_id or resolve_active_project(root, cwd, env)
        return cls(root=root, project_id=active)

    @property
    def state_dir(self) -> Path:
        return self.root / STATE_DIR

    @property
    def monorepo(self) -> bool:
        return (self.state_dir / MONOREPO_FILENAME).exists()

    @property
    def state_file(self) -> Path:
        if self.monorepo and self.project_id:
            return self.state_dir / "projects" / self.project_id / STATE_FILENAME
        return self.state_dir / STATE_FILENAME

    @property
    def constitution_file(self) -> Path:
        candidates: list[Path] = []
        if self.monorepo and self.project_id:
            candidates.append(
                self.root / "docs" / "isdlc" / "projects" / self.project_id / "constitution.md"
            )
        candidates.append(self.root / "docs" / "isdlc" / "constitution.md")
        candidates.append(self.state_dir / "constitution.md")
        for candidate in candidates:
            if candidate.exists():
                return candidate
        return candidates[0]

    def config_document(self, filename: str) -> Path | None:
        for candidate in (
            self.root / ".claude" / "hooks" / "config" / filename,
            self.state_dir / "config" / filename,
        ):
            if candidate.exists():
                return candidate
        return None


class StateStore:
    def __init__(self, paths: ProjectPaths) -> None:
        self.paths = paths

    @property
    def path(self) -> Path:
        return self.paths.state_file

    def read(self) -> dict[str, Any] | None:
        payload = read_json_document(self.path)
        if isinstance(payload, dict):
            return payload
        return None

    def write(self, state: dict[str, Any]) -> None:
        write_json_document(self.path, state)

    def update(self, updater: Callable[[dict[str, Any]], dict[str, Any]]) -> dict[str, Any] | None:
        current = self.read()
        if current is None:
            return None
        updated = updater(current)
        self.write(updated)
        return updated

    def _config_document(self, filename: str) -> dict[str, Any] | None:
        path = self.paths.config_document(filename)
        if path is None:
            return None
        payload = read_json_document(path)
        return payload if isinstance(payload, dict) else None

    def load_requirements(self) -> dict[str, Any] | None:
        return self._config_document(REQUIREMENTS_FILENAME)

    def load_manifest(self) -> dict[str, Any] | None:
        return self._config_document(MANIFEST_FILENAME)
