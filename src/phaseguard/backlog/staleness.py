from __future__ import annotations

import logging
import re
import subprocess
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

logger = logging.getLogger(__name__)

Severity = Literal["none", "info", "warning", "fallback"]

DIRECT_FILES_HEADING = re.compile(r"^#{2,4}\s+Directly Affected Files\s*$", re.IGNORECASE)
SECTION_HEADING = re.compile(r"^#{1,6}\s")
TABLE_PATH_CELL = re.compile(r"^\|\s*`([^`]+)`\s*\|(.*)$")
INFO_OVERLAP_MAX = 3
COMMIT_HASH = re.compile(r"[0-9a-fA-F]{4,40}")


@dataclass(slots=True)
class StalenessResult:
    stale: bool
    original_hash: str | None
    current_hash: str | None
    commits_behind: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "stale": self.stale,
            "original_hash": self.original_hash,
            "current_hash": self.current_hash,
            "commits_behind": self.commits_behind,
        }


@dataclass(slots=True)
class BlastRadiusResult:
    stale: bool
    severity: Severity
    original_hash: str | None
    current_hash: str | None
    overlapping_files: list[str] = field(default_factory=list)
    changed_file_count: int = 0
    blast_radius_file_count: int = 0
    fallback_reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "stale": self.stale,
            "severity": self.severity,
            "overlapping_files": list(self.overlapping_files),
            "changed_file_count": self.changed_file_count,
            "blast_radius_file_count": self.blast_radius_file_count,
            "original_hash": self.original_hash,
            "current_hash": self.current_hash,
            "fallback_reason": self.fallback_reason,
        }


def _recorded_hash(meta: Any) -> str | None:
    if meta is None:
        return None
    if isinstance(meta, Mapping):
        value = meta.get("codebase_hash")
    else:
        value = getattr(meta, "codebase_hash", None)
    return value or None


def check_staleness(meta: Any, current_hash: str | None) -> StalenessResult:
    original = _recorded_hash(meta)
    if original is None:
        return StalenessResult(stale=False, original_hash=None, current_hash=current_hash)
    return StalenessResult(
        stale=original != current_hash, original_hash=original, current_hash=current_hash
    )


def extract_files_from_impact_analysis(markdown: str | None) -> list[str]:
    if not isinstance(markdown, str) or not markdown:
        return []

    files: list[str] = []
    in_section = False
    for line in markdown.split("\n"):
        stripped = line.strip()
        if DIRECT_FILES_HEADING.match(stripped):
            in_section = True
            continue
        if in_section and SECTION_HEADING.match(stripped):
            break
        if not in_section:
            continue
        match = TABLE_PATH_CELL.match(stripped)
        if match is None:
            continue
        if re.match(r"\s*NO CHANGE\s*\|", match.group(2)):
            continue
        path = match.group(1).strip()
        if path.startswith("./"):
            path = path[2:]
        if path and path not in files:
            files.append(path)
    return files


def _run_git(args: list[str], cwd: Path) -> subprocess.CompletedProcess[str]:
    return subprocess.run(
        ["git", "--no-pager", *args],
        cwd=cwd,
        text=True,
        capture_output=True,
    )


def current_codebase_hash(repo_root: Path) -> str | None:
    try:
        proc = _run_git(["rev-parse", "--short", "HEAD"], repo_root)
    except OSError:
        return None
    if proc.returncode != 0:
        return None
    return proc.stdout.strip() or None


def changed_files_since(repo_root: Path, original_hash: str) -> list[str] | None:
    if not COMMIT_HASH.fullmatch(str(original_hash)):
        logger.debug("Recorded codebase hash %r is not a commit hash", original_hash)
        return None
    try:
        proc = _run_git(["diff", "--name-only", f"{original_hash}..HEAD"], repo_root)
    except OSError as exc:
        logger.debug("git diff unavailable: %s", exc)
        return None
    if proc.returncode != 0:
        logger.debug("git diff failed: %s", proc.stderr.strip())
        return None
    return [line.strip() for line in proc.stdout.splitlines() if line.strip()]


def check_blast_radius_staleness(
    meta: Any,
    current_hash: str | None,
    impact_markdown: str | None,
    changed_files: Sequence[str] | None = None,
    repo_root: Path | None = None,
) -> BlastRadiusResult:
    original = _recorded_hash(meta)
    if original is None or original == current_hash:
        return BlastRadiusResult(
            stale=False, severity="none", original_hash=original, current_hash=current_hash
        )

    def _fallback(reason: str) -> BlastRadiusResult:
        return BlastRadiusResult(
            stale=True,
            severity="fallback",
            original_hash=original,
            current_hash=current_hash,
            fallback_reason=reason,
        )

    if not impact_markdown:
        return _fallback("no-impact-analysis")
    blast_radius = extract_files_from_impact_analysis(impact_markdown)
    if not blast_radius:
        return _fallback("no-parseable-table")

    if changed_files is None:
        changed = changed_files_since(repo_root or Path.cwd(), original)
        if changed is None:
            return _fallback("git-diff-failed")
    else:
        changed = list(changed_files)

    changed_set = {path[2:] if path.startswith("./") else path for path in changed}
    overlap = [path for path in blast_radius if path in changed_set]
    if not overlap:
        severity: Severity = "none"
    elif len(overlap) <= INFO_OVERLAP_MAX:
        severity = "info"
    else:
        severity = "warning"
    return BlastRadiusResult(
        stale=bool(overlap),
        severity=severity,
        original_hash=original,
        current_hash=current_hash,
        overlapping_files=overlap,
        changed_file_count=len(changed),
        blast_radius_file_count=len(blast_radius),
    )
