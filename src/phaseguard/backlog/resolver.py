from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from phaseguard.backlog.analysis import generate_slug
from phaseguard.backlog.index import parse_backlog_line
from phaseguard.backlog.records import META_FILENAME, AnalysisRecord, read_meta

ITEM_NUMBER = re.compile(r"^\d+\.\d+$")
EXTERNAL_REFERENCE = re.compile(r"^(?:#\d+|[A-Za-z]+-\d+)$")


@dataclass(slots=True)
class ResolvedItem:
    slug: str
    directory: Path | None
    meta: AnalysisRecord | None
    strategy: str
    item_number: str | None = None
    title: str | None = None
    backlog_line: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "slug": self.slug,
            "dir": str(self.directory) if self.directory else None,
            "strategy": self.strategy,
            "item_number": self.item_number,
            "title": self.title,
            "meta": self.meta.to_dict() if self.meta else None,
        }


@dataclass(slots=True)
class Ambiguous:
    matches: list[ResolvedItem] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"multiple": True, "matches": [item.to_dict() for item in self.matches]}


def _item_dirs(requirements_dir: Path) -> list[Path]:
    if not requirements_dir.is_dir():
        return []
    return sorted(path for path in requirements_dir.iterdir() if path.is_dir())


def _has_meta(directory: Path) -> bool:
    return (directory / META_FILENAME).exists()


def find_dir_for_description(requirements_dir: Path, description: str) -> Path | None:
    desired = generate_slug(description)
    dirs = _item_dirs(requirements_dir)
    for directory in dirs:
        if directory.name == desired:
            return directory
    for directory in dirs:
        if directory.name.endswith("-" + desired) or desired in directory.name:
            return directory
    return None


def _from_backlog_line(
    line: str, requirements_dir: Path, strategy: str
) -> ResolvedItem | None:
    parsed = parse_backlog_line(line)
    if parsed is None:
        return None
    directory = find_dir_for_description(requirements_dir, parsed.description)
    return ResolvedItem(
        slug=directory.name if directory else generate_slug(parsed.description),
        directory=directory,
        meta=read_meta(directory) if directory else None,
        strategy=strategy,
        item_number=parsed.item_number,
        title=parsed.description,
        backlog_line=line,
    )


def _backlog_lines(backlog_path: Path) -> list[str]:
    if not backlog_path.exists():
        return []
    return backlog_path.read_text(encoding="utf-8").split("\n")


def find_by_item_number(
    backlog_path: Path, item_number: str, requirements_dir: Path
) -> ResolvedItem | None:
    for line in _backlog_lines(backlog_path):
        parsed = parse_backlog_line(line)
        if parsed is not None and parsed.item_number == item_number:
            return _from_backlog_line(line, requirements_dir, "item-number")
    return None


def find_by_external_reference(reference: str, requirements_dir: Path) -> ResolvedItem | None:
    normalized = f"GH-{reference[1:]}" if reference.startswith("#") else reference
    for directory in _item_dirs(requirements_dir):
        meta = read_meta(directory)
        if meta is None or not meta.source_id:
            continue
        if meta.source_id.lower() in {normalized.lower(), reference.lower()}:
            return ResolvedItem(
                slug=directory.name, directory=directory, meta=meta, strategy="external-reference"
            )
    return None


def search_backlog_titles(
    backlog_path: Path, query: str, requirements_dir: Path
) -> list[ResolvedItem]:
    needle = query.lower()
    matches: list[ResolvedItem] = []
    for line in _backlog_lines(backlog_path):
        parsed = parse_backlog_line(line)
        if parsed is None or needle not in parsed.description.lower():
            continue
        item = _from_backlog_line(line, requirements_dir, "fuzzy")
        if item is not None:
            matches.append(item)
    return matches


def resolve_item(
    query: Any, requirements_dir: Path, backlog_path: Path
) -> ResolvedItem | Ambiguous | None:
    if not isinstance(query, str) or not query.strip():
        return None
    text = query.strip()

    exact = requirements_dir / text
    if "/" not in text and _has_meta(exact):
        return ResolvedItem(
            slug=text, directory=exact, meta=read_meta(exact), strategy="exact-slug"
        )

    for directory in _item_dirs(requirements_dir):
        if directory.name.endswith("-" + text) and _has_meta(directory):
            return ResolvedItem(
                slug=directory.name,
                directory=directory,
                meta=read_meta(directory),
                strategy="partial-slug",
            )

    if ITEM_NUMBER.match(text):
        found = find_by_item_number(backlog_path, text, requirements_dir)
        if found is not None:
            return found

    if EXTERNAL_REFERENCE.match(text):
        found = find_by_external_reference(text, requirements_dir)
        if found is not None:
            return found

    matches = search_backlog_titles(backlog_path, text, requirements_dir)
    if len(matches) == 1:
        return matches[0]
    if matches:
        return Ambiguous(matches=matches)
    return None
