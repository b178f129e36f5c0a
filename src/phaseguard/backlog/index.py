from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path

MARKER_PATTERN = re.compile(r"^(\s*-\s+)(\d+\.\d+)\s+\[([ ~Ax])\]\s+(.+)$")
OPEN_HEADING = re.compile(r"^##\s+Open")
ANY_HEADING = re.compile(r"^##\s")
EMPTY_BACKLOG = "# Backlog\n\n## Open\n\n## Completed\n"


@dataclass(slots=True, frozen=True)
class BacklogLine:
    prefix: str
    item_number: str
    marker: str
    description: str

    def render(self, marker: str | None = None) -> str:
        return f"{self.prefix}{self.item_number} [{marker or self.marker}] {self.description}"


def parse_backlog_line(line: str) -> BacklogLine | None:
    match = MARKER_PATTERN.match(line)
    if match is None:
        return None
    return BacklogLine(
        prefix=match.group(1),
        item_number=match.group(2),
        marker=match.group(3),
        description=match.group(4),
    )


def read_backlog_lines(backlog_path: Path) -> list[BacklogLine]:
    if not backlog_path.exists():
        return []
    parsed = (
        parse_backlog_line(line)
        for line in backlog_path.read_text(encoding="utf-8").split("\n")
    )
    return [item for item in parsed if item is not None]


def update_backlog_marker(backlog_path: Path, slug: str, marker: str) -> bool:
    if not backlog_path.exists():
        return False
    lines = backlog_path.read_text(encoding="utf-8").split("\n")
    needle = slug.lower()
    for index, line in enumerate(lines):
        item = parse_backlog_line(line)
        if item is None:
            continue
        text = item.description.lower()
        if needle in text or re.sub(r"\s+", "-", text) in needle:
            lines[index] = item.render(marker)
            backlog_path.write_text("\n".join(lines), encoding="utf-8")
            return True
    return False


def next_item_number(backlog_path: Path) -> str:
    numbers = [
        tuple(int(part) for part in item.item_number.split("."))
        for item in read_backlog_lines(backlog_path)
    ]
    if not numbers:
        return "1.1"
    major, minor = max(numbers)
    return f"{major}.{minor + 1}"


def append_to_backlog(
    backlog_path: Path, item_number: str, description: str, marker: str = " "
) -> None:
    if not backlog_path.exists():
        backlog_path.parent.mkdir(parents=True, exist_ok=True)
        backlog_path.write_text(EMPTY_BACKLOG, encoding="utf-8")

    lines = backlog_path.read_text(encoding="utf-8").split("\n")
    new_line = f"- {item_number} [{marker}] {description}"
    open_index = next(
        (index for index, line in enumerate(lines) if OPEN_HEADING.match(line)), None
    )
    if open_index is None:
        lines.extend(["", "## Open", new_line, ""])
        backlog_path.write_text("\n".join(lines), encoding="utf-8")
        return

    section_end = open_index + 1
    while section_end < len(lines) and not ANY_HEADING.match(lines[section_end]):
        section_end += 1
    insert_at = section_end
    while insert_at > open_index + 1 and not lines[insert_at - 1].strip():
        insert_at -= 1
    if insert_at == open_index + 1:
        lines[insert_at:insert_at] = ["", new_line]
    else:
        lines.insert(insert_at, new_line)
    backlog_path.write_text("\n".join(lines), encoding="utf-8")
