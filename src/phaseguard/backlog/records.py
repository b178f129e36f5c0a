from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

from phaseguard.backlog.analysis import ANALYSIS_PHASES, derive_analysis_status
from phaseguard.state.store import read_json_document, utcnow_iso, write_json_document

META_FILENAME = "meta.json"
SCHEMA_VERSION = 2


def _migrate_v1(raw: dict[str, Any]) -> dict[str, Any]:
    legacy = raw.pop("phase_a_completed", None)
    if legacy is not None and "phases_completed" not in raw:
        raw["phases_completed"] = list(ANALYSIS_PHASES) if legacy is True else []
    return raw


MIGRATIONS: dict[int, Callable[[dict[str, Any]], dict[str, Any]]] = {1: _migrate_v1}


def migrate_record(raw: dict[str, Any]) -> dict[str, Any]:
    version = raw.get("schema_version")
    if not isinstance(version, int) or version < 1:
        version = 1
    while version < SCHEMA_VERSION:
        raw = MIGRATIONS[version](raw)
        version += 1
    raw["schema_version"] = SCHEMA_VERSION
    return raw


def _as_list(value: Any) -> list[Any]:
    return list(value) if isinstance(value, list) else []


def _as_dict(value: Any) -> dict[str, Any]:
    return dict(value) if isinstance(value, dict) else {}


@dataclass(slots=True)
class AnalysisRecord:
    description: str = ""
    slug: str = ""
    source: str = "manual"
    source_id: str | None = None
    created_at: str = field(default_factory=utcnow_iso)
    phases_completed: list[str] = field(default_factory=list)
    steps_completed: list[str] = field(default_factory=list)
    depth_overrides: dict[str, Any] = field(default_factory=dict)
    codebase_hash: str | None = None
    sizing_decision: dict[str, Any] | None = None
    elaborations: list[dict[str, Any]] = field(default_factory=list)
    elaboration_config: dict[str, Any] = field(default_factory=dict)
    recommended_tier: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def analysis_status(self) -> str:
        return derive_analysis_status(self.phases_completed, self.sizing_decision)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AnalysisRecord:
        raw = migrate_record(dict(data))
        known = {item.name for item in fields(cls)} - {"extra"}
        sizing = raw.get("sizing_decision")
        record = cls(
            description=str(raw.get("description") or ""),
            slug=str(raw.get("slug") or ""),
            source=str(raw.get("source") or "manual"),
            source_id=raw.get("source_id") if isinstance(raw.get("source_id"), str) else None,
            created_at=str(raw.get("created_at") or utcnow_iso()),
            phases_completed=[str(item) for item in _as_list(raw.get("phases_completed"))],
            steps_completed=[str(item) for item in _as_list(raw.get("steps_completed"))],
            depth_overrides=_as_dict(raw.get("depth_overrides")),
            codebase_hash=raw.get("codebase_hash") or None,
            sizing_decision=dict(sizing) if isinstance(sizing, dict) else None,
            elaborations=_as_list(raw.get("elaborations")),
            elaboration_config=_as_dict(raw.get("elaboration_config")),
            recommended_tier=raw.get("recommended_tier") or None,
        )
        record.extra = {
            key: value
            for key, value in raw.items()
            if key not in known and key not in {"schema_version", "analysis_status"}
        }
        return record

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = dict(self.extra)
        payload.update(
            {
                "schema_version": SCHEMA_VERSION,
                "description": self.description,
                "slug": self.slug,
                "source": self.source,
                "source_id": self.source_id,
                "created_at": self.created_at,
                "analysis_status": self.analysis_status,
                "phases_completed": list(self.phases_completed),
                "steps_completed": list(self.steps_completed),
                "depth_overrides": dict(self.depth_overrides),
                "codebase_hash": self.codebase_hash,
                "sizing_decision": self.sizing_decision,
                "elaborations": list(self.elaborations),
                "elaboration_config": dict(self.elaboration_config),
                "recommended_tier": self.recommended_tier,
            }
        )
        return payload


def read_meta(slug_dir: Path) -> AnalysisRecord | None:
    payload = read_json_document(slug_dir / META_FILENAME)
    if not isinstance(payload, dict):
        return None
    return AnalysisRecord.from_dict(payload)


def write_meta(slug_dir: Path, record: AnalysisRecord) -> None:
    write_json_document(slug_dir / META_FILENAME, record.to_dict())
