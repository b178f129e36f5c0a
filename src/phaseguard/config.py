from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Literal

EnforcementMode = Literal["strict", "warn", "audit", "observe"]
TrackerName = Literal["", "github", "jira"]

CONFIG_FILENAME = "phaseguard.toml"


class ConfigError(RuntimeError):
    """Raised when the engine configuration cannot be parsed."""


@dataclass(slots=True)
class EnforcementConfig:
    fail_open: bool = True
    default_mode: EnforcementMode = "strict"


@dataclass(slots=True)
class IterationConfig:
    default_max_iterations: int = 10
    default_circuit_breaker_threshold: int = 3
    default_policy_max_iterations: int = 5


@dataclass(slots=True)
class TierConfig:
    trivial_max_files: int = 2
    light_max_files: int = 8
    standard_max_files: int = 20

    def thresholds(self) -> dict[str, int]:
        return {
            "trivial": self.trivial_max_files,
            "light": self.light_max_files,
            "standard": self.standard_max_files,
        }


@dataclass(slots=True)
class PruningConfig:
    skill_usage_log_max: int = 20
    pending_escalations_max: int = 20
    history_max: int = 50
    workflow_history_max: int = 50
    text_max_chars: int = 200


@dataclass(slots=True)
class RegressionConfig:
    window: int = 5
    threshold: float = 0.20
    staleness_seconds: int = 120


@dataclass(slots=True)
class BacklogConfig:
    requirements_dir: str = "docs/requirements"
    backlog_file: str = "BACKLOG.md"
    tracker: TrackerName = ""
    project_key: str = ""


@dataclass(slots=True)
class LoggingConfig:
    debug: bool = False


@dataclass(slots=True)
class PhaseguardConfig:
    enforcement: EnforcementConfig = field(default_factory=EnforcementConfig)
    iteration: IterationConfig = field(default_factory=IterationConfig)
    tiers: TierConfig = field(default_factory=TierConfig)
    pruning: PruningConfig = field(default_factory=PruningConfig)
    regression: RegressionConfig = field(default_factory=RegressionConfig)
    backlog: BacklogConfig = field(default_factory=BacklogConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def default(cls) -> PhaseguardConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> PhaseguardConfig:
        try:
            return cls(
                enforcement=EnforcementConfig(**data.get("enforcement", {})),
                iteration=IterationConfig(**data.get("iteration", {})),
                tiers=TierConfig(**data.get("tiers", {})),
                pruning=PruningConfig(**data.get("pruning", {})),
                regression=RegressionConfig(**data.get("regression", {})),
                backlog=BacklogConfig(**data.get("backlog", {})),
                logging=LoggingConfig(**data.get("logging", {})),
            )
        except TypeError as exc:
            raise ConfigError(f"Invalid configuration: {exc}") from exc

    def to_dict(self) -> dict:
        return {
            section: {
                item.name: getattr(getattr(self, section), item.name)
                for item in fields(getattr(self, section))
            }
            for section in SECTION_ORDER
        }


SECTION_ORDER = [
    "enforcement",
    "iteration",
    "tiers",
    "pruning",
    "regression",
    "backlog",
    "logging",
]


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        return rendered if rendered else "0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: PhaseguardConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    for section in SECTION_ORDER:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> PhaseguardConfig:
    if not path.exists():
        return PhaseguardConfig.default()
    try:
        text = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise ConfigError(f"Cannot read {path}: {exc}") from exc
    try:
        data = tomllib.loads(text)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {path}: {exc}") from exc
    return PhaseguardConfig.from_dict(data)


def save_config(path: Path, config: PhaseguardConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
