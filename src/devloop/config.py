from __future__ import annotations

import json
import tomllib
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Literal

from devloop.errors import ConfigError

BackendName = Literal["codex", "claude"]


@dataclass(slots=True)
class ProjectConfig:
    name: str = "my-project"
    verify_command: str = "./scripts/verify-completion.sh --format json"
    verify_timeout_seconds: float = 900.0
    pass_changed_files: bool = False
    unclear_blocks: bool = False


@dataclass(slots=True)
class BackendConfig:
    primary: BackendName = "claude"
    fallback: BackendName = "codex"
    max_retries: int = 1
    retry_backoff_seconds: float = 0.5
    timeout_seconds: float = 900.0


@dataclass(slots=True)
class AgentsConfig:
    implementer_model: str = ""
    reviewer_model: str = ""


@dataclass(slots=True)
class ReviewConfig:
    reviewers: list[str] = field(
        default_factory=lambda: ["security-reviewer", "test-reviewer", "code-reviewer"]
    )
    checklist_dir: str = ""
    max_iterations: int = 5
    similarity_threshold: float = 0.85


@dataclass(slots=True)
class BudgetConfig:
    planning_timeout_seconds: float = 600.0
    planning_max_rounds: int = 3
    implementation_timeout_seconds: float = 1800.0
    implementation_max_attempts: int = 3
    validation_timeout_seconds: float = 900.0
    validation_max_rounds: int = 5
    code_review_timeout_seconds: float = 1200.0
    reflection_timeout_seconds: float = 600.0
    run_timeout_seconds: float = 3600.0


@dataclass(slots=True)
class StateConfig:
    state_dir: str = ".devloop"
    knowledge_dir: str = ".devloop/knowledge"


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"
    file: str = ""


SECTION_ORDER = ("project", "backend", "agents", "review", "budget", "state", "logging")


@dataclass(slots=True)
class DevloopConfig:
    project: ProjectConfig = field(default_factory=ProjectConfig)
    backend: BackendConfig = field(default_factory=BackendConfig)
    agents: AgentsConfig = field(default_factory=AgentsConfig)
    review: ReviewConfig = field(default_factory=ReviewConfig)
    budget: BudgetConfig = field(default_factory=BudgetConfig)
    state: StateConfig = field(default_factory=StateConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def default(cls) -> DevloopConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DevloopConfig:
        sections = {
            "project": ProjectConfig,
            "backend": BackendConfig,
            "agents": AgentsConfig,
            "review": ReviewConfig,
            "budget": BudgetConfig,
            "state": StateConfig,
            "logging": LoggingConfig,
        }
        unknown = sorted(set(data) - set(sections))
        if unknown:
            raise ConfigError(f"Unknown configuration section(s): {', '.join(unknown)}")
        kwargs: dict[str, Any] = {}
        for name, section_cls in sections.items():
            raw = data.get(name, {})
            if not isinstance(raw, dict):
                raise ConfigError(f"Section [{name}] must be a table.")
            allowed = {item.name for item in fields(section_cls)}
            bad_keys = sorted(set(raw) - allowed)
            if bad_keys:
                raise ConfigError(f"Unknown key(s) in [{name}]: {', '.join(bad_keys)}")
            kwargs[name] = section_cls(**raw)
        config = cls(**kwargs)
        config.validate()
        return config

    def validate(self) -> None:
        if self.backend.primary not in ("codex", "claude"):
            raise ConfigError(f"Unsupported primary backend: {self.backend.primary}")
        if self.backend.fallback not in ("codex", "claude"):
            raise ConfigError(f"Unsupported fallback backend: {self.backend.fallback}")
        if self.review.max_iterations < 1:
            raise ConfigError("review.max_iterations must be at least 1.")
        if not self.review.reviewers:
            raise ConfigError("review.reviewers must name at least one reviewer role.")
        if len(set(self.review.reviewers)) != len(self.review.reviewers):
            raise ConfigError("review.reviewers contains duplicate roles.")
        if "implementer" in self.review.reviewers:
            raise ConfigError("'implementer' is reserved and cannot be a reviewer role.")
        if not 0.0 < self.review.similarity_threshold <= 1.0:
            raise ConfigError("review.similarity_threshold must be in (0, 1].")

    def to_dict(self) -> dict[str, dict[str, Any]]:
        return {name: asdict(getattr(self, name)) for name in SECTION_ORDER}


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        if not rendered:
            return "0.0"
        return rendered if "." in rendered else f"{rendered}.0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: DevloopConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    for section in SECTION_ORDER:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> DevloopConfig:
    if not path.exists():
        return DevloopConfig.default()
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except (OSError, tomllib.TOMLDecodeError) as exc:
        raise ConfigError(f"Could not read config {path}: {exc}") from exc
    try:
        return DevloopConfig.from_dict(data)
    except TypeError as exc:
        raise ConfigError(f"Invalid config {path}: {exc}") from exc


def save_config(path: Path, config: DevloopConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
