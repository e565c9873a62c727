from __future__ import annotations

import json
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

from sprint_runner.errors import ConfigurationError

BackendName = Literal["codex", "claude"]

DEFAULT_CONFIG_FILENAME = "sprint-runner.toml"
SLUG_INVALID_PATTERN = re.compile(r"[^a-z0-9-]")


def prefix_to_slug(prefix: str) -> str:
    return SLUG_INVALID_PATTERN.sub("", re.sub(r"\s+", "-", prefix.strip().lower()))


@dataclass(slots=True)
class ProjectConfig:
    name: str = "my-project"
    path: str = "."
    base_branch: str = "main"
    branch_pattern: str = "{prefix}/{sprint}/issue-{issue}"
    worktree_base: str = "../sprint-worktrees"
    auto_merge: bool = True
    squash_merge: bool = True


@dataclass(slots=True)
class AgentConfig:
    backend: BackendName = "claude"
    binary: str = ""
    model: str = ""
    challenger_model: str = ""
    session_timeout_seconds: float = 600.0


@dataclass(slots=True)
class SprintConfig:
    number: int = 1
    prefix: str = "Sprint"
    max_parallel_sessions: int = 4
    max_issues: int = 8
    max_retries: int = 2
    max_drift_incidents: int = 2
    drift_threshold: float = 0.0
    enable_challenger: bool = True
    auto_revert_drift: bool = False


@dataclass(slots=True)
class QualityGatesConfig:
    require_tests: bool = True
    require_lint: bool = True
    require_types: bool = True
    require_build: bool = True
    max_diff_lines: int = 300
    test_command: str = "python -m pytest -q"
    lint_command: str = "ruff check ."
    type_check_command: str = "mypy ."
    build_command: str = "python -m compileall -q ."
    test_file_patterns: list[str] = field(
        default_factory=lambda: ["**/test_*.py", "**/*_test.py", "**/*.test.*"]
    )


@dataclass(slots=True)
class NotificationsConfig:
    ntfy_enabled: bool = False
    ntfy_topic: str = ""
    ntfy_server: str = "https://ntfy.sh"


@dataclass(slots=True)
class RunnerConfig:
    project: ProjectConfig = field(default_factory=ProjectConfig)
    agent: AgentConfig = field(default_factory=AgentConfig)
    sprint: SprintConfig = field(default_factory=SprintConfig)
    quality_gates: QualityGatesConfig = field(default_factory=QualityGatesConfig)
    notifications: NotificationsConfig = field(default_factory=NotificationsConfig)

    @classmethod
    def default(cls) -> RunnerConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> RunnerConfig:
        try:
            config = cls(
                project=ProjectConfig(**data.get("project", {})),
                agent=AgentConfig(**data.get("agent", {})),
                sprint=SprintConfig(**data.get("sprint", {})),
                quality_gates=QualityGatesConfig(**data.get("quality_gates", {})),
                notifications=NotificationsConfig(**data.get("notifications", {})),
            )
        except TypeError as exc:
            raise ConfigurationError(f"Unknown configuration key: {exc}") from exc
        config.validate()
        return config

    @property
    def slug(self) -> str:
        return prefix_to_slug(self.sprint.prefix)

    def project_root(self, base: Path | None = None) -> Path:
        root = Path(self.project.path)
        if not root.is_absolute() and base is not None:
            root = base / root
        return root.resolve()

    def branch_name(self, issue_number: int) -> str:
        return self.project.branch_pattern.format(
            prefix=self.slug, sprint=self.sprint.number, issue=issue_number
        )

    def validate(self) -> None:
        problems: list[str] = []
        if self.agent.backend not in {"claude", "codex"}:
            problems.append(f"agent.backend must be 'claude' or 'codex', got {self.agent.backend!r}")
        if self.agent.session_timeout_seconds <= 0:
            problems.append("agent.session_timeout_seconds must be positive")
        if self.sprint.number < 1:
            problems.append("sprint.number must be at least 1")
        if not self.slug:
            problems.append(f"sprint.prefix {self.sprint.prefix!r} produces an empty slug")
        if self.sprint.max_parallel_sessions < 1:
            problems.append("sprint.max_parallel_sessions must be at least 1")
        if self.sprint.max_issues < 1:
            problems.append("sprint.max_issues must be at least 1")
        if self.sprint.max_retries < 0:
            problems.append("sprint.max_retries must not be negative")
        if self.sprint.max_drift_incidents < 0:
            problems.append("sprint.max_drift_incidents must not be negative")
        if not 0.0 <= self.sprint.drift_threshold <= 1.0:
            problems.append("sprint.drift_threshold must be between 0 and 1")
        if self.quality_gates.max_diff_lines < 0:
            problems.append("quality_gates.max_diff_lines must not be negative")
        if "{issue}" not in self.project.branch_pattern:
            problems.append("project.branch_pattern must contain '{issue}'")
        if self.notifications.ntfy_enabled and not self.notifications.ntfy_topic.strip():
            problems.append("notifications.ntfy_topic is required when ntfy is enabled")
        if problems:
            raise ConfigurationError(
                "Invalid configuration: " + "; ".join(problems) + ". Fix the config file and retry."
            )

    def to_dict(self) -> dict:
        return {
            "project": {
                "name": self.project.name,
                "path": self.project.path,
                "base_branch": self.project.base_branch,
                "branch_pattern": self.project.branch_pattern,
                "worktree_base": self.project.worktree_base,
                "auto_merge": self.project.auto_merge,
                "squash_merge": self.project.squash_merge,
            },
            "agent": {
                "backend": self.agent.backend,
                "binary": self.agent.binary,
                "model": self.agent.model,
                "challenger_model": self.agent.challenger_model,
                "session_timeout_seconds": self.agent.session_timeout_seconds,
            },
            "sprint": {
                "number": self.sprint.number,
                "prefix": self.sprint.prefix,
                "max_parallel_sessions": self.sprint.max_parallel_sessions,
                "max_issues": self.sprint.max_issues,
                "max_retries": self.sprint.max_retries,
                "max_drift_incidents": self.sprint.max_drift_incidents,
                "drift_threshold": self.sprint.drift_threshold,
                "enable_challenger": self.sprint.enable_challenger,
                "auto_revert_drift": self.sprint.auto_revert_drift,
            },
            "quality_gates": {
                "require_tests": self.quality_gates.require_tests,
                "require_lint": self.quality_gates.require_lint,
                "require_types": self.quality_gates.require_types,
                "require_build": self.quality_gates.require_build,
                "max_diff_lines": self.quality_gates.max_diff_lines,
                "test_command": self.quality_gates.test_command,
                "lint_command": self.quality_gates.lint_command,
                "type_check_command": self.quality_gates.type_check_command,
                "build_command": self.quality_gates.build_command,
                "test_file_patterns": list(self.quality_gates.test_file_patterns),
            },
            "notifications": {
                "ntfy_enabled": self.notifications.ntfy_enabled,
                "ntfy_topic": self.notifications.ntfy_topic,
                "ntfy_server": self.notifications.ntfy_server,
            },
        }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        return repr(value)
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: RunnerConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = ["project", "agent", "sprint", "quality_gates", "notifications"]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> RunnerConfig:
    if not path.exists():
        return RunnerConfig.default()
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigurationError(f"Cannot parse {path}: {exc}") from exc
    return RunnerConfig.from_dict(data)


def save_config(path: Path, config: RunnerConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
