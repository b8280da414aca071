from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

from taskpilot.errors import ConfigError

AdapterId = Literal["CODEX_CLI", "CLAUDE_CLI", "GEMINI_CLI", "MOCK_CLI"]
RegistryBackendName = Literal["file", "memory"]

CONFIG_FILE_NAME = "taskpilot.toml"


@dataclass(slots=True)
class ProjectConfig:
    name: str = "my-project"
    default_assignee: AdapterId = "CODEX_CLI"


@dataclass(slots=True)
class AgentsConfig:
    timeout_seconds: float = 3600.0
    startup_silence_seconds: float = 60.0
    codex_command: str = "codex"
    claude_command: str = "claude"
    gemini_command: str = "gemini"
    mock_command: str = "python3"
    mock_args: list[str] = field(default_factory=lambda: ["-m", "taskpilot.mock_agent"])
    enabled: list[str] = field(
        default_factory=lambda: ["CODEX_CLI", "CLAUDE_CLI", "GEMINI_CLI", "MOCK_CLI"]
    )


@dataclass(slots=True)
class SupervisorConfig:
    registry_backend: RegistryBackendName = "file"
    registry_path: str = ".taskpilot/agents.json"
    heartbeat_interval_seconds: float = 30.0
    idle_threshold_seconds: float = 120.0
    flush_debounce_seconds: float = 0.2


@dataclass(slots=True)
class ExecutionConfig:
    stop_poll_seconds: float = 1.0
    stop_poll_attempts: int = 15


@dataclass(slots=True)
class RecoveryConfig:
    max_attempts: int = 1


@dataclass(slots=True)
class StateConfig:
    state_file: str = ".taskpilot/state.json"


@dataclass(slots=True)
class TaskpilotConfig:
    project: ProjectConfig = field(default_factory=ProjectConfig)
    agents: AgentsConfig = field(default_factory=AgentsConfig)
    supervisor: SupervisorConfig = field(default_factory=SupervisorConfig)
    execution: ExecutionConfig = field(default_factory=ExecutionConfig)
    recovery: RecoveryConfig = field(default_factory=RecoveryConfig)
    state: StateConfig = field(default_factory=StateConfig)

    @classmethod
    def default(cls) -> TaskpilotConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> TaskpilotConfig:
        try:
            config = cls(
                project=ProjectConfig(**data.get("project", {})),
                agents=AgentsConfig(**data.get("agents", {})),
                supervisor=SupervisorConfig(**data.get("supervisor", {})),
                execution=ExecutionConfig(**data.get("execution", {})),
                recovery=RecoveryConfig(**data.get("recovery", {})),
                state=StateConfig(**data.get("state", {})),
            )
        except TypeError as exc:
            raise ConfigError(f"Invalid configuration: {exc}") from exc
        config.validate()
        return config

    def validate(self) -> None:
        known_adapters = ("CODEX_CLI", "CLAUDE_CLI", "GEMINI_CLI", "MOCK_CLI")
        if self.project.default_assignee not in known_adapters:
            raise ConfigError(
                f"project.default_assignee must be one of {', '.join(known_adapters)}."
            )
        unknown = [item for item in self.agents.enabled if item not in known_adapters]
        if unknown:
            raise ConfigError(f"agents.enabled contains unknown adapters: {', '.join(unknown)}")
        if self.supervisor.registry_backend not in ("file", "memory"):
            raise ConfigError("supervisor.registry_backend must be 'file' or 'memory'.")
        if self.agents.timeout_seconds <= 0:
            raise ConfigError("agents.timeout_seconds must be positive.")
        if self.execution.stop_poll_attempts < 1:
            raise ConfigError("execution.stop_poll_attempts must be at least 1.")
        if self.recovery.max_attempts < 0:
            raise ConfigError("recovery.max_attempts must not be negative.")

    def to_dict(self) -> dict:
        return {
            "project": {
                "name": self.project.name,
                "default_assignee": self.project.default_assignee,
            },
            "agents": {
                "timeout_seconds": self.agents.timeout_seconds,
                "startup_silence_seconds": self.agents.startup_silence_seconds,
                "codex_command": self.agents.codex_command,
                "claude_command": self.agents.claude_command,
                "gemini_command": self.agents.gemini_command,
                "mock_command": self.agents.mock_command,
                "mock_args": list(self.agents.mock_args),
                "enabled": list(self.agents.enabled),
            },
            "supervisor": {
                "registry_backend": self.supervisor.registry_backend,
                "registry_path": self.supervisor.registry_path,
                "heartbeat_interval_seconds": self.supervisor.heartbeat_interval_seconds,
                "idle_threshold_seconds": self.supervisor.idle_threshold_seconds,
                "flush_debounce_seconds": self.supervisor.flush_debounce_seconds,
            },
            "execution": {
                "stop_poll_seconds": self.execution.stop_poll_seconds,
                "stop_poll_attempts": self.execution.stop_poll_attempts,
            },
            "recovery": {
                "max_attempts": self.recovery.max_attempts,
            },
            "state": {
                "state_file": self.state.state_file,
            },
        }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0")
        return rendered + "0" if rendered.endswith(".") else rendered
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: TaskpilotConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = ["project", "agents", "supervisor", "execution", "recovery", "state"]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> TaskpilotConfig:
    if not path.exists():
        return TaskpilotConfig.default()
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {path}: {exc}") from exc
    return TaskpilotConfig.from_dict(data)


def save_config(path: Path, config: TaskpilotConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
