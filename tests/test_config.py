import tomllib
from pathlib import Path

import pytest

from taskpilot import __version__
from taskpilot.config import TaskpilotConfig, dumps_toml, load_config, save_config
from taskpilot.errors import ConfigError


def test_config_roundtrip(tmp_path: Path) -> None:
    config_path = tmp_path / "taskpilot.toml"
    config = TaskpilotConfig.default()
    config.project.name = "taskpilot-test"
    config.project.default_assignee = "CLAUDE_CLI"
    config.agents.timeout_seconds = 90.5
    config.agents.mock_command = "python3"
    config.agents.mock_args = ["-c", "print('ok')"]
    config.agents.enabled = ["CLAUDE_CLI", "MOCK_CLI"]
    config.supervisor.registry_backend = "memory"
    config.supervisor.heartbeat_interval_seconds = 5.0
    config.execution.stop_poll_attempts = 3
    config.state.state_file = "state/project.json"

    save_config(config_path, config)
    loaded = load_config(config_path)

    assert loaded.project.name == "taskpilot-test"
    assert loaded.project.default_assignee == "CLAUDE_CLI"
    assert loaded.agents.timeout_seconds == 90.5
    assert loaded.agents.mock_command == "python3"
    assert loaded.agents.mock_args == ["-c", "print('ok')"]
    assert loaded.agents.enabled == ["CLAUDE_CLI", "MOCK_CLI"]
    assert loaded.supervisor.registry_backend == "memory"
    assert loaded.supervisor.heartbeat_interval_seconds == 5.0
    assert loaded.supervisor.flush_debounce_seconds == 0.2
    assert loaded.execution.stop_poll_attempts == 3
    assert loaded.state.state_file == "state/project.json"


def test_missing_config_file_yields_defaults(tmp_path: Path) -> None:
    loaded = load_config(tmp_path / "absent.toml")

    assert loaded.project.default_assignee == "CODEX_CLI"
    assert loaded.agents.timeout_seconds == 3600.0
    assert loaded.supervisor.registry_path == ".taskpilot/agents.json"
    assert loaded.execution.stop_poll_seconds == 1.0
    assert loaded.execution.stop_poll_attempts == 15


def test_toml_dump_contains_every_section() -> None:
    rendered = dumps_toml(TaskpilotConfig.default())

    for section in ("project", "agents", "supervisor", "execution", "recovery", "state"):
        assert f"[{section}]" in rendered
    assert "startup_silence_seconds" in rendered
    assert "flush_debounce_seconds" in rendered
    assert 'registry_backend = "file"' in rendered


def test_unknown_config_key_is_rejected(tmp_path: Path) -> None:
    config_path = tmp_path / "taskpilot.toml"
    config_path.write_text('[project]\nname = "x"\ncolour = "blue"\n', encoding="utf-8")

    with pytest.raises(ConfigError, match="Invalid configuration"):
        load_config(config_path)


def test_invalid_values_are_rejected(tmp_path: Path) -> None:
    config_path = tmp_path / "taskpilot.toml"
    config_path.write_text('[project]\ndefault_assignee = "VIM"\n', encoding="utf-8")
    with pytest.raises(ConfigError, match="default_assignee"):
        load_config(config_path)

    config_path.write_text('[supervisor]\nregistry_backend = "redis"\n', encoding="utf-8")
    with pytest.raises(ConfigError, match="registry_backend"):
        load_config(config_path)

    config_path.write_text("[recovery]\nmax_attempts = -1\n", encoding="utf-8")
    with pytest.raises(ConfigError, match="recovery.max_attempts"):
        load_config(config_path)

    config_path.write_text("[project\n", encoding="utf-8")
    with pytest.raises(ConfigError, match="Invalid TOML"):
        load_config(config_path)


def test_package_version_constant_matches_pyproject() -> None:
    project_root = Path(__file__).resolve().parents[1]
    pyproject = tomllib.loads((project_root / "pyproject.toml").read_text(encoding="utf-8"))

    assert __version__ == pyproject["project"]["version"]
