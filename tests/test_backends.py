import asyncio
import errno
import sys
from pathlib import Path

import pytest

from taskpilot import mock_agent
from taskpilot.backends import build_adapter, classify_adapter_failure
from taskpilot.backends.adapters import CLAUDE_BASE_ARGS, CODEX_BASE_ARGS
from taskpilot.backends.dispatcher import DispatchRequest, SupervisorDispatcher
from taskpilot.backends.failures import classify_failure_text
from taskpilot.config import AgentsConfig, SupervisorConfig
from taskpilot.errors import AgentFailureError, ValidationError
from taskpilot.supervisor import AgentSupervisor


def test_codex_plan_reads_prompt_from_stdin() -> None:
    adapter = build_adapter("CODEX_CLI", AgentsConfig())

    plan = adapter.build_plan("do it", resume=False, prompt_file="/tmp/p.md")
    assert plan.command == "codex"
    assert plan.args == [*CODEX_BASE_ARGS, "-"]
    assert plan.stdin == "do it"

    resumed = adapter.build_plan("do it", resume=True, prompt_file="/tmp/p.md")
    assert resumed.args[:3] == ["exec", "resume", "--last"]
    assert resumed.args[-1] == "-"
    assert resumed.args.count("exec") == 1


def test_claude_and_gemini_resume_flags() -> None:
    agents = AgentsConfig(claude_command="claude-bin")
    claude = build_adapter("CLAUDE_CLI", agents)
    gemini = build_adapter("GEMINI_CLI", agents)

    assert claude.build_plan("x", resume=False, prompt_file="p").args == CLAUDE_BASE_ARGS
    assert claude.build_plan("x", resume=True, prompt_file="p").args[-1] == "--continue"
    assert claude.build_plan("x", resume=False, prompt_file="p").command == "claude-bin"
    assert gemini.build_plan("x", resume=False, prompt_file="p").args == ["--yolo", "--prompt", ""]
    assert gemini.build_plan("x", resume=True, prompt_file="p").args == [
        "--yolo",
        "--resume",
        "latest",
        "--prompt",
        "",
    ]


def test_mock_plan_passes_prompt_file() -> None:
    plan = build_adapter("MOCK_CLI", AgentsConfig()).build_plan(
        "x", resume=False, prompt_file="/tmp/p.md"
    )

    assert plan.command == "python3"
    assert plan.args == ["-m", "taskpilot.mock_agent", "/tmp/p.md"]
    assert plan.stdin is None


def test_build_adapter_rejects_disabled_or_unknown() -> None:
    agents = AgentsConfig(enabled=["MOCK_CLI"])

    with pytest.raises(ValidationError, match="not enabled: CODEX_CLI"):
        build_adapter("CODEX_CLI", agents)
    with pytest.raises(ValidationError, match="not enabled"):
        build_adapter("VIM", agents)


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ("request timed out after 30s", "timeout"),
        ("bash: codex: command not found", "missing-binary"),
        ("Error: 401 Unauthorized", "auth"),
        ("connect: connection refused by upstream", "network"),
        ("Segmentation fault", "unknown"),
    ],
)
def test_classify_failure_text(text: str, expected: str) -> None:
    assert classify_failure_text(text) == expected


def test_classify_adapter_failure_from_exceptions() -> None:
    assert classify_adapter_failure(FileNotFoundError(errno.ENOENT, "no such file")) == (
        "missing-binary"
    )
    assert classify_adapter_failure(TimeoutError()) == "timeout"
    assert classify_adapter_failure(ConnectionRefusedError()) == "network"
    assert classify_adapter_failure(OSError(errno.EHOSTUNREACH, "unreachable")) == "network"
    assert classify_adapter_failure(AgentFailureError("x", failure_kind="auth")) == "auth"
    assert classify_adapter_failure(AgentFailureError("token expired")) == "auth"
    assert classify_adapter_failure("plain failure") == "unknown"
    assert classify_failure_text("lookup failed", code="EAI_AGAIN") == "network"


def test_supervisor_dispatcher_runs_mock_worker(tmp_path: Path) -> None:
    agents = AgentsConfig(
        mock_command=sys.executable,
        mock_args=["-c", "import sys; print(open(sys.argv[1]).read().upper())"],
    )
    supervisor = AgentSupervisor(
        settings=SupervisorConfig(registry_backend="memory", heartbeat_interval_seconds=0)
    )
    dispatcher = SupervisorDispatcher(
        supervisor,
        lambda assignee: build_adapter(assignee, agents),
        cwd=tmp_path,
        project_name="demo",
        timeout_seconds=30,
        startup_silence_seconds=5,
    )

    result = asyncio.run(
        dispatcher.dispatch(
            DispatchRequest(
                assignee="MOCK_CLI", prompt="build it", phase_id="phase-1", task_id="task-1"
            )
        )
    )

    assert "BUILD IT" in result.stdout
    assert result.command == sys.executable
    assert (tmp_path / ".taskpilot" / "prompts" / "task-1.md").read_text(encoding="utf-8") == (
        "build it"
    )
    [agent] = supervisor.list()
    assert agent.adapter_id == "MOCK_CLI"
    assert agent.project_name == "demo"
    assert (agent.phase_id, agent.task_id) == ("phase-1", "task-1")
    assert agent.status == "STOPPED"


def test_supervisor_dispatcher_surfaces_worker_failure(tmp_path: Path) -> None:
    agents = AgentsConfig(mock_command=sys.executable, mock_args=["-c", "raise SystemExit(3)"])
    supervisor = AgentSupervisor(
        settings=SupervisorConfig(registry_backend="memory", heartbeat_interval_seconds=0)
    )
    dispatcher = SupervisorDispatcher(
        supervisor,
        lambda assignee: build_adapter(assignee, agents),
        cwd=tmp_path,
        project_name="demo",
        timeout_seconds=30,
    )

    with pytest.raises(AgentFailureError, match="exit code 3"):
        asyncio.run(dispatcher.dispatch(DispatchRequest(assignee="MOCK_CLI", prompt="x")))


def test_default_mock_worker_reports_task(tmp_path: Path) -> None:
    agents = AgentsConfig(mock_command=sys.executable)
    supervisor = AgentSupervisor(
        settings=SupervisorConfig(registry_backend="memory", heartbeat_interval_seconds=0)
    )
    dispatcher = SupervisorDispatcher(
        supervisor,
        lambda assignee: build_adapter(assignee, agents),
        cwd=tmp_path,
        project_name="demo",
        timeout_seconds=30,
    )

    result = asyncio.run(
        dispatcher.dispatch(
            DispatchRequest(assignee="MOCK_CLI", prompt="Intro\n\nTask: Write lexer\n\nMore")
        )
    )

    assert "Mock agent completed task: Write lexer" in result.stdout
    assert result.args[:2] == ["-m", "taskpilot.mock_agent"]


def test_mock_agent_main_handles_bad_arguments(tmp_path: Path, capsys) -> None:
    assert mock_agent.main([]) == 2
    assert "usage:" in capsys.readouterr().err
    assert mock_agent.main([str(tmp_path / "missing.md")]) == 1
    assert "Unable to read prompt file" in capsys.readouterr().err

    prompt = tmp_path / "prompt.md"
    prompt.write_text("no task header", encoding="utf-8")
    assert mock_agent.main([str(prompt)]) == 0
    assert "Mock agent completed task: (untitled)" in capsys.readouterr().out
