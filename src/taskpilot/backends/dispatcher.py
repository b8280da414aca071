from __future__ import annotations

import re
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from taskpilot.backends.adapters import CLIAdapter
from taskpilot.supervisor import AgentSupervisor, RunResult, StartAgentInput


@dataclass(slots=True)
class DispatchRequest:
    assignee: str
    prompt: str
    phase_id: str | None = None
    task_id: str | None = None
    resume: bool = False


@dataclass(slots=True)
class DispatchResult:
    command: str
    args: list[str]
    stdout: str
    stderr: str
    duration_ms: int


class WorkerDispatcher(Protocol):
    async def dispatch(self, request: DispatchRequest) -> DispatchResult: ...


AdapterFactory = Callable[[str], CLIAdapter]


def _safe_name(value: str) -> str:
    return re.sub(r"[^A-Za-z0-9._-]+", "-", value).strip("-") or "prompt"


class SupervisorDispatcher:
    """Run a worker CLI for one task through the agent supervisor."""

    def __init__(
        self,
        supervisor: AgentSupervisor,
        adapter_factory: AdapterFactory,
        *,
        cwd: Path,
        project_name: str,
        timeout_seconds: float,
        startup_silence_seconds: float | None = None,
        prompt_dir: Path | None = None,
    ) -> None:
        self.supervisor = supervisor
        self.adapter_factory = adapter_factory
        self.cwd = cwd
        self.project_name = project_name
        self.timeout_seconds = timeout_seconds
        self.startup_silence_seconds = startup_silence_seconds
        self.prompt_dir = prompt_dir or cwd / ".taskpilot" / "prompts"

    def _write_prompt_file(self, request: DispatchRequest, prompt: str) -> Path:
        self.prompt_dir.mkdir(parents=True, exist_ok=True)
        path = self.prompt_dir / f"{_safe_name(request.task_id or request.assignee)}.md"
        path.write_text(prompt, encoding="utf-8")
        return path

    async def dispatch(self, request: DispatchRequest) -> DispatchResult:
        adapter = self.adapter_factory(request.assignee)
        prompt_file = self._write_prompt_file(request, request.prompt)
        plan = adapter.build_plan(request.prompt, resume=request.resume, prompt_file=str(prompt_file))
        silence_ms = (
            int(self.startup_silence_seconds * 1000)
            if self.startup_silence_seconds and self.startup_silence_seconds > 0
            else None
        )
        result: RunResult = await self.supervisor.run_to_completion(
            StartAgentInput(
                name=f"{request.assignee} task worker",
                command=plan.command,
                args=plan.args,
                cwd=str(self.cwd),
                adapter_id=request.assignee,
                phase_id=request.phase_id,
                task_id=request.task_id,
                project_name=self.project_name,
                approved_adapter_spawn=True,
                stdin=plan.stdin,
                timeout_ms=int(self.timeout_seconds * 1000),
                startup_silence_timeout_ms=silence_ms,
            )
        )
        return DispatchResult(
            command=result.command,
            args=result.args,
            stdout=result.stdout,
            stderr=result.stderr,
            duration_ms=result.duration_ms,
        )
