from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from taskpilot.config import AgentsConfig
from taskpilot.errors import ValidationError


@dataclass(slots=True)
class ExecutionPlan:
    command: str
    args: list[str]
    stdin: str | None = None


@dataclass(slots=True)
class CLIAdapter(ABC):
    """Maps an assignee id to a concrete non-interactive CLI invocation."""

    command: str
    base_args: list[str] = field(default_factory=list)

    adapter_id = ""

    @abstractmethod
    def build_plan(self, prompt: str, *, resume: bool, prompt_file: str) -> ExecutionPlan:
        """Return the argv and stdin for one worker run."""


@dataclass(slots=True)
class CodexAdapter(CLIAdapter):
    adapter_id = "CODEX_CLI"

    def build_plan(self, prompt: str, *, resume: bool, prompt_file: str) -> ExecutionPlan:
        if resume:
            rest = self.base_args[1:] if self.base_args[:1] == ["exec"] else self.base_args
            return ExecutionPlan(self.command, ["exec", "resume", "--last", *rest, "-"], prompt)
        return ExecutionPlan(self.command, [*self.base_args, "-"], prompt)


@dataclass(slots=True)
class ClaudeAdapter(CLIAdapter):
    adapter_id = "CLAUDE_CLI"

    def build_plan(self, prompt: str, *, resume: bool, prompt_file: str) -> ExecutionPlan:
        args = [*self.base_args, "--continue"] if resume else list(self.base_args)
        return ExecutionPlan(self.command, args, prompt)


@dataclass(slots=True)
class GeminiAdapter(CLIAdapter):
    adapter_id = "GEMINI_CLI"

    def build_plan(self, prompt: str, *, resume: bool, prompt_file: str) -> ExecutionPlan:
        if resume:
            args = [*self.base_args, "--resume", "latest", "--prompt", ""]
        else:
            args = [*self.base_args, "--prompt", ""]
        return ExecutionPlan(self.command, args, prompt)


@dataclass(slots=True)
class MockAdapter(CLIAdapter):
    adapter_id = "MOCK_CLI"

    def build_plan(self, prompt: str, *, resume: bool, prompt_file: str) -> ExecutionPlan:
        return ExecutionPlan(self.command, [*self.base_args, prompt_file])


CODEX_BASE_ARGS = ["exec", "--dangerously-bypass-approvals-and-sandbox"]
CLAUDE_BASE_ARGS = ["--print", "--dangerously-skip-permissions"]
GEMINI_BASE_ARGS = ["--yolo"]


def build_adapter(adapter_id: str, agents: AgentsConfig) -> CLIAdapter:
    if adapter_id not in agents.enabled:
        raise ValidationError(f"Adapter is not enabled: {adapter_id}")
    if adapter_id == "CODEX_CLI":
        return CodexAdapter(agents.codex_command, list(CODEX_BASE_ARGS))
    if adapter_id == "CLAUDE_CLI":
        return ClaudeAdapter(agents.claude_command, list(CLAUDE_BASE_ARGS))
    if adapter_id == "GEMINI_CLI":
        return GeminiAdapter(agents.gemini_command, list(GEMINI_BASE_ARGS))
    if adapter_id == "MOCK_CLI":
        return MockAdapter(agents.mock_command, list(agents.mock_args))
    raise ValidationError(f"Unknown adapter: {adapter_id}")
