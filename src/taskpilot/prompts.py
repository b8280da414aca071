from __future__ import annotations

from typing import Literal

from taskpilot.errors import ValidationError
from taskpilot.models import Phase, Task

WorkerArchetype = Literal["CODER", "FIXER"]

WORKER_SYSTEM_PROMPTS: dict[str, str] = {
    "CODER": "Implement the task with minimal, correct changes and keep the codebase coherent.",
    "FIXER": (
        "Resolve reported failures quickly with targeted fixes and clear verification steps."
    ),
}


def archetype_for_task(task: Task) -> WorkerArchetype:
    return "FIXER" if task.status == "CI_FIX" else "CODER"


def build_worker_prompt(
    *,
    project_name: str,
    root_dir: str,
    phase: Phase,
    task: Task,
    archetype: WorkerArchetype = "CODER",
) -> str:
    if archetype not in WORKER_SYSTEM_PROMPTS:
        raise ValidationError(f"Unknown worker archetype: {archetype}")
    lines = [
        f"Worker archetype: {archetype}",
        f"System prompt: {WORKER_SYSTEM_PROMPTS[archetype]}",
        f"You are implementing a coding task for the {project_name} project.",
        f"Repository root: {root_dir}",
        f"Phase: {phase.name}",
        f"Branch: {phase.branch_name}",
        f"Task: {task.title}",
        "Task description:",
        task.description,
        "Requirements:",
        "- Implement the task in this repository.\n"
        "- Run relevant validations/tests.\n"
        "- Return a concise summary of concrete changes and validation commands.\n"
        "- Commit all changes with a descriptive git commit message before declaring "
        "the task done.\n"
        "- Leave the repository in a clean state (no untracked or unstaged changes "
        "after your commit).",
    ]
    if archetype == "FIXER" and phase.ci_status_context:
        lines.extend(["CI failure context:", phase.ci_status_context])
    if task.error_logs:
        lines.extend(["Previous attempt error logs:", task.error_logs])
    return "\n\n".join(lines)
