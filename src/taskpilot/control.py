from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol
from urllib.parse import urlparse

from taskpilot.backends.dispatcher import DispatchRequest, WorkerDispatcher
from taskpilot.backends.failures import classify_adapter_failure, classify_failure_text
from taskpilot.completion import CapabilityChecker, derive_contracts, run_preflight, verify_completion
from taskpilot.errors import (
    NotFoundError,
    PhasePreflightError,
    StateError,
    TaskpilotError,
    ValidationError,
)
from taskpilot.events import EventContext, EventListener, TaskLifecycleEvent
from taskpilot.models import (
    ADAPTER_IDS,
    PHASE_FAILURE_KINDS,
    PHASE_STATUSES,
    UNASSIGNED,
    Phase,
    ProjectState,
    RecoveryAttemptRecord,
    Task,
    cap_persisted_text,
)
from taskpilot.prompts import archetype_for_task, build_worker_prompt
from taskpilot.state.agent_registry import AgentView
from taskpilot.state.engine import StateEngine

logger = logging.getLogger(__name__)

STARTABLE_STATUSES = {"TODO", "CI_FIX", "FAILED"}
CI_FIX_TITLE_PREFIX = "CI_FIX: "
CI_PIPELINE_CHECK = "CI pipeline (FAILURE)"


class RepositoryOps(CapabilityChecker, Protocol):
    def hard_reset(self) -> None: ...


@dataclass(slots=True)
class _TaskRun:
    phase_id: str
    task_id: str
    assignee: str
    contracts: list[str]
    resume: bool
    was_ci_fix: bool
    prompt: str


def _locate_phase(state: ProjectState, phase_id: str) -> Phase:
    phase = state.find_phase(phase_id)
    if phase is None:
        raise NotFoundError(f"Phase not found: {phase_id}")
    return phase


def _locate_task(state: ProjectState, phase_id: str, task_id: str) -> tuple[Phase, Task]:
    phase = _locate_phase(state, phase_id)
    task = phase.find_task(task_id)
    if task is None:
        raise NotFoundError(f"Task not found: {task_id}")
    return phase, task


def _require_text(value: str, label: str) -> str:
    if not value or not value.strip():
        raise ValidationError(f"{label} must not be empty.")
    return value.strip()


def _clear_task_outcome(task: Task) -> None:
    task.result_context = None
    task.error_logs = None
    task.error_category = None
    task.adapter_failure_kind = None
    task.completion_verification = None


def _normalize_check_name(name: str) -> str:
    return " ".join(name.split()) or "unknown-check"


def _ci_fix_description(phase: Phase, check_name: str) -> str:
    lines = [f'Resolve the failing CI check "{check_name}".', ""]
    if phase.pr_url:
        lines.append(f"PR: {phase.pr_url}")
    lines.extend(
        [
            f"Check: {check_name}",
            "",
            "Next action: inspect the check logs, apply the smallest fix, and rerun CI.",
        ]
    )
    return "\n".join(lines)


def _find_cycle(tasks: dict[str, list[str]], start: str) -> bool:
    stack = list(tasks.get(start, []))
    seen: set[str] = set()
    while stack:
        current = stack.pop()
        if current == start:
            return True
        if current in seen:
            continue
        seen.add(current)
        stack.extend(tasks.get(current, []))
    return False


class ControlCenterService:
    """Phase and task state machine on top of the project state document."""

    def __init__(
        self,
        state: StateEngine,
        *,
        dispatcher: WorkerDispatcher | None = None,
        repository: RepositoryOps | None = None,
        on_event: EventListener | None = None,
        max_recovery_attempts: int = 1,
    ) -> None:
        if max_recovery_attempts < 0:
            raise ValidationError("max_recovery_attempts must not be negative.")
        self.state = state
        self.dispatcher = dispatcher
        self.repository = repository
        self.on_event = on_event
        self.max_recovery_attempts = max_recovery_attempts
        self._background: set[asyncio.Task[ProjectState]] = set()

    # reads

    def ensure_initialized(self, project_name: str, root_dir: Path) -> ProjectState:
        return self.state.initialize(_require_text(project_name, "project name"), root_dir)

    def get_state(self) -> ProjectState:
        return self.state.read()

    def resolve_active_phase(self, *, strict: bool = False) -> Phase | None:
        state = self.state.read()
        if strict and state.active_phase_id and state.find_phase(state.active_phase_id) is None:
            raise PhasePreflightError(
                f"Active phase '{state.active_phase_id}' no longer exists. "
                "Run 'taskpilot phase activate' to pick a phase."
            )
        return state.active_phase()

    # authoring

    def create_phase(self, name: str, branch_name: str) -> ProjectState:
        name = _require_text(name, "phase name")
        branch_name = _require_text(branch_name, "branch name")
        state = self.state.read()
        phase = Phase(id=str(uuid.uuid4()), name=name, branch_name=branch_name)
        state.phases.append(phase)
        state.active_phase_id = phase.id
        logger.info("Created phase %s (%s)", phase.name, phase.id)
        return self.state.write(state)

    def create_task(
        self,
        phase_id: str,
        title: str,
        description: str,
        *,
        assignee: str = UNASSIGNED,
        dependencies: list[str] | None = None,
    ) -> ProjectState:
        phase_id = _require_text(phase_id, "phaseId")
        title = _require_text(title, "task title")
        description = _require_text(description, "task description")
        if assignee != UNASSIGNED and assignee not in ADAPTER_IDS:
            raise ValidationError(f"Unknown assignee: {assignee}")
        state = self.state.read()
        phase = _locate_phase(state, phase_id)
        task = Task(
            id=str(uuid.uuid4()),
            title=title,
            description=description,
            assignee=assignee,
        )
        task.dependencies = self._validated_dependencies(state, task.id, dependencies or [])
        phase.tasks.append(task)
        logger.info("Created task %s in phase %s", task.title, phase.name)
        return self.state.write(state)

    def update_task(
        self,
        phase_id: str,
        task_id: str,
        *,
        title: str | None = None,
        description: str | None = None,
        dependencies: list[str] | None = None,
    ) -> ProjectState:
        state = self.state.read()
        _, task = _locate_task(state, phase_id, task_id)
        if title is not None:
            task.title = _require_text(title, "task title")
        if description is not None:
            task.description = _require_text(description, "task description")
        if dependencies is not None:
            task.dependencies = self._validated_dependencies(state, task.id, dependencies)
        return self.state.write(state)

    @staticmethod
    def _validated_dependencies(
        state: ProjectState, task_id: str, dependencies: list[str]
    ) -> list[str]:
        cleaned: list[str] = []
        for dependency in dependencies:
            dependency = dependency.strip()
            if not dependency or dependency in cleaned:
                continue
            if dependency == task_id:
                raise ValidationError("Task cannot depend on itself.")
            if state.find_task_anywhere(dependency) is None:
                raise ValidationError(f"Unknown dependency task id: {dependency}")
            cleaned.append(dependency)
        graph = {
            task.id: list(task.dependencies) for phase in state.phases for task in phase.tasks
        }
        graph[task_id] = cleaned
        if _find_cycle(graph, task_id):
            raise ValidationError("Task dependencies must not form a cycle.")
        return cleaned

    # phase transitions

    def set_active_phase(self, phase_ref: str) -> ProjectState:
        phase_ref = _require_text(phase_ref, "phase reference")
        state = self.state.read()
        phase = state.find_phase(phase_ref)
        if phase is None and phase_ref.isdigit():
            number = int(phase_ref)
            if 1 <= number <= len(state.phases):
                phase = state.phases[number - 1]
        if phase is None:
            raise NotFoundError(f"Phase not found: {phase_ref}")
        state.active_phase_id = phase.id
        return self.state.write(state)

    def set_phase_status(
        self,
        phase_id: str,
        status: str,
        *,
        failure_kind: str | None = None,
        ci_status_context: str | None = None,
    ) -> ProjectState:
        if status not in PHASE_STATUSES:
            raise ValidationError(f"Unknown phase status: {status}")
        state = self.state.read()
        phase = _locate_phase(state, phase_id)
        if status == "CI_FAILED":
            if failure_kind not in PHASE_FAILURE_KINDS:
                raise ValidationError(
                    "failureKind is required when moving a phase to CI_FAILED "
                    f"({', '.join(PHASE_FAILURE_KINDS)})."
                )
            phase.failure_kind = failure_kind
        elif failure_kind is not None:
            raise ValidationError("failureKind is only valid for CI_FAILED phases.")
        else:
            phase.failure_kind = None
        phase.status = status
        if ci_status_context is not None:
            phase.ci_status_context = ci_status_context.strip() or None
        logger.info("Phase %s moved to %s", phase.name, status)
        return self.state.write(state)

    def set_phase_pr_url(self, phase_id: str, pr_url: str) -> ProjectState:
        pr_url = _require_text(pr_url, "PR URL")
        parsed = urlparse(pr_url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValidationError(f"PR URL must be an http(s) URL: {pr_url}")
        state = self.state.read()
        phase = _locate_phase(state, phase_id)
        phase.pr_url = pr_url
        return self.state.write(state)

    def create_ci_fix_tasks(
        self,
        phase_id: str,
        failed_checks: list[str],
        *,
        failure_kind: str = "REMOTE_CI",
        ci_status_context: str | None = None,
    ) -> tuple[ProjectState, list[Task]]:
        """Queue one CI_FIX task per failing check and mark the phase CI_FAILED.

        Checks that already have a CI_FIX task in the phase are skipped. With no
        check names a single task covers the whole pipeline.
        """
        if failure_kind not in PHASE_FAILURE_KINDS:
            raise ValidationError(f"Unknown phase failure kind: {failure_kind}")
        state = self.state.read()
        phase = _locate_phase(state, phase_id)
        if phase.status == "DONE":
            raise PhasePreflightError(f"Phase '{phase.name}' is DONE; no further tasks can run.")
        names = sorted({_normalize_check_name(name) for name in failed_checks}, key=str.lower)
        if not names:
            names = [CI_PIPELINE_CHECK]
        queued = {task.title.strip() for task in phase.tasks if task.status == "CI_FIX"}
        created: list[Task] = []
        for name in names:
            title = CI_FIX_TITLE_PREFIX + name
            if title in queued:
                logger.info("CI_FIX task %r already queued in phase %s", title, phase.name)
                continue
            queued.add(title)
            task = Task(
                id=str(uuid.uuid4()),
                title=title,
                description=_ci_fix_description(phase, name),
                status="CI_FIX",
            )
            phase.tasks.append(task)
            created.append(task)
        phase.status = "CI_FAILED"
        phase.failure_kind = failure_kind
        context = (ci_status_context or "").strip()
        phase.ci_status_context = context or "Failing checks: " + ", ".join(names)
        written = self.state.write(state)
        for task in created:
            self._emit(written, phase, task, f"Task '{task.title}' queued as CI_FIX.")
        return written, created

    # recovery and reconciliation

    def record_recovery_attempt(
        self, phase_id: str, record: RecoveryAttemptRecord, *, task_id: str | None = None
    ) -> ProjectState:
        if self.max_recovery_attempts == 0:
            raise ValidationError("Exception recovery is disabled (recovery.max_attempts=0).")
        if record.attempt_number > self.max_recovery_attempts:
            raise ValidationError(
                f"Recovery attempt {record.attempt_number} exceeds the configured maximum "
                f"of {self.max_recovery_attempts}."
            )
        state = self.state.read()
        if task_id is None:
            _locate_phase(state, phase_id).recovery_attempts.append(record)
        else:
            _, task = _locate_task(state, phase_id, task_id)
            task.recovery_attempts.append(record)
        return self.state.write(state)

    def reset_task_to_todo(self, phase_id: str, task_id: str) -> ProjectState:
        state = self.state.read()
        phase, task = _locate_task(state, phase_id, task_id)
        if task.status != "FAILED":
            raise ValidationError(f"Only FAILED tasks can be reset to TODO (task is {task.status}).")
        task.status = "TODO"
        task.assignee = UNASSIGNED
        _clear_task_outcome(task)
        if self.repository is not None:
            self.repository.hard_reset()
        logger.info("Reset task %s to TODO", task.title)
        written = self.state.write(state)
        self._emit(written, phase, task, f"Task '{task.title}' reset to TODO.")
        return written

    def reconcile_in_progress_tasks(self) -> int:
        state = self.state.read()
        count = 0
        for phase in state.phases:
            for task in phase.tasks:
                if task.status == "IN_PROGRESS":
                    task.status = "TODO"
                    count += 1
        if count:
            self.state.write(state)
            logger.info("Reconciled %d IN_PROGRESS task(s) back to TODO", count)
        return count

    def reconcile_in_progress_task_to_todo(self, phase_id: str, task_id: str) -> ProjectState:
        state = self.state.read()
        _, task = _locate_task(state, phase_id, task_id)
        if task.status != "IN_PROGRESS":
            raise ValidationError(f"Task is not IN_PROGRESS (task is {task.status}).")
        task.status = "TODO"
        return self.state.write(state)

    # execution

    async def start_task(self, phase_id: str, task_id: str, assignee: str) -> ProjectState:
        """Mark the task IN_PROGRESS and run the worker in the background."""
        state, run = self._prepare_run(phase_id, task_id, assignee)
        if run is None:
            return state
        background = asyncio.get_running_loop().create_task(self._execute(run))
        self._background.add(background)
        background.add_done_callback(self._background.discard)
        return state

    async def start_task_and_wait(self, phase_id: str, task_id: str, assignee: str) -> ProjectState:
        """Run the task and return the state once it reached a terminal status."""
        state, run = self._prepare_run(phase_id, task_id, assignee)
        if run is None:
            return state
        return await self._execute(run)

    async def wait_for_background(self) -> None:
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

    def _prepare_run(
        self, phase_id: str, task_id: str, assignee: str
    ) -> tuple[ProjectState, _TaskRun | None]:
        if assignee not in ADAPTER_IDS:
            raise ValidationError(f"Unknown assignee: {assignee}")
        if self.dispatcher is None:
            raise TaskpilotError("No worker dispatcher configured.")
        state = self.state.read()
        phase, task = _locate_task(state, phase_id, task_id)
        if phase.status == "DONE":
            raise PhasePreflightError(f"Phase '{phase.name}' is DONE; no further tasks can run.")
        if not phase.branch_name.strip():
            raise PhasePreflightError(f"Phase '{phase.name}' has no branch name.")
        if task.status not in STARTABLE_STATUSES:
            raise ValidationError(f"Task '{task.title}' cannot be started from {task.status}.")

        for dependency_id in task.dependencies:
            located = state.find_task_anywhere(dependency_id)
            if located is None or located[1].status != "DONE":
                label = located[1].title if located else dependency_id
                raise ValidationError(f"Task has incomplete dependency: {label}")

        resume = False
        if task.status == "FAILED":
            if task.assignee not in (UNASSIGNED, assignee):
                raise ValidationError(
                    "FAILED task must be retried with the same assignee "
                    f"({task.assignee})."
                )
            resume = task.assignee == assignee

        contracts = derive_contracts(task)
        was_ci_fix = task.status == "CI_FIX"
        task.assignee = assignee

        if contracts and self.repository is not None:
            preflight = run_preflight(contracts, self.repository)
            if not preflight.ok:
                message = preflight.message()
                _clear_task_outcome(task)
                task.status = "FAILED"
                task.error_logs = cap_persisted_text(message)
                task.error_category = "AGENT_FAILURE"
                task.adapter_failure_kind = "missing-binary"
                logger.warning("Task %s failed preflight: %s", task.title, message)
                written = self.state.write(state)
                self._emit(written, phase, task, f"Task '{task.title}' failed preflight: {message}")
                return written, None

        prompt = build_worker_prompt(
            project_name=state.project_name,
            root_dir=state.root_dir,
            phase=phase,
            task=task,
            archetype=archetype_for_task(task),
        )
        _clear_task_outcome(task)
        task.status = "IN_PROGRESS"
        written = self.state.write(state)
        logger.info("Task %s started with %s", task.title, assignee)
        self._emit(written, phase, task, f"Task '{task.title}' started with {assignee}.")
        return written, _TaskRun(
            phase_id=phase.id,
            task_id=task.id,
            assignee=assignee,
            contracts=contracts,
            resume=resume,
            was_ci_fix=was_ci_fix,
            prompt=prompt,
        )

    async def _execute(self, run: _TaskRun) -> ProjectState:
        if self.dispatcher is None:
            raise TaskpilotError("No worker dispatcher configured.")
        try:
            result = await self.dispatcher.dispatch(
                DispatchRequest(
                    assignee=run.assignee,
                    prompt=run.prompt,
                    phase_id=run.phase_id,
                    task_id=run.task_id,
                    resume=run.resume,
                )
            )
        except Exception as exc:
            return self._finish_failure(run, exc)
        output = result.stdout.strip() or result.stderr.strip()
        return self._finish_success(run, output)

    def _finish_success(self, run: _TaskRun, output: str) -> ProjectState:
        state = self.state.read()
        phase, task = _locate_task(state, run.phase_id, run.task_id)
        if task.status != "IN_PROGRESS":
            logger.info("Task %s settled as %s before the worker finished", task.title, task.status)
            return state
        if run.contracts:
            verification = verify_completion(run.contracts, phase, self.repository or _NoRemote())
            task.completion_verification = verification
            if verification.status == "FAILED":
                task.status = "FAILED"
                task.result_context = cap_persisted_text(output) if output else None
                task.error_logs = cap_persisted_text(
                    "Completion verification failed: " + "; ".join(verification.missing_side_effects)
                )
                task.error_category = "AGENT_FAILURE"
                task.adapter_failure_kind = None
                written = self.state.write(state)
                self._emit(
                    written,
                    phase,
                    task,
                    f"Task '{task.title}' failed completion verification.",
                )
                return written
        task.status = "DONE"
        task.result_context = cap_persisted_text(output) if output else None
        if run.was_ci_fix and phase.status == "CI_FAILED":
            phase.status = "CODING"
            phase.ci_status_context = None
            phase.failure_kind = None
        logger.info("Task %s completed", task.title)
        written = self.state.write(state)
        self._emit(written, phase, task, f"Task '{task.title}' completed.")
        return written

    def _finish_failure(self, run: _TaskRun, error: Exception) -> ProjectState:
        state = self.state.read()
        phase, task = _locate_task(state, run.phase_id, run.task_id)
        if task.status not in ("IN_PROGRESS", "FAILED"):
            logger.info("Task %s settled as %s before the worker failed", task.title, task.status)
            return state
        task.status = "FAILED"
        task.error_logs = cap_persisted_text(str(error) or type(error).__name__)
        task.error_category = "AGENT_FAILURE"
        task.adapter_failure_kind = classify_adapter_failure(error)
        logger.warning("Task %s failed: %s", task.title, error)
        written = self.state.write(state)
        self._emit(written, phase, task, f"Task '{task.title}' failed: {error}")
        return written

    def _emit(self, state: ProjectState, phase: Phase, task: Task, message: str) -> None:
        if self.on_event is None:
            return
        self.on_event(
            TaskLifecycleEvent(
                context=EventContext(
                    source="control",
                    adapter_id=task.assignee if task.assignee != UNASSIGNED else None,
                    phase_id=phase.id,
                    task_id=task.id,
                    project_name=state.project_name,
                ),
                message=message,
            )
        )


class _NoRemote:
    def command_available(self, executable: str) -> bool:
        return False

    def github_authenticated(self) -> bool:
        return False

    def remote_branch_exists(self, branch_name: str, remote: str = "origin") -> bool:
        return False


class TaskFailureRecorder:
    """Supervisor failure hook that marks the correlated task FAILED.

    Only tasks still IN_PROGRESS are touched, so a task that already settled or
    was reset is left alone.
    """

    def __init__(self, state: StateEngine) -> None:
        self.state = state

    def __call__(self, agent: AgentView) -> None:
        if not agent.task_id or not agent.phase_id:
            return
        try:
            state = self.state.read()
        except StateError as exc:
            logger.warning("Cannot record agent failure for task %s: %s", agent.task_id, exc)
            return
        phase = state.find_phase(agent.phase_id)
        task = phase.find_task(agent.task_id) if phase is not None else None
        if task is None or task.status != "IN_PROGRESS":
            return
        tail = "\n".join(agent.output_tail[-10:])
        summary = (
            f"Agent '{agent.name}' ended as {agent.status} "
            f"(exit code {agent.last_exit_code})."
        )
        task.status = "FAILED"
        task.error_logs = cap_persisted_text(f"{summary}\n{tail}".strip())
        task.error_category = "AGENT_FAILURE"
        task.adapter_failure_kind = classify_failure_text(tail)
        self.state.write(state)
        logger.info("Recorded agent failure on task %s", task.title)
