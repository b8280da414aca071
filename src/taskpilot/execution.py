from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Protocol

from taskpilot.config import ExecutionConfig
from taskpilot.control import ControlCenterService
from taskpilot.errors import NotFoundError, TaskpilotError, ValidationError
from taskpilot.events import EventContext, EventListener, TaskLifecycleEvent
from taskpilot.models import UNASSIGNED, ProjectState, Task, utcnow_iso
from taskpilot.state.agent_registry import AgentView
from taskpilot.state.run_lock import ExecutionRunLock, LockOwner

logger = logging.getLogger(__name__)

IDLE_MESSAGE = "Auto mode is idle."


class AgentControl(Protocol):
    def list(self) -> list[AgentView]: ...

    def kill(self, agent_id: str) -> AgentView: ...

    def reconcile_stale_running_agents(self) -> int: ...


@dataclass(slots=True, frozen=True)
class AutoExecutionStatus:
    running: bool
    stop_requested: bool
    project_name: str
    message: str
    phase_id: str | None = None
    task_id: str | None = None
    task_title: str | None = None
    updated_at: str = field(default_factory=utcnow_iso)


def pick_next_auto_task(tasks: list[Task]) -> Task | None:
    for task in tasks:
        if task.status == "CI_FIX":
            return task
    for task in tasks:
        if task.status == "TODO":
            return task
    return None


def _resolve_task(state: ProjectState, phase_id: str, task_id: str) -> Task | None:
    phase = state.find_phase(phase_id)
    return phase.find_task(task_id) if phase is not None else None


class ExecutionControlService:
    """Single auto-mode driver for one project.

    Dispatches the next runnable task of the active phase until none remain,
    a task fails, or a stop is requested. The execution run lock is held for
    the whole loop.
    """

    def __init__(
        self,
        *,
        control: ControlCenterService,
        agents: AgentControl,
        project_root: Path,
        project_name: str,
        default_assignee: Callable[[str], str],
        owner: LockOwner = "CLI_PHASE_RUN",
        settings: ExecutionConfig | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        on_event: EventListener | None = None,
    ) -> None:
        if not str(project_root).strip():
            raise ValidationError("project root must not be empty.")
        self.control = control
        self.agents = agents
        self.project_root = project_root
        self.default_assignee = default_assignee
        self.owner = owner
        self.settings = settings or ExecutionConfig()
        self.sleep = sleep
        self.on_event = on_event
        self._status = AutoExecutionStatus(
            running=False, stop_requested=False, project_name=project_name, message=IDLE_MESSAGE
        )
        self._lock: ExecutionRunLock | None = None
        self._loop_task: asyncio.Task[None] | None = None

    @property
    def loop_task(self) -> asyncio.Task[None] | None:
        return self._loop_task

    def get_status(self, project_name: str | None = None) -> AutoExecutionStatus:
        if not project_name or project_name == self._status.project_name:
            return self._status
        return AutoExecutionStatus(
            running=False, stop_requested=False, project_name=project_name, message=IDLE_MESSAGE
        )

    def _set_status(self, **changes: object) -> None:
        self._status = replace(self._status, updated_at=utcnow_iso(), **changes)
        logger.info("%s", self._status.message)
        if self.on_event is not None:
            self.on_event(
                TaskLifecycleEvent(
                    context=EventContext(
                        source="execution",
                        phase_id=self._status.phase_id,
                        task_id=self._status.task_id,
                        project_name=self._status.project_name,
                    ),
                    message=self._status.message,
                )
            )

    def _finish(self, message: str) -> None:
        self._set_status(
            running=False,
            stop_requested=False,
            phase_id=None,
            task_id=None,
            task_title=None,
            message=message,
        )

    async def start_auto(self, project_name: str | None = None) -> AutoExecutionStatus:
        if self._status.running:
            raise TaskpilotError(
                f"Auto mode is already running for project {self._status.project_name}."
            )
        project_name = (project_name or self._status.project_name).strip()
        if not project_name:
            raise ValidationError("project name must not be empty.")

        lock = ExecutionRunLock(
            project_root=self.project_root, project_name=project_name, owner=self.owner
        )
        lock.acquire()
        self._lock = lock
        self._status = AutoExecutionStatus(
            running=False, stop_requested=False, project_name=project_name, message=IDLE_MESSAGE
        )
        self._set_status(running=True, message=f"Auto mode running for project {project_name}.")
        self._loop_task = asyncio.get_running_loop().create_task(self._guarded_loop(project_name))
        return self.get_status(project_name)

    async def run_until_complete(self, project_name: str | None = None) -> AutoExecutionStatus:
        await self.start_auto(project_name)
        if self._loop_task is None:
            raise TaskpilotError("Auto mode loop did not start.")
        await self._loop_task
        return self.get_status()

    async def _guarded_loop(self, project_name: str) -> None:
        try:
            self._reconcile_interrupted_work()
            await self._run_loop(project_name)
        except Exception as exc:
            logger.exception("Auto mode failed for project %s", project_name)
            self._finish(f"Auto mode failed: {exc}")
        finally:
            if self._status.running and self._status.project_name == project_name:
                self._set_status(
                    running=False,
                    stop_requested=False,
                    phase_id=None,
                    task_id=None,
                    task_title=None,
                )
            self._release_lock()

    def _reconcile_interrupted_work(self) -> None:
        """Settle agents and tasks left RUNNING or IN_PROGRESS by a crashed driver.

        Only safe while this driver holds the run lock.
        """
        agents = self.agents.reconcile_stale_running_agents()
        tasks = self.control.reconcile_in_progress_tasks()
        if agents or tasks:
            logger.info(
                "Reconciled %d stale agent(s) and %d interrupted task(s) before auto mode",
                agents,
                tasks,
            )

    async def _run_loop(self, project_name: str) -> None:
        while True:
            if self._status.stop_requested:
                self._finish("Auto mode stopped.")
                return

            state = self.control.get_state()
            phase = state.active_phase()
            if phase is None:
                self._finish("No phase available to execute.")
                return

            next_task = pick_next_auto_task(phase.tasks)
            if next_task is None:
                self._finish("Auto mode finished. No TODO or CI_FIX tasks remain.")
                return

            assignee = (
                next_task.assignee
                if next_task.assignee != UNASSIGNED
                else self.default_assignee(project_name)
            )
            self._set_status(
                running=True,
                phase_id=phase.id,
                task_id=next_task.id,
                task_title=next_task.title,
                message=f"Running task '{next_task.title}' with {assignee}.",
            )

            updated = await self.control.start_task_and_wait(phase.id, next_task.id, assignee)
            result = _resolve_task(updated, phase.id, next_task.id)
            if result is None:
                raise TaskpilotError("Active task disappeared while auto mode was running.")

            if self._status.stop_requested:
                self._finish("Auto mode stopped. Reset to the last completed task.")
                return
            if result.status == "DONE":
                self._set_status(
                    running=True,
                    phase_id=None,
                    task_id=None,
                    task_title=None,
                    message=f"Completed task '{result.title}'. Continuing...",
                )
                continue
            if result.status == "FAILED":
                self._finish(f"Auto mode stopped because task '{result.title}' failed.")
                return

    def _release_lock(self) -> None:
        if self._lock is None:
            return
        lock, self._lock = self._lock, None
        lock.release()

    async def stop(self, project_name: str | None = None) -> AutoExecutionStatus:
        project_name = (project_name or self._status.project_name).strip()
        if not project_name:
            raise ValidationError("project name must not be empty.")
        if not self._status.running:
            return AutoExecutionStatus(
                running=False,
                stop_requested=False,
                project_name=project_name,
                message="Auto mode is not running.",
            )
        if self._status.project_name != project_name:
            raise ValidationError(
                f"Auto mode is running for project {self._status.project_name}, "
                f"not {project_name}."
            )
        self._set_status(
            stop_requested=True,
            message="Stop requested. Stopping at a clean boundary and resetting active task.",
        )
        await self._stop_active_task_and_reset()
        return self.get_status(project_name)

    async def _stop_active_task_and_reset(self) -> None:
        status = self._status
        if not status.phase_id or not status.task_id:
            return
        project_name, phase_id, task_id = status.project_name, status.phase_id, status.task_id

        for agent in self.agents.list():
            if (
                agent.project_name == project_name
                and agent.phase_id == phase_id
                and agent.task_id == task_id
                and agent.status == "RUNNING"
            ):
                try:
                    self.agents.kill(agent.id)
                except NotFoundError:
                    logger.warning("Agent %s is owned by another process; cannot kill it.", agent.id)
                break

        settled: Task | None = None
        for _ in range(self.settings.stop_poll_attempts):
            task = _resolve_task(self.control.get_state(), phase_id, task_id)
            if task is not None and task.status != "IN_PROGRESS":
                settled = task
                break
            await self.sleep(self.settings.stop_poll_seconds)

        if settled is None:
            raise TaskpilotError("Failed to stop active task cleanly within timeout.")
        if settled.status == "FAILED":
            self.control.reset_task_to_todo(phase_id, task_id)
