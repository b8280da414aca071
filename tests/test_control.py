import asyncio
from pathlib import Path

import pytest

from taskpilot.backends.dispatcher import DispatchRequest, DispatchResult
from taskpilot.control import ControlCenterService, TaskFailureRecorder
from taskpilot.errors import (
    AgentFailureError,
    NotFoundError,
    PhasePreflightError,
    TaskpilotError,
    ValidationError,
)
from taskpilot.events import RuntimeEvent, TaskLifecycleEvent
from taskpilot.models import ExceptionSnapshot, Phase, RecoveryResult, Task
from taskpilot.prompts import archetype_for_task, build_worker_prompt
from taskpilot.recovery import build_recovery_attempt_record
from taskpilot.state.agent_registry import AgentView
from taskpilot.state.engine import StateEngine


class FakeDispatcher:
    def __init__(self, stdout: str = "done", error: Exception | None = None) -> None:
        self.stdout = stdout
        self.error = error
        self.requests: list[DispatchRequest] = []

    async def dispatch(self, request: DispatchRequest) -> DispatchResult:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return DispatchResult(command="fake", args=[], stdout=self.stdout, stderr="", duration_ms=1)


class FakeRepository:
    def __init__(
        self, *, commands: tuple[str, ...] = ("git", "gh"), authenticated: bool = True
    ) -> None:
        self.commands = commands
        self.authenticated = authenticated
        self.remote_branches: set[str] = set()
        self.resets = 0

    def command_available(self, executable: str) -> bool:
        return executable in self.commands

    def github_authenticated(self) -> bool:
        return self.authenticated

    def remote_branch_exists(self, branch_name: str, remote: str = "origin") -> bool:
        return branch_name in self.remote_branches

    def hard_reset(self) -> None:
        self.resets += 1


def _service(
    tmp_path: Path,
    dispatcher: FakeDispatcher | None = None,
    repository: FakeRepository | None = None,
    events: list[RuntimeEvent] | None = None,
) -> ControlCenterService:
    service = ControlCenterService(
        StateEngine(tmp_path / ".taskpilot" / "state.json"),
        dispatcher=dispatcher or FakeDispatcher(),
        repository=repository or FakeRepository(),
        on_event=events.append if events is not None else None,
    )
    service.ensure_initialized("demo", tmp_path)
    return service


def _phase_with_tasks(service: ControlCenterService, *titles: str) -> tuple[str, list[str]]:
    state = service.create_phase("Phase 1", "feature/one")
    phase_id = state.phases[-1].id
    task_ids = []
    for title in titles:
        state = service.create_task(phase_id, title, f"Implement {title.lower()}")
        task_ids.append(state.find_phase(phase_id).tasks[-1].id)  # type: ignore[union-attr]
    return phase_id, task_ids


def _set_task(service: ControlCenterService, phase_id: str, task_id: str, **fields: object) -> None:
    state = service.get_state()
    task = state.find_phase(phase_id).find_task(task_id)  # type: ignore[union-attr]
    for key, value in fields.items():
        setattr(task, key, value)
    service.state.write(state)


def _task(service: ControlCenterService, phase_id: str, task_id: str):  # type: ignore[no-untyped-def]
    return service.get_state().find_phase(phase_id).find_task(task_id)  # type: ignore[union-attr]


def test_create_phase_activates_it_and_validates_text(tmp_path: Path) -> None:
    service = _service(tmp_path)
    state = service.create_phase("Phase 1", "feature/one")

    assert state.active_phase_id == state.phases[0].id
    assert state.phases[0].status == "PLANNING"
    with pytest.raises(ValidationError, match="branch name must not be empty"):
        service.create_phase("Phase 2", "   ")
    with pytest.raises(NotFoundError, match="Phase not found"):
        service.create_task("missing", "Title", "Description")


def test_successful_task_is_done_with_capped_result(tmp_path: Path) -> None:
    dispatcher = FakeDispatcher(stdout="r" * 5000)
    events: list[RuntimeEvent] = []
    service = _service(tmp_path, dispatcher=dispatcher, events=events)
    phase_id, [task_id] = _phase_with_tasks(service, "Parser")

    asyncio.run(service.start_task_and_wait(phase_id, task_id, "CODEX_CLI"))

    task = _task(service, phase_id, task_id)
    assert task.status == "DONE"
    assert task.assignee == "CODEX_CLI"
    assert len(task.result_context) == 4000
    assert task.result_context.endswith("... [truncated]")
    [request] = dispatcher.requests
    assert request.resume is False
    assert "Task: Parser" in request.prompt
    messages = [event.message for event in events if isinstance(event, TaskLifecycleEvent)]
    assert messages == ["Task 'Parser' started with CODEX_CLI.", "Task 'Parser' completed."]


def test_incomplete_dependency_blocks_start(tmp_path: Path) -> None:
    service = _service(tmp_path)
    phase_id, [first, _] = _phase_with_tasks(service, "Schema", "Queries")
    state = service.create_task(phase_id, "Reports", "Build reports", dependencies=[first])
    dependent = state.find_phase(phase_id).tasks[-1].id  # type: ignore[union-attr]

    with pytest.raises(ValidationError, match="Task has incomplete dependency: Schema"):
        asyncio.run(service.start_task_and_wait(phase_id, dependent, "CODEX_CLI"))
    assert _task(service, phase_id, dependent).status == "TODO"


def test_dependencies_resolve_across_phases(tmp_path: Path) -> None:
    service = _service(tmp_path)
    first_phase, [schema] = _phase_with_tasks(service, "Schema")
    second_phase, [reports] = _phase_with_tasks(service, "Reports")
    service.update_task(second_phase, reports, dependencies=[schema])
    _set_task(service, first_phase, schema, status="DONE")

    asyncio.run(service.start_task_and_wait(second_phase, reports, "CLAUDE_CLI"))

    assert _task(service, second_phase, reports).status == "DONE"


def test_dependency_graph_validation(tmp_path: Path) -> None:
    service = _service(tmp_path)
    phase_id, [a, b] = _phase_with_tasks(service, "A", "B")
    service.update_task(phase_id, b, dependencies=[a])

    with pytest.raises(ValidationError, match="Unknown dependency task id"):
        service.update_task(phase_id, a, dependencies=["nope"])
    with pytest.raises(ValidationError, match="cannot depend on itself"):
        service.update_task(phase_id, a, dependencies=[a])
    with pytest.raises(ValidationError, match="must not form a cycle"):
        service.update_task(phase_id, a, dependencies=[b])


def test_failed_task_retry_requires_same_assignee(tmp_path: Path) -> None:
    dispatcher = FakeDispatcher()
    service = _service(tmp_path, dispatcher=dispatcher)
    phase_id, [task_id] = _phase_with_tasks(service, "Parser")
    _set_task(service, phase_id, task_id, status="FAILED", assignee="CODEX_CLI")

    with pytest.raises(ValidationError, match="FAILED task must be retried with the same assignee"):
        asyncio.run(service.start_task_and_wait(phase_id, task_id, "CLAUDE_CLI"))

    asyncio.run(service.start_task_and_wait(phase_id, task_id, "CODEX_CLI"))
    assert dispatcher.requests[-1].resume is True
    assert _task(service, phase_id, task_id).status == "DONE"


def test_worker_failure_is_persisted_with_classification(tmp_path: Path) -> None:
    error = AgentFailureError("boom " + "e" * 5000, failure_kind="auth", exit_code=1)
    service = _service(tmp_path, dispatcher=FakeDispatcher(error=error))
    phase_id, [task_id] = _phase_with_tasks(service, "Parser")

    state = asyncio.run(service.start_task_and_wait(phase_id, task_id, "GEMINI_CLI"))

    task = state.find_phase(phase_id).find_task(task_id)  # type: ignore[union-attr]
    assert task.status == "FAILED"
    assert task.error_category == "AGENT_FAILURE"
    assert task.adapter_failure_kind == "auth"
    assert len(task.error_logs) == 4000
    assert task.error_logs.startswith("boom ")


def test_unverified_pr_side_effect_fails_task(tmp_path: Path) -> None:
    dispatcher = FakeDispatcher()
    service = _service(tmp_path, dispatcher=dispatcher)
    phase_id, [task_id] = _phase_with_tasks(service, "Create PR for feature")

    asyncio.run(service.start_task_and_wait(phase_id, task_id, "CODEX_CLI"))

    task = _task(service, phase_id, task_id)
    assert len(dispatcher.requests) == 1
    assert task.status == "FAILED"
    assert task.completion_verification.status == "FAILED"
    assert task.completion_verification.contracts == ["PR_CREATION"]
    assert task.completion_verification.missing_side_effects
    assert "Completion verification failed" in task.error_logs


def test_verified_pr_side_effect_completes_task(tmp_path: Path) -> None:
    service = _service(tmp_path)
    phase_id, [task_id] = _phase_with_tasks(service, "Create PR for feature")
    service.set_phase_pr_url(phase_id, "https://github.com/acme/app/pull/7")

    asyncio.run(service.start_task_and_wait(phase_id, task_id, "CODEX_CLI"))

    task = _task(service, phase_id, task_id)
    assert task.status == "DONE"
    assert task.completion_verification.status == "PASSED"
    assert task.completion_verification.probes[0].success is True


def test_failing_preflight_skips_worker(tmp_path: Path) -> None:
    dispatcher = FakeDispatcher()
    repository = FakeRepository(commands=("git",))
    service = _service(tmp_path, dispatcher=dispatcher, repository=repository)
    phase_id, [task_id] = _phase_with_tasks(service, "Open a pull request")

    asyncio.run(service.start_task_and_wait(phase_id, task_id, "CODEX_CLI"))

    task = _task(service, phase_id, task_id)
    assert dispatcher.requests == []
    assert task.status == "FAILED"
    assert task.error_category == "AGENT_FAILURE"
    assert task.adapter_failure_kind == "missing-binary"
    assert "gh CLI binary not found" in task.error_logs


def test_ci_fix_success_returns_phase_to_coding(tmp_path: Path) -> None:
    service = _service(tmp_path)
    phase_id, [regular, fix] = _phase_with_tasks(service, "Docs", "Repair failing test")
    service.set_phase_status(
        phase_id, "CI_FAILED", failure_kind="REMOTE_CI", ci_status_context="test_x failed"
    )
    _set_task(service, phase_id, fix, status="CI_FIX")

    asyncio.run(service.start_task_and_wait(phase_id, regular, "CODEX_CLI"))
    assert service.get_state().find_phase(phase_id).status == "CI_FAILED"  # type: ignore[union-attr]

    asyncio.run(service.start_task_and_wait(phase_id, fix, "CODEX_CLI"))
    phase = service.get_state().find_phase(phase_id)
    assert phase.status == "CODING"  # type: ignore[union-attr]
    assert phase.ci_status_context is None  # type: ignore[union-attr]
    assert phase.failure_kind is None  # type: ignore[union-attr]


def test_ci_fix_prompt_carries_ci_context(tmp_path: Path) -> None:
    dispatcher = FakeDispatcher()
    service = _service(tmp_path, dispatcher=dispatcher)
    phase_id, [fix] = _phase_with_tasks(service, "Repair failing test")
    service.set_phase_status(
        phase_id, "CI_FAILED", failure_kind="LOCAL_TESTER", ci_status_context="test_x failed"
    )
    _set_task(service, phase_id, fix, status="CI_FIX")

    asyncio.run(service.start_task_and_wait(phase_id, fix, "CODEX_CLI"))

    prompt = dispatcher.requests[0].prompt
    assert "Worker archetype: FIXER" in prompt
    assert "test_x failed" in prompt


def test_phase_preflight_errors(tmp_path: Path) -> None:
    service = _service(tmp_path)
    phase_id, [task_id] = _phase_with_tasks(service, "Parser")
    service.set_phase_status(phase_id, "DONE")

    with pytest.raises(PhasePreflightError, match="is DONE"):
        asyncio.run(service.start_task_and_wait(phase_id, task_id, "CODEX_CLI"))

    state = service.get_state()
    state.active_phase_id = "gone"
    service.state.write(state)
    with pytest.raises(PhasePreflightError, match="no longer exists"):
        service.resolve_active_phase(strict=True)
    assert service.resolve_active_phase().id == phase_id  # type: ignore[union-attr]


def test_phase_status_and_pr_url_validation(tmp_path: Path) -> None:
    service = _service(tmp_path)
    phase_id, _ = _phase_with_tasks(service)

    with pytest.raises(ValidationError, match="failureKind is required"):
        service.set_phase_status(phase_id, "CI_FAILED")
    with pytest.raises(ValidationError, match="only valid for CI_FAILED"):
        service.set_phase_status(phase_id, "CODING", failure_kind="REMOTE_CI")
    with pytest.raises(ValidationError, match="Unknown phase status"):
        service.set_phase_status(phase_id, "SHIPPED")
    with pytest.raises(ValidationError, match="http"):
        service.set_phase_pr_url(phase_id, "ftp://example.com/pr")

    service.set_phase_status(phase_id, "CI_FAILED", failure_kind="AGENT_FAILURE")
    service.set_phase_status(phase_id, "CODING")
    assert service.get_state().find_phase(phase_id).failure_kind is None  # type: ignore[union-attr]


def test_set_active_phase_by_id_or_number(tmp_path: Path) -> None:
    service = _service(tmp_path)
    first, _ = _phase_with_tasks(service)
    second, _ = _phase_with_tasks(service)

    assert service.get_state().active_phase_id == second
    assert service.set_active_phase("1").active_phase_id == first
    assert service.set_active_phase(second).active_phase_id == second
    with pytest.raises(NotFoundError):
        service.set_active_phase("3")


def test_reset_task_to_todo_hard_resets_repository(tmp_path: Path) -> None:
    repository = FakeRepository()
    service = _service(tmp_path, repository=repository)
    phase_id, [task_id] = _phase_with_tasks(service, "Parser")

    with pytest.raises(ValidationError, match="Only FAILED tasks"):
        service.reset_task_to_todo(phase_id, task_id)

    _set_task(
        service,
        phase_id,
        task_id,
        status="FAILED",
        assignee="CODEX_CLI",
        error_logs="boom",
        error_category="AGENT_FAILURE",
    )
    service.reset_task_to_todo(phase_id, task_id)

    task = _task(service, phase_id, task_id)
    assert task.status == "TODO"
    assert task.assignee == "UNASSIGNED"
    assert task.error_logs is None
    assert task.error_category is None
    assert repository.resets == 1


def test_reconcile_in_progress_tasks(tmp_path: Path) -> None:
    service = _service(tmp_path)
    phase_id, [a, b] = _phase_with_tasks(service, "A", "B")
    _set_task(service, phase_id, a, status="IN_PROGRESS")
    _set_task(service, phase_id, b, status="IN_PROGRESS")

    service.reconcile_in_progress_task_to_todo(phase_id, a)
    assert _task(service, phase_id, a).status == "TODO"
    with pytest.raises(ValidationError, match="not IN_PROGRESS"):
        service.reconcile_in_progress_task_to_todo(phase_id, a)

    assert service.reconcile_in_progress_tasks() == 1
    assert _task(service, phase_id, b).status == "TODO"


def test_record_recovery_attempt_appends_to_ledger(tmp_path: Path) -> None:
    service = _service(tmp_path)
    phase_id, [task_id] = _phase_with_tasks(service, "Parser")
    record = build_recovery_attempt_record(
        exception=ExceptionSnapshot(category="DIRTY_WORKTREE", message="dirty"),
        result=RecoveryResult(status="fixed", reasoning="committed", actions_taken=["git add ."]),
        attempt_number=1,
    )

    service.record_recovery_attempt(phase_id, record, task_id=task_id)
    service.record_recovery_attempt(phase_id, record)

    state = service.get_state()
    phase = state.find_phase(phase_id)
    assert [item.id for item in phase.tasks[0].recovery_attempts] == [record.id]  # type: ignore[union-attr]
    assert phase.recovery_attempts[0].exception.category == "DIRTY_WORKTREE"  # type: ignore[union-attr]


def test_start_task_runs_in_background(tmp_path: Path) -> None:
    service = _service(tmp_path)
    phase_id, [task_id] = _phase_with_tasks(service, "Parser")

    async def scenario() -> str:
        state = await service.start_task(phase_id, task_id, "MOCK_CLI")
        status = state.find_phase(phase_id).find_task(task_id).status  # type: ignore[union-attr]
        await service.wait_for_background()
        return status

    assert asyncio.run(scenario()) == "IN_PROGRESS"
    assert _task(service, phase_id, task_id).status == "DONE"


def test_failure_recorder_marks_in_progress_task_failed(tmp_path: Path) -> None:
    service = _service(tmp_path)
    phase_id, [running, finished] = _phase_with_tasks(service, "A", "B")
    _set_task(service, phase_id, running, status="IN_PROGRESS")
    _set_task(service, phase_id, finished, status="DONE")
    recorder = TaskFailureRecorder(service.state)

    def view(task_id: str) -> AgentView:
        return AgentView(
            id=f"agent-{task_id}",
            name="worker",
            command="codex",
            cwd=str(tmp_path),
            status="FAILED",
            started_at="2025-01-01T00:00:00.000Z",
            phase_id=phase_id,
            task_id=task_id,
            last_exit_code=127,
            output_tail=["codex: command not found"],
        )

    recorder(view(running))
    recorder(view(finished))

    failed = _task(service, phase_id, running)
    assert failed.status == "FAILED"
    assert failed.adapter_failure_kind == "missing-binary"
    assert "exit code 127" in failed.error_logs
    assert _task(service, phase_id, finished).status == "DONE"


def test_create_ci_fix_tasks_queues_one_task_per_failing_check(tmp_path: Path) -> None:
    service = _service(tmp_path)
    phase_id, _ = _phase_with_tasks(service, "Parser")
    service.set_phase_pr_url(phase_id, "https://github.com/acme/app/pull/7")

    state, created = service.create_ci_fix_tasks(
        phase_id, ["unit   tests", "lint", "lint"], ci_status_context="lint: 3 errors"
    )

    assert [task.title for task in created] == ["CI_FIX: lint", "CI_FIX: unit tests"]
    assert "PR: https://github.com/acme/app/pull/7" in created[0].description
    phase = state.find_phase(phase_id)
    assert [task.status for task in phase.tasks] == ["TODO", "CI_FIX", "CI_FIX"]  # type: ignore[union-attr]
    assert phase.status == "CI_FAILED"  # type: ignore[union-attr]
    assert phase.failure_kind == "REMOTE_CI"  # type: ignore[union-attr]
    assert phase.ci_status_context == "lint: 3 errors"  # type: ignore[union-attr]

    state, again = service.create_ci_fix_tasks(phase_id, ["lint"])

    assert again == []
    assert len(state.find_phase(phase_id).tasks) == 3  # type: ignore[union-attr]
    assert state.find_phase(phase_id).ci_status_context == "Failing checks: lint"  # type: ignore[union-attr]


def test_queued_ci_fix_task_runs_as_fixer_and_clears_ci_failure(tmp_path: Path) -> None:
    dispatcher = FakeDispatcher()
    service = _service(tmp_path, dispatcher)
    phase_id, _ = _phase_with_tasks(service, "Parser")
    _, [fix] = service.create_ci_fix_tasks(phase_id, [])

    state = asyncio.run(service.start_task_and_wait(phase_id, fix.id, "CODEX_CLI"))

    phase = state.find_phase(phase_id)
    assert fix.title == "CI_FIX: CI pipeline (FAILURE)"
    assert phase.find_task(fix.id).status == "DONE"  # type: ignore[union-attr]
    assert phase.status == "CODING"  # type: ignore[union-attr]
    assert phase.ci_status_context is None  # type: ignore[union-attr]
    assert phase.failure_kind is None  # type: ignore[union-attr]
    prompt = dispatcher.requests[0].prompt
    assert "Worker archetype: FIXER" in prompt
    assert "Failing checks: CI pipeline (FAILURE)" in prompt


def test_create_ci_fix_tasks_validation(tmp_path: Path) -> None:
    service = _service(tmp_path)
    phase_id, _ = _phase_with_tasks(service, "Parser")

    with pytest.raises(ValidationError, match="Unknown phase failure kind"):
        service.create_ci_fix_tasks(phase_id, ["lint"], failure_kind="FLAKY")
    with pytest.raises(NotFoundError):
        service.create_ci_fix_tasks("missing", ["lint"])
    service.set_phase_status(phase_id, "DONE")
    with pytest.raises(PhasePreflightError, match="is DONE"):
        service.create_ci_fix_tasks(phase_id, ["lint"])


def test_recovery_attempts_respect_configured_limit(tmp_path: Path) -> None:
    service = _service(tmp_path)
    phase_id, _ = _phase_with_tasks(service, "Parser")
    second = build_recovery_attempt_record(
        exception=ExceptionSnapshot(category="MISSING_COMMIT", message="no commit"),
        result=RecoveryResult(status="unfixable", reasoning="needs a human"),
        attempt_number=2,
    )

    with pytest.raises(ValidationError, match="exceeds the configured maximum of 1"):
        service.record_recovery_attempt(phase_id, second)

    disabled = ControlCenterService(service.state, max_recovery_attempts=0)
    with pytest.raises(ValidationError, match="recovery is disabled"):
        disabled.record_recovery_attempt(phase_id, second)
    assert service.get_state().find_phase(phase_id).recovery_attempts == []  # type: ignore[union-attr]


def test_worker_archetypes_cover_coding_and_ci_fix_tasks() -> None:
    phase = Phase(id="p1", name="Parser", branch_name="feature/parser")
    todo = Task(id="t1", title="Lexer", description="Write the lexer.")
    ci_fix = Task(id="t2", title="CI_FIX: lint", description="Fix lint.", status="CI_FIX")

    assert archetype_for_task(todo) == "CODER"
    assert archetype_for_task(ci_fix) == "FIXER"
    prompt = build_worker_prompt(project_name="demo", root_dir="/repo", phase=phase, task=todo)
    assert "Worker archetype: CODER" in prompt
    assert "Commit all changes" in prompt
    with pytest.raises(ValidationError, match="Unknown worker archetype: REVIEWER"):
        build_worker_prompt(
            project_name="demo",
            root_dir="/repo",
            phase=phase,
            task=todo,
            archetype="REVIEWER",  # type: ignore[arg-type]
        )


def test_missing_task_or_dispatcher_raises_typed_errors(tmp_path: Path) -> None:
    service = _service(tmp_path)
    phase_id, _ = _phase_with_tasks(service, "Parser")

    with pytest.raises(NotFoundError, match="Task not found: nope"):
        asyncio.run(service.start_task_and_wait(phase_id, "nope", "MOCK_CLI"))

    undispatched = ControlCenterService(service.state)
    with pytest.raises(TaskpilotError, match="No worker dispatcher configured"):
        asyncio.run(undispatched.start_task_and_wait(phase_id, "nope", "MOCK_CLI"))
