from __future__ import annotations

import asyncio
import json
import logging
import signal
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from functools import partial
from pathlib import Path

import click

from taskpilot.backends.adapters import build_adapter
from taskpilot.backends.dispatcher import SupervisorDispatcher
from taskpilot.config import CONFIG_FILE_NAME, TaskpilotConfig, load_config, save_config
from taskpilot.control import ControlCenterService, TaskFailureRecorder
from taskpilot.diagnostics import latest_runtime_diagnostic
from taskpilot.errors import TaskpilotError
from taskpilot.events import EventListener, RuntimeEvent, format_event
from taskpilot.execution import ExecutionControlService
from taskpilot.models import ADAPTER_IDS, PHASE_FAILURE_KINDS, PHASE_STATUSES, UNASSIGNED
from taskpilot.state import AgentView, StateEngine, build_agent_registry
from taskpilot.supervisor import AgentSupervisor
from taskpilot.vcs import GitClient


@dataclass(slots=True)
class Runtime:
    repo_root: Path
    config_path: Path
    config: TaskpilotConfig
    state: StateEngine
    supervisor: AgentSupervisor
    control: ControlCenterService
    git: GitClient


def _resolve_path(repo_root: Path, value: str) -> Path:
    path = Path(value)
    if not path.is_absolute():
        path = repo_root / path
    return path.resolve()


def _load_runtime(
    repo_root: Path, config_path: Path, on_event: EventListener | None = None
) -> Runtime:
    config = load_config(config_path)
    state = StateEngine(_resolve_path(repo_root, config.state.state_file))
    registry = build_agent_registry(
        config.supervisor.registry_backend,
        _resolve_path(repo_root, config.supervisor.registry_path),
    )
    supervisor = AgentSupervisor(
        registry=registry,
        settings=config.supervisor,
        on_failure=TaskFailureRecorder(state),
    )
    dispatcher = SupervisorDispatcher(
        supervisor,
        partial(build_adapter, agents=config.agents),
        cwd=repo_root,
        project_name=config.project.name,
        timeout_seconds=config.agents.timeout_seconds,
        startup_silence_seconds=config.agents.startup_silence_seconds,
    )
    git = GitClient(repo_root)
    control = ControlCenterService(
        state,
        dispatcher=dispatcher,
        repository=git,
        on_event=on_event,
        max_recovery_attempts=config.recovery.max_attempts,
    )
    return Runtime(
        repo_root=repo_root,
        config_path=config_path,
        config=config,
        state=state,
        supervisor=supervisor,
        control=control,
        git=git,
    )


@contextmanager
def _cli_errors() -> Iterator[None]:
    try:
        yield
    except TaskpilotError as exc:
        raise click.ClickException(str(exc)) from exc


def _runtime(config_value: str, on_event: EventListener | None = None) -> Runtime:
    repo_root = Path.cwd().resolve()
    with _cli_errors():
        return _load_runtime(repo_root, _resolve_path(repo_root, config_value), on_event)


def _echo_event(event: RuntimeEvent) -> None:
    click.echo(format_event(event))


config_option = click.option(
    "--config", "config_value", default=CONFIG_FILE_NAME, show_default=True
)


@click.group()
@click.option("--verbose", is_flag=True, default=False, help="Enable debug logging.")
def cli(verbose: bool) -> None:
    """Taskpilot CLI."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@cli.command("init")
@click.option("--name", "project_name", default=None)
@click.option("--default-assignee", type=click.Choice(ADAPTER_IDS), default=None)
@config_option
def init_command(project_name: str | None, default_assignee: str | None, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_path(repo_root, config_value)
    with _cli_errors():
        config = load_config(config_path)
        if project_name:
            config.project.name = project_name
        elif not config_path.exists():
            config.project.name = repo_root.name
        if default_assignee:
            config.project.default_assignee = default_assignee  # type: ignore[assignment]
        save_config(config_path, config)
        runtime = _load_runtime(repo_root, config_path)
        state = runtime.control.ensure_initialized(config.project.name, repo_root)

    click.echo(f"Initialized taskpilot in {repo_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"State: {runtime.state.state_file}")
    click.echo(f"Project: {state.project_name}")
    click.echo(f"Default assignee: {config.project.default_assignee}")


@cli.group("phase")
def phase_group() -> None:
    """Create and inspect phases."""


@phase_group.command("create")
@click.argument("name")
@click.option("--branch", "branch_name", required=True)
@config_option
def phase_create_command(name: str, branch_name: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    with _cli_errors():
        state = runtime.control.create_phase(name, branch_name)
    phase = state.phases[-1]
    click.echo(f"Created phase {phase.id} ({phase.name}) on branch {phase.branch_name}")


@phase_group.command("list")
@config_option
def phase_list_command(config_value: str) -> None:
    runtime = _runtime(config_value)
    with _cli_errors():
        state = runtime.control.get_state()
    if not state.phases:
        click.echo("No phases defined.")
        return
    active = state.active_phase()
    for number, phase in enumerate(state.phases, start=1):
        marker = "*" if active is not None and phase.id == active.id else " "
        done = sum(1 for task in phase.tasks if task.status == "DONE")
        click.echo(
            f"{marker} {number}. {phase.id} {phase.status:<16} {phase.name} "
            f"[{done}/{len(phase.tasks)} done]"
        )


@phase_group.command("activate")
@click.argument("phase_ref")
@config_option
def phase_activate_command(phase_ref: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    with _cli_errors():
        state = runtime.control.set_active_phase(phase_ref)
    click.echo(f"Active phase: {state.active_phase_id}")


@phase_group.command("status")
@click.argument("phase_id")
@click.argument("status", type=click.Choice(PHASE_STATUSES))
@click.option("--failure-kind", type=click.Choice(PHASE_FAILURE_KINDS), default=None)
@click.option("--ci-context", default=None)
@config_option
def phase_status_command(
    phase_id: str,
    status: str,
    failure_kind: str | None,
    ci_context: str | None,
    config_value: str,
) -> None:
    runtime = _runtime(config_value)
    with _cli_errors():
        runtime.control.set_phase_status(
            phase_id, status, failure_kind=failure_kind, ci_status_context=ci_context
        )
    click.echo(f"Phase {phase_id} is now {status}")


@phase_group.command("pr")
@click.argument("phase_id")
@click.argument("pr_url")
@config_option
def phase_pr_command(phase_id: str, pr_url: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    with _cli_errors():
        runtime.control.set_phase_pr_url(phase_id, pr_url)
    click.echo(f"Recorded PR for phase {phase_id}: {pr_url}")


@phase_group.command("ci-fix")
@click.argument("phase_id")
@click.option("--check", "checks", multiple=True, help="Name of a failing CI check.")
@click.option(
    "--failure-kind", type=click.Choice(PHASE_FAILURE_KINDS), default="REMOTE_CI", show_default=True
)
@click.option("--ci-context", default=None)
@config_option
def phase_ci_fix_command(
    phase_id: str,
    checks: tuple[str, ...],
    failure_kind: str,
    ci_context: str | None,
    config_value: str,
) -> None:
    runtime = _runtime(config_value)
    with _cli_errors():
        state, created = runtime.control.create_ci_fix_tasks(
            phase_id, list(checks), failure_kind=failure_kind, ci_status_context=ci_context
        )
    for task in created:
        click.echo(f"Created task {task.id} ({task.title})")
    if not created:
        click.echo("No new CI_FIX tasks; every failing check is already queued.")
    phase = state.find_phase(phase_id)
    if phase is not None:
        click.echo(f"Phase {phase_id} is now {phase.status}")


@cli.group("task")
def task_group() -> None:
    """Create, update and run tasks."""


@task_group.command("create")
@click.argument("phase_id")
@click.argument("title")
@click.argument("description")
@click.option("--assignee", type=click.Choice((*ADAPTER_IDS, UNASSIGNED)), default=UNASSIGNED)
@click.option("--depends-on", "dependencies", multiple=True)
@config_option
def task_create_command(
    phase_id: str,
    title: str,
    description: str,
    assignee: str,
    dependencies: tuple[str, ...],
    config_value: str,
) -> None:
    runtime = _runtime(config_value)
    with _cli_errors():
        state = runtime.control.create_task(
            phase_id, title, description, assignee=assignee, dependencies=list(dependencies)
        )
    phase = state.find_phase(phase_id)
    if phase is None:
        raise click.ClickException(f"Phase not found after create: {phase_id}")
    task = phase.tasks[-1]
    click.echo(f"Created task {task.id} ({task.title})")


@task_group.command("update")
@click.argument("phase_id")
@click.argument("task_id")
@click.option("--title", default=None)
@click.option("--description", default=None)
@click.option("--depends-on", "dependencies", multiple=True)
@click.option("--clear-dependencies", is_flag=True, default=False)
@config_option
def task_update_command(
    phase_id: str,
    task_id: str,
    title: str | None,
    description: str | None,
    dependencies: tuple[str, ...],
    clear_dependencies: bool,
    config_value: str,
) -> None:
    runtime = _runtime(config_value)
    new_dependencies: list[str] | None = None
    if clear_dependencies:
        new_dependencies = []
    elif dependencies:
        new_dependencies = list(dependencies)
    with _cli_errors():
        runtime.control.update_task(
            phase_id, task_id, title=title, description=description, dependencies=new_dependencies
        )
    click.echo(f"Updated task {task_id}")


@task_group.command("start")
@click.argument("phase_id")
@click.argument("task_id")
@click.option("--assignee", type=click.Choice(ADAPTER_IDS), default=None)
@config_option
def task_start_command(
    phase_id: str, task_id: str, assignee: str | None, config_value: str
) -> None:
    runtime = _runtime(config_value, on_event=_echo_event)
    with _cli_errors():
        state = runtime.control.get_state()
        phase = state.find_phase(phase_id)
        task = phase.find_task(task_id) if phase is not None else None
        if assignee is None:
            if task is not None and task.assignee != UNASSIGNED:
                assignee = task.assignee
            else:
                assignee = runtime.config.project.default_assignee
        try:
            state = asyncio.run(runtime.control.start_task_and_wait(phase_id, task_id, assignee))
        finally:
            runtime.supervisor.close()
    phase = state.find_phase(phase_id)
    task = phase.find_task(task_id) if phase is not None else None
    if task is None:
        raise click.ClickException(f"Task not found after run: {task_id}")
    click.echo(f"Task {task.title}: {task.status}")
    if task.status == "FAILED":
        if task.error_logs:
            click.echo(task.error_logs)
        raise SystemExit(1)


@task_group.command("reset")
@click.argument("phase_id")
@click.argument("task_id")
@config_option
def task_reset_command(phase_id: str, task_id: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    with _cli_errors():
        runtime.control.reset_task_to_todo(phase_id, task_id)
    click.echo(f"Task {task_id} reset to TODO")


async def _run_auto(runtime: Runtime, execution: ExecutionControlService) -> None:
    loop = asyncio.get_running_loop()
    stop_tasks: list[asyncio.Task[object]] = []

    def request_stop() -> None:
        if not stop_tasks:
            click.echo("Stop requested; waiting for the active task to settle...")
            stop_tasks.append(loop.create_task(execution.stop()))

    try:
        loop.add_signal_handler(signal.SIGINT, request_stop)
    except (NotImplementedError, RuntimeError):
        pass
    try:
        await execution.run_until_complete(runtime.config.project.name)
        if stop_tasks:
            await stop_tasks[0]
    finally:
        try:
            loop.remove_signal_handler(signal.SIGINT)
        except (NotImplementedError, RuntimeError):
            pass
        runtime.supervisor.close()


@cli.command("run")
@config_option
def run_command(config_value: str) -> None:
    runtime = _runtime(config_value, on_event=_echo_event)
    execution = ExecutionControlService(
        control=runtime.control,
        agents=runtime.supervisor,
        project_root=runtime.repo_root,
        project_name=runtime.config.project.name,
        default_assignee=lambda _project: runtime.config.project.default_assignee,
        owner="CLI_PHASE_RUN",
        settings=runtime.config.execution,
        on_event=_echo_event,
    )
    with _cli_errors():
        asyncio.run(_run_auto(runtime, execution))
    final = execution.get_status()
    click.echo(final.message)
    if final.message.startswith("Auto mode failed") or " failed." in final.message:
        raise SystemExit(1)


@cli.group("agents")
def agents_group() -> None:
    """Inspect supervised worker processes."""


@agents_group.command("list")
@click.option("--json", "as_json", is_flag=True, default=False)
@config_option
def agents_list_command(as_json: bool, config_value: str) -> None:
    runtime = _runtime(config_value)
    agents = runtime.supervisor.list()
    if as_json:
        click.echo(json.dumps([agent.to_dict() for agent in agents], ensure_ascii=False, indent=2))
        return
    if not agents:
        click.echo("No agents recorded.")
        return
    for agent in agents:
        exit_code = "" if agent.last_exit_code is None else f" exit={agent.last_exit_code}"
        task = f" task={agent.task_id}" if agent.task_id else ""
        click.echo(f"{agent.id} {agent.status:<8} {agent.name}{task}{exit_code}")


@agents_group.command("reconcile")
@config_option
def agents_reconcile_command(config_value: str) -> None:
    runtime = _runtime(config_value)
    with _cli_errors():
        stale = runtime.supervisor.reconcile_stale_running_agents()
        settled = 0
        if runtime.state.exists():
            state = runtime.control.get_state()

            def task_is_terminal(agent: AgentView) -> bool:
                if not agent.phase_id or not agent.task_id:
                    return False
                phase = state.find_phase(agent.phase_id)
                task = phase.find_task(agent.task_id) if phase is not None else None
                return task is not None and task.status in ("DONE", "FAILED", "TODO")

            settled = runtime.supervisor.reconcile_running_agents_where(task_is_terminal)
    click.echo(f"Reconciled {stale + settled} agent(s).")


@cli.command("status")
@config_option
def status_command(config_value: str) -> None:
    runtime = _runtime(config_value)
    with _cli_errors():
        state = runtime.control.get_state()
    active = state.active_phase()
    agents = runtime.supervisor.list()
    running = [agent for agent in agents if agent.status == "RUNNING"]
    payload: dict[str, object] = {
        "project": state.project_name,
        "rootDir": state.root_dir,
        "activePhase": active.to_dict() if active is not None else None,
        "phases": len(state.phases),
        "runningAgents": [agent.id for agent in running],
    }
    diagnostics = {}
    for agent in running:
        latest = latest_runtime_diagnostic(agent.output_tail)
        if latest is not None:
            diagnostics[agent.id] = latest.message
    if diagnostics:
        payload["diagnostics"] = diagnostics
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))
