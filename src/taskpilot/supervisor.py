from __future__ import annotations

import asyncio
import codecs
import logging
import re
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field

from taskpilot.backends.failures import classify_adapter_failure, classify_failure_text
from taskpilot.backends.process import AsyncioProcessRunner, ProcessHandle, ProcessRunner
from taskpilot.config import SupervisorConfig
from taskpilot.diagnostics import (
    execution_timeout_diagnostic,
    format_diagnostic,
    heartbeat_diagnostic,
    idle_diagnostic,
    startup_silence_diagnostic,
)
from taskpilot.errors import AgentFailureError, NotFoundError, ValidationError
from taskpilot.events import (
    AdapterOutputEvent,
    EventContext,
    EventListener,
    OutputStream,
    Outcome,
    RuntimeEvent,
    TerminalOutcomeEvent,
)
from taskpilot.models import utcnow_iso
from taskpilot.state.agent_registry import (
    MAX_TAIL_LINES,
    AgentRegistry,
    AgentView,
    MemoryAgentRegistry,
    merge_views,
    truncate_tail_line,
)
from taskpilot.state.run_lock import is_process_alive

logger = logging.getLogger(__name__)

FailureHook = Callable[[AgentView], None]

_LINE_SPLIT = re.compile(r"\r?\n")
_READ_CHUNK_SIZE = 65536
KILL_REQUESTED_LINE = "Agent kill requested."


@dataclass(slots=True)
class StartAgentInput:
    name: str
    command: str
    cwd: str
    args: list[str] = field(default_factory=list)
    adapter_id: str | None = None
    phase_id: str | None = None
    task_id: str | None = None
    project_name: str | None = None
    approved_adapter_spawn: bool = False
    env: dict[str, str] | None = None
    stdin: str | None = None
    timeout_ms: int | None = None
    startup_silence_timeout_ms: int | None = None


@dataclass(slots=True)
class RunResult:
    id: str
    command: str
    args: list[str]
    cwd: str
    stdout: str
    stderr: str
    duration_ms: int


@dataclass(slots=True, eq=False)
class _Run:
    token: int
    started_at: float
    last_output_at: float
    waiter: asyncio.Future[RunResult] | None = None
    stdout: list[str] = field(default_factory=list)
    stderr: list[str] = field(default_factory=list)
    output_received: bool = False
    timed_out: bool = False
    idle_bucket: int = 0
    stdin_error: AgentFailureError | None = None


@dataclass(slots=True, eq=False)
class _AgentRecord:
    view: AgentView
    launch: StartAgentInput
    run_token: int = 0
    stop_requested: bool = False
    process: ProcessHandle | None = None
    run: _Run | None = None
    task: asyncio.Task[None] | None = None

    def snapshot(self) -> AgentView:
        return self.view.copy()


class AgentSupervisor:
    """Owns worker-process lifetimes and their persisted registry entries.

    All bookkeeping runs on the event loop thread. Every callback that belongs
    to one spawn captures the record's ``run_token`` at spawn time and is a
    no-op once the token has moved on.
    """

    def __init__(
        self,
        *,
        registry: AgentRegistry | None = None,
        runner: ProcessRunner | None = None,
        settings: SupervisorConfig | None = None,
        on_failure: FailureHook | None = None,
    ) -> None:
        self.registry = registry or MemoryAgentRegistry()
        self.runner = runner or AsyncioProcessRunner()
        self.settings = settings or SupervisorConfig()
        self.on_failure = on_failure
        self._records: dict[str, _AgentRecord] = {}
        self._listeners: dict[str, list[EventListener]] = {}
        self._dirty: set[str] = set()
        self._flush_handle: asyncio.TimerHandle | None = None

    # events

    def subscribe(self, agent_id: str, listener: EventListener) -> Callable[[], None]:
        listeners = self._listeners.setdefault(agent_id, [])
        listeners.append(listener)

        def unsubscribe() -> None:
            current = self._listeners.get(agent_id, [])
            if listener in current:
                current.remove(listener)
            if not current:
                self._listeners.pop(agent_id, None)

        return unsubscribe

    def _emit(self, record: _AgentRecord, event: RuntimeEvent) -> None:
        for listener in list(self._listeners.get(record.view.id, [])):
            try:
                listener(event)
            except Exception:
                logger.exception("Agent event listener failed for %s", record.view.id)

    @staticmethod
    def _context(record: _AgentRecord) -> EventContext:
        view = record.view
        return EventContext(
            source="supervisor",
            agent_id=view.id,
            adapter_id=view.adapter_id,
            phase_id=view.phase_id,
            task_id=view.task_id,
            project_name=view.project_name,
        )

    def _emit_terminal(
        self, record: _AgentRecord, outcome: Outcome, summary: str
    ) -> None:
        self._emit(
            record,
            TerminalOutcomeEvent(
                context=self._context(record),
                outcome=outcome,
                summary=summary,
                exit_code=record.view.last_exit_code,
            ),
        )

    def _notify_failure(self, record: _AgentRecord) -> None:
        if self.on_failure is None:
            return
        try:
            self.on_failure(record.snapshot())
        except Exception:
            logger.exception("Agent failure hook raised for %s", record.view.id)

    # output tail

    def _tail_push(
        self,
        record: _AgentRecord,
        text: str,
        stream: OutputStream,
        *,
        diagnostic: bool = False,
    ) -> list[str]:
        lines = [line.rstrip() for line in _LINE_SPLIT.split(text)]
        lines = [line if diagnostic else truncate_tail_line(line) for line in lines if line]
        if not lines:
            return []
        tail = record.view.output_tail
        tail.extend(lines)
        if len(tail) > MAX_TAIL_LINES:
            del tail[: len(tail) - MAX_TAIL_LINES]
        for line in lines:
            self._emit(
                record,
                AdapterOutputEvent(
                    context=self._context(record),
                    stream=stream,
                    line=line,
                    is_diagnostic=diagnostic,
                ),
            )
        return lines

    def _append_system(self, record: _AgentRecord, line: str, *, diagnostic: bool) -> None:
        self._tail_push(record, line, "system", diagnostic=diagnostic)
        self._mark_dirty(record)

    # persistence

    def _mark_dirty(self, record: _AgentRecord) -> None:
        self._dirty.add(record.view.id)
        if self._flush_handle is not None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.flush_registry()
            return
        self._flush_handle = loop.call_later(
            self.settings.flush_debounce_seconds, self._debounced_flush
        )

    def _debounced_flush(self) -> None:
        self._flush_handle = None
        self.flush_registry()

    def _persist_now(self, record: _AgentRecord) -> None:
        self._dirty.add(record.view.id)
        self.flush_registry()

    def flush_registry(self) -> None:
        """Write every dirty record now, merging over the registry by id."""
        if self._flush_handle is not None:
            self._flush_handle.cancel()
            self._flush_handle = None
        updates = [
            self._records[agent_id].snapshot()
            for agent_id in sorted(self._dirty)
            if agent_id in self._records
        ]
        self._dirty.clear()
        self.registry.merge(updates)

    def close(self) -> None:
        if self._dirty or self._flush_handle is not None:
            self.flush_registry()

    # queries

    def _require(self, agent_id: str) -> _AgentRecord:
        record = self._records.get(agent_id)
        if record is None:
            raise NotFoundError(f"Agent not found: {agent_id}")
        return record

    def get(self, agent_id: str) -> AgentView:
        return self._require(agent_id).snapshot()

    def list(self) -> list[AgentView]:
        in_memory = [record.snapshot() for record in self._records.values()]
        return merge_views(self.registry.load(), in_memory)

    def reconcile_stale_running_agents(self) -> int:
        """Flip persisted RUNNING entries whose worker process is gone to STOPPED."""
        return self.reconcile_running_agents_where(
            lambda view: view.pid is None or not is_process_alive(view.pid)
        )

    def reconcile_running_agents_where(self, predicate: Callable[[AgentView], bool]) -> int:
        stopped_at = utcnow_iso()
        updates: list[AgentView] = []
        for view in self.registry.load():
            if view.status != "RUNNING" or view.id in self._records:
                continue
            if not predicate(view):
                continue
            view.status = "STOPPED"
            view.stopped_at = stopped_at
            updates.append(view)
        if updates:
            self.registry.merge(updates)
            logger.info("Reconciled %d stale RUNNING agent(s)", len(updates))
        return len(updates)

    # lifecycle

    def _create_record(self, launch: StartAgentInput) -> _AgentRecord:
        if not launch.name.strip():
            raise ValidationError("agent name must not be empty.")
        if not launch.command.strip():
            raise ValidationError("agent command must not be empty.")
        if not launch.cwd.strip():
            raise ValidationError("agent cwd must not be empty.")
        if not launch.approved_adapter_spawn:
            raise ValidationError(
                "raw agent command execution is blocked. "
                "Use approved adapter command builders only."
            )
        view = AgentView(
            id=str(uuid.uuid4()),
            name=launch.name,
            command=launch.command,
            cwd=launch.cwd,
            status="RUNNING",
            started_at=utcnow_iso(),
            args=list(launch.args),
            adapter_id=launch.adapter_id,
            phase_id=launch.phase_id,
            task_id=launch.task_id,
            project_name=launch.project_name,
        )
        record = _AgentRecord(view=view, launch=launch)
        self._records[view.id] = record
        return record

    async def start(self, launch: StartAgentInput) -> AgentView:
        record = self._create_record(launch)
        await self._spawn(record)
        self._persist_now(record)
        return record.snapshot()

    async def run_to_completion(self, launch: StartAgentInput) -> RunResult:
        record = self._create_record(launch)
        run = await self._spawn(record, wait=True)
        self._persist_now(record)
        if run.waiter is None:
            raise AgentFailureError(f"Agent run has no completion waiter: {launch.command}")
        return await run.waiter

    def kill(self, agent_id: str) -> AgentView:
        record = self._require(agent_id)
        if record.view.status == "RUNNING" and record.process is not None:
            record.stop_requested = True
            self._tail_push(record, KILL_REQUESTED_LINE, "system")
            self._signal_kill(record.process)
            record.view.status = "STOPPED"
            record.view.last_exit_code = -1
            record.view.stopped_at = utcnow_iso()
            logger.info("Killed agent %s (%s)", record.view.id, record.view.name)
            self._emit_terminal(record, "cancelled", KILL_REQUESTED_LINE)
            self._notify_failure(record)
        self._persist_now(record)
        return record.snapshot()

    async def restart(self, agent_id: str) -> AgentView:
        record = self._require(agent_id)
        previous = record.run
        if record.view.status == "RUNNING" and record.process is not None:
            record.run_token += 1
            self._signal_kill(record.process)
        if previous is not None and previous.waiter is not None and not previous.waiter.done():
            previous.waiter.set_exception(
                AgentFailureError(f"Agent was restarted: {record.view.command}", exit_code=-1)
            )
        record.view.status = "RUNNING"
        record.view.started_at = utcnow_iso()
        record.view.stopped_at = None
        record.view.last_exit_code = None
        await self._spawn(record)
        self._persist_now(record)
        return record.snapshot()

    def assign(
        self, agent_id: str, *, phase_id: str | None = None, task_id: str | None = None
    ) -> AgentView:
        record = self._require(agent_id)
        phase_id = (phase_id or "").strip() or None
        task_id = (task_id or "").strip() or None
        record.view.task_id = task_id
        record.view.phase_id = phase_id if task_id else None
        self._mark_dirty(record)
        return record.snapshot()

    @staticmethod
    def _signal_kill(process: ProcessHandle) -> None:
        try:
            process.kill()
        except ProcessLookupError:
            pass

    # spawning

    async def _spawn(self, record: _AgentRecord, *, wait: bool = False) -> _Run:
        record.run_token += 1
        token = record.run_token
        launch = record.launch
        loop = asyncio.get_running_loop()
        now = loop.time()
        run = _Run(
            token=token,
            started_at=now,
            last_output_at=now,
            waiter=loop.create_future() if wait else None,
        )
        record.run = run
        try:
            process = await self.runner.spawn(
                record.view.command, list(record.view.args), cwd=record.view.cwd, env=launch.env
            )
        except OSError as exc:
            self._on_spawn_error(record, token, exc)
            raise AgentFailureError(
                f"Agent supervisor execution error: {exc}",
                failure_kind=classify_adapter_failure(exc),
            ) from exc
        if token != record.run_token:
            self._signal_kill(process)
            return run
        record.process = process
        record.view.pid = process.pid
        record.stop_requested = False
        logger.debug(
            "Spawned agent %s pid=%s: %s %s",
            record.view.id,
            process.pid,
            record.view.command,
            " ".join(record.view.args),
        )
        record.task = loop.create_task(self._supervise(record, process, run))
        return run

    def _on_spawn_error(self, record: _AgentRecord, token: int, exc: OSError) -> None:
        if token != record.run_token:
            return
        record.view.status = "FAILED"
        record.view.stopped_at = utcnow_iso()
        record.process = None
        record.stop_requested = False
        self._tail_push(record, str(exc), "system")
        self._persist_now(record)
        logger.warning("Failed to spawn agent %s: %s", record.view.name, exc)
        self._emit_terminal(record, "failure", f"Agent supervisor execution error: {exc}")
        self._notify_failure(record)

    async def _supervise(self, record: _AgentRecord, process: ProcessHandle, run: _Run) -> None:
        loop = asyncio.get_running_loop()
        launch = record.launch
        timers: list[asyncio.TimerHandle] = []
        if launch.startup_silence_timeout_ms is not None:
            timers.append(
                loop.call_later(
                    launch.startup_silence_timeout_ms / 1000,
                    self._on_startup_silence,
                    record,
                    run,
                )
            )
        if launch.timeout_ms is not None:
            timers.append(
                loop.call_later(launch.timeout_ms / 1000, self._on_timeout, record, process, run)
            )
        heartbeat: asyncio.Task[None] | None = None
        if self.settings.heartbeat_interval_seconds > 0:
            heartbeat = loop.create_task(self._heartbeat(record, run))
        try:
            try:
                await self._write_stdin(process, launch.stdin)
            except AgentFailureError as exc:
                run.stdin_error = exc
                self._signal_kill(process)
            await asyncio.gather(
                self._pump(record, process.stdout, "stdout", run),
                self._pump(record, process.stderr, "stderr", run),
            )
            exit_code = await process.wait()
        finally:
            for timer in timers:
                timer.cancel()
            if heartbeat is not None:
                heartbeat.cancel()
        self._on_exit(record, run, exit_code)

    @staticmethod
    async def _write_stdin(process: ProcessHandle, payload: str | None) -> None:
        if process.stdin is None:
            if payload is not None:
                raise AgentFailureError("Process stdin is unavailable.")
            return
        try:
            if payload is not None:
                process.stdin.write(payload.encode("utf-8"))
                await process.stdin.drain()
            process.stdin.close()
        except (BrokenPipeError, ConnectionResetError):
            logger.debug("Process closed stdin before the prompt was fully written.")

    async def _pump(
        self,
        record: _AgentRecord,
        stream: asyncio.StreamReader | None,
        name: OutputStream,
        run: _Run,
    ) -> None:
        if stream is None:
            return
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        captured = run.stdout if name == "stdout" else run.stderr
        pending = ""
        while True:
            chunk = await stream.read(_READ_CHUNK_SIZE)
            text = decoder.decode(chunk, final=not chunk)
            if text:
                captured.append(text)
            if run.token != record.run_token:
                if not chunk:
                    return
                continue
            if text:
                run.output_received = True
                run.last_output_at = asyncio.get_running_loop().time()
                run.idle_bucket = 0
                *complete, pending = _LINE_SPLIT.split(pending + text)
                if complete:
                    self._tail_push(record, "\n".join(complete), name)
                    self._mark_dirty(record)
            if not chunk:
                if pending:
                    self._tail_push(record, pending, name)
                    self._mark_dirty(record)
                return

    def _on_startup_silence(self, record: _AgentRecord, run: _Run) -> None:
        if run.token != record.run_token or run.output_received or record.process is None:
            return
        diagnostic = startup_silence_diagnostic(
            command=record.view.command,
            timeout_ms=record.launch.startup_silence_timeout_ms or 0,
            agent_id=record.view.id,
            adapter_id=record.view.adapter_id,
        )
        self._append_system(record, format_diagnostic(diagnostic), diagnostic=True)

    def _on_timeout(self, record: _AgentRecord, process: ProcessHandle, run: _Run) -> None:
        if run.token != record.run_token:
            return
        run.timed_out = True
        diagnostic = execution_timeout_diagnostic(
            command=record.view.command,
            timeout_ms=record.launch.timeout_ms or 0,
            output_received=run.output_received,
            agent_id=record.view.id,
            adapter_id=record.view.adapter_id,
        )
        self._append_system(record, format_diagnostic(diagnostic), diagnostic=True)
        logger.warning("Agent %s timed out; killing pid %s", record.view.id, process.pid)
        self._signal_kill(process)

    async def _heartbeat(self, record: _AgentRecord, run: _Run) -> None:
        loop = asyncio.get_running_loop()
        interval = self.settings.heartbeat_interval_seconds
        threshold_ms = int(self.settings.idle_threshold_seconds * 1000)
        while True:
            await asyncio.sleep(interval)
            if run.token != record.run_token or record.view.status != "RUNNING":
                return
            now = loop.time()
            elapsed_ms = int((now - run.started_at) * 1000)
            idle_ms = int((now - run.last_output_at) * 1000)
            beat = heartbeat_diagnostic(
                command=record.view.command,
                elapsed_ms=elapsed_ms,
                idle_ms=idle_ms,
                agent_id=record.view.id,
                adapter_id=record.view.adapter_id,
            )
            self._append_system(record, format_diagnostic(beat), diagnostic=True)
            if threshold_ms <= 0:
                continue
            bucket = idle_ms // threshold_ms
            if bucket >= 1 and bucket > run.idle_bucket:
                run.idle_bucket = bucket
                idle = idle_diagnostic(
                    command=record.view.command,
                    elapsed_ms=elapsed_ms,
                    idle_ms=idle_ms,
                    idle_threshold_ms=threshold_ms,
                    agent_id=record.view.id,
                    adapter_id=record.view.adapter_id,
                )
                self._append_system(record, format_diagnostic(idle), diagnostic=True)

    def _on_exit(self, record: _AgentRecord, run: _Run, exit_code: int) -> None:
        if run.token != record.run_token:
            return
        view = record.view
        stopped = record.stop_requested
        if stopped:
            view.status = "STOPPED"
        else:
            view.status = "STOPPED" if exit_code == 0 else "FAILED"
            view.last_exit_code = exit_code
            view.stopped_at = utcnow_iso()
        record.process = None
        record.stop_requested = False
        self._persist_now(record)
        logger.info(
            "Agent %s exited with code %s (%s)", view.id, exit_code, view.status
        )

        stdout = "".join(run.stdout)
        stderr = "".join(run.stderr)
        command_line = f"{view.command} {' '.join(view.args)}".strip()
        error: AgentFailureError | None = None
        if run.stdin_error is not None:
            error = run.stdin_error
        elif run.timed_out:
            error = AgentFailureError(
                f"Command timed out after {record.launch.timeout_ms}ms: {view.command}",
                failure_kind="timeout",
                exit_code=exit_code,
            )
        elif stopped:
            error = AgentFailureError(
                f"Command failed with exit code {view.last_exit_code}: {command_line}",
                exit_code=view.last_exit_code,
            )
        elif exit_code != 0:
            error = AgentFailureError(
                f"Command failed with exit code {exit_code}: {command_line}",
                failure_kind=classify_failure_text(stderr),
                exit_code=exit_code,
            )

        if not stopped:
            if error is None:
                self._emit_terminal(record, "success", f"Command completed: {command_line}")
            else:
                self._emit_terminal(record, "failure", str(error))
        if view.status == "FAILED":
            self._notify_failure(record)

        waiter = run.waiter
        if waiter is None or waiter.done():
            return
        if error is not None:
            waiter.set_exception(error)
            return
        waiter.set_result(
            RunResult(
                id=view.id,
                command=view.command,
                args=list(view.args),
                cwd=view.cwd,
                stdout=stdout,
                stderr=stderr,
                duration_ms=int((asyncio.get_running_loop().time() - run.started_at) * 1000),
            )
        )
