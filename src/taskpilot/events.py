from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Literal, assert_never

EventSource = Literal["supervisor", "control", "execution"]
OutputStream = Literal["stdout", "stderr", "system"]
Outcome = Literal["success", "failure", "cancelled"]


@dataclass(slots=True, frozen=True)
class EventContext:
    source: EventSource
    agent_id: str | None = None
    adapter_id: str | None = None
    phase_id: str | None = None
    task_id: str | None = None
    project_name: str | None = None


@dataclass(slots=True, frozen=True)
class AdapterOutputEvent:
    context: EventContext
    stream: OutputStream
    line: str
    is_diagnostic: bool = False


@dataclass(slots=True, frozen=True)
class TerminalOutcomeEvent:
    context: EventContext
    outcome: Outcome
    summary: str
    exit_code: int | None = None


@dataclass(slots=True, frozen=True)
class TaskLifecycleEvent:
    context: EventContext
    message: str


RuntimeEvent = AdapterOutputEvent | TerminalOutcomeEvent | TaskLifecycleEvent
EventListener = Callable[[RuntimeEvent], None]


def format_event(event: RuntimeEvent) -> str:
    """Render an event as a single human-readable line."""
    if isinstance(event, AdapterOutputEvent):
        return f"[{event.stream}] {event.line}"
    if isinstance(event, TerminalOutcomeEvent):
        code = "" if event.exit_code is None else f" (exit {event.exit_code})"
        return f"[{event.outcome}] {event.summary}{code}"
    if isinstance(event, TaskLifecycleEvent):
        return f"[task] {event.message}"
    assert_never(event)
