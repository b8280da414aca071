"""Synthesized liveness diagnostic lines appended to an agent's output tail.

Each line is a fixed prefix followed by a JSON payload so status surfaces can
read the latest diagnostic back out of a persisted tail.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Literal

from taskpilot.models import utcnow_iso

DIAGNOSTIC_PREFIX = "[taskpilot][agent-runtime] "
DIAGNOSTIC_MARKER = "taskpilot.agent.runtime"

DiagnosticEvent = Literal[
    "heartbeat",
    "idle-diagnostic",
    "startup-silence-timeout",
    "execution-timeout",
]
DIAGNOSTIC_EVENTS: tuple[str, ...] = (
    "heartbeat",
    "idle-diagnostic",
    "startup-silence-timeout",
    "execution-timeout",
)


@dataclass(slots=True, frozen=True)
class RuntimeDiagnostic:
    event: DiagnosticEvent
    command: str
    message: str
    occurred_at: str
    elapsed_ms: int = 0
    idle_ms: int = 0
    agent_id: str | None = None
    adapter_id: str | None = None
    idle_threshold_ms: int | None = None
    timeout_ms: int | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "marker": DIAGNOSTIC_MARKER,
            "event": self.event,
            "occurredAt": self.occurred_at,
            "agentId": self.agent_id,
            "adapterId": self.adapter_id,
            "command": self.command,
            "elapsedMs": self.elapsed_ms,
            "idleMs": self.idle_ms,
            "idleThresholdMs": self.idle_threshold_ms,
            "timeoutMs": self.timeout_ms,
            "message": self.message,
        }
        return {key: value for key, value in payload.items() if value is not None}


def format_duration_compact(milliseconds: float) -> str:
    seconds = max(0, int(milliseconds // 1000))
    hours, remainder = divmod(seconds, 3600)
    minutes, remaining_seconds = divmod(remainder, 60)
    if hours > 0:
        return f"{hours}h{minutes}m{remaining_seconds}s"
    if minutes > 0:
        return f"{minutes}m{remaining_seconds}s"
    return f"{remaining_seconds}s"


def heartbeat_diagnostic(
    *,
    command: str,
    elapsed_ms: int,
    idle_ms: int,
    agent_id: str | None = None,
    adapter_id: str | None = None,
) -> RuntimeDiagnostic:
    return RuntimeDiagnostic(
        event="heartbeat",
        command=command,
        occurred_at=utcnow_iso(),
        agent_id=agent_id,
        adapter_id=adapter_id,
        elapsed_ms=elapsed_ms,
        idle_ms=idle_ms,
        message=(
            f"Agent heartbeat: running {format_duration_compact(elapsed_ms)}; "
            f"last output {format_duration_compact(idle_ms)} ago."
        ),
    )


def idle_diagnostic(
    *,
    command: str,
    elapsed_ms: int,
    idle_ms: int,
    idle_threshold_ms: int,
    agent_id: str | None = None,
    adapter_id: str | None = None,
) -> RuntimeDiagnostic:
    return RuntimeDiagnostic(
        event="idle-diagnostic",
        command=command,
        occurred_at=utcnow_iso(),
        agent_id=agent_id,
        adapter_id=adapter_id,
        elapsed_ms=elapsed_ms,
        idle_ms=idle_ms,
        idle_threshold_ms=idle_threshold_ms,
        message=(
            f"Agent idle diagnostic: no output for {format_duration_compact(idle_ms)} "
            f"while running {format_duration_compact(elapsed_ms)}."
        ),
    )


def startup_silence_diagnostic(
    *,
    command: str,
    timeout_ms: int,
    agent_id: str | None = None,
    adapter_id: str | None = None,
) -> RuntimeDiagnostic:
    return RuntimeDiagnostic(
        event="startup-silence-timeout",
        command=command,
        occurred_at=utcnow_iso(),
        agent_id=agent_id,
        adapter_id=adapter_id,
        elapsed_ms=timeout_ms,
        idle_ms=timeout_ms,
        timeout_ms=timeout_ms,
        message="No process output was received before startup silence timeout elapsed.",
    )


def execution_timeout_diagnostic(
    *,
    command: str,
    timeout_ms: int,
    output_received: bool,
    agent_id: str | None = None,
    adapter_id: str | None = None,
) -> RuntimeDiagnostic:
    suffix = "" if output_received else " No output was received."
    return RuntimeDiagnostic(
        event="execution-timeout",
        command=command,
        occurred_at=utcnow_iso(),
        agent_id=agent_id,
        adapter_id=adapter_id,
        elapsed_ms=timeout_ms,
        timeout_ms=timeout_ms,
        message=(
            f"Execution timed out after {format_duration_compact(timeout_ms)}; "
            f"terminating process.{suffix}"
        ),
    )


def format_diagnostic(diagnostic: RuntimeDiagnostic) -> str:
    return DIAGNOSTIC_PREFIX + json.dumps(diagnostic.to_dict(), separators=(",", ":"))


def is_diagnostic_line(line: str) -> bool:
    return line.startswith(DIAGNOSTIC_PREFIX)


def _non_negative_int(value: Any) -> int | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
        return None
    return int(value)


def _optional_str(value: Any) -> str | None:
    return value if isinstance(value, str) else None


def parse_runtime_diagnostic(line: str) -> RuntimeDiagnostic | None:
    if not is_diagnostic_line(line):
        return None
    raw = line[len(DIAGNOSTIC_PREFIX) :].strip()
    if not raw:
        return None
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError:
        return None
    if not isinstance(payload, dict) or payload.get("marker") != DIAGNOSTIC_MARKER:
        return None
    event = payload.get("event")
    command = payload.get("command")
    message = payload.get("message")
    occurred_at = payload.get("occurredAt")
    if event not in DIAGNOSTIC_EVENTS:
        return None
    if not all(isinstance(item, str) for item in (command, message, occurred_at)):
        return None
    elapsed_ms = _non_negative_int(payload.get("elapsedMs", 0))
    idle_ms = _non_negative_int(payload.get("idleMs", 0))
    if elapsed_ms is None or idle_ms is None:
        return None
    idle_threshold_ms = _non_negative_int(payload.get("idleThresholdMs"))
    if event == "idle-diagnostic" and idle_threshold_ms is None:
        return None
    return RuntimeDiagnostic(
        event=event,
        command=command,
        message=message,
        occurred_at=occurred_at,
        elapsed_ms=elapsed_ms,
        idle_ms=idle_ms,
        agent_id=_optional_str(payload.get("agentId")),
        adapter_id=_optional_str(payload.get("adapterId")),
        idle_threshold_ms=idle_threshold_ms,
        timeout_ms=_non_negative_int(payload.get("timeoutMs")),
    )


def latest_runtime_diagnostic(lines: list[str]) -> RuntimeDiagnostic | None:
    for line in reversed(lines):
        parsed = parse_runtime_diagnostic(line)
        if parsed is not None:
            return parsed
    return None
