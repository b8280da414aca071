from __future__ import annotations

import json
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Literal

from taskpilot.errors import RecordDecodeError
from taskpilot.models import ADAPTER_IDS
from taskpilot.state.engine import write_json_atomic

logger = logging.getLogger(__name__)

AgentStatus = Literal["RUNNING", "STOPPED", "FAILED"]
AGENT_STATUSES: tuple[str, ...] = ("RUNNING", "STOPPED", "FAILED")

MAX_TAIL_LINES = 50
MAX_TAIL_LINE_LENGTH = 240
_ELLIPSIS = "..."


def truncate_tail_line(line: str) -> str:
    if len(line) <= MAX_TAIL_LINE_LENGTH:
        return line
    return line[: MAX_TAIL_LINE_LENGTH - len(_ELLIPSIS)] + _ELLIPSIS


@dataclass(slots=True)
class AgentView:
    """Persisted snapshot of one supervised worker-process lifetime."""

    id: str
    name: str
    command: str
    cwd: str
    status: AgentStatus
    started_at: str
    args: list[str] = field(default_factory=list)
    adapter_id: str | None = None
    phase_id: str | None = None
    task_id: str | None = None
    project_name: str | None = None
    pid: int | None = None
    stopped_at: str | None = None
    last_exit_code: int | None = None
    output_tail: list[str] = field(default_factory=list)

    def copy(self) -> AgentView:
        return replace(self, args=list(self.args), output_tail=list(self.output_tail))

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "command": self.command,
            "args": list(self.args),
            "cwd": self.cwd,
            "adapterId": self.adapter_id,
            "phaseId": self.phase_id,
            "taskId": self.task_id,
            "projectName": self.project_name,
            "status": self.status,
            "pid": self.pid,
            "startedAt": self.started_at,
            "stoppedAt": self.stopped_at,
            "lastExitCode": self.last_exit_code,
            "outputTail": list(self.output_tail),
        }
        return {key: value for key, value in payload.items() if value is not None}


def _string_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, str)]


def _optional_int(value: Any) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return value


def decode_agent_view(payload: Any) -> AgentView:
    if not isinstance(payload, dict):
        raise RecordDecodeError("agent entry must be an object.")
    for key in ("id", "name", "command", "cwd", "startedAt"):
        if not isinstance(payload.get(key), str):
            raise RecordDecodeError(f"agent.{key} must be a string.")
    status = payload.get("status")
    if status not in AGENT_STATUSES:
        raise RecordDecodeError("agent.status must be RUNNING, STOPPED or FAILED.")
    adapter_id = payload.get("adapterId")

    def optional_str(key: str) -> str | None:
        value = payload.get(key)
        return value if isinstance(value, str) else None

    return AgentView(
        id=payload["id"],
        name=payload["name"],
        command=payload["command"],
        cwd=payload["cwd"],
        status=status,
        started_at=payload["startedAt"],
        args=_string_list(payload.get("args")),
        adapter_id=adapter_id if adapter_id in ADAPTER_IDS else None,
        phase_id=optional_str("phaseId"),
        task_id=optional_str("taskId"),
        project_name=optional_str("projectName"),
        pid=_optional_int(payload.get("pid")),
        stopped_at=optional_str("stoppedAt"),
        last_exit_code=_optional_int(payload.get("lastExitCode")),
        output_tail=[
            truncate_tail_line(line) for line in _string_list(payload.get("outputTail"))
        ],
    )


def decode_agent_views(payload: Any) -> list[AgentView]:
    """Decode a registry document, dropping entries that do not decode."""
    if not isinstance(payload, list):
        return []
    views: list[AgentView] = []
    for item in payload:
        try:
            views.append(decode_agent_view(item))
        except RecordDecodeError as exc:
            logger.debug("Dropping malformed agent registry entry: %s", exc)
    return views


def merge_views(current: list[AgentView], updates: list[AgentView]) -> list[AgentView]:
    """Replace entries by id, keeping existing order and appending new ids."""
    merged = list(current)
    index_by_id = {view.id: index for index, view in enumerate(merged)}
    for update in updates:
        index = index_by_id.get(update.id)
        if index is None:
            index_by_id[update.id] = len(merged)
            merged.append(update)
        else:
            merged[index] = update
    return merged


class AgentRegistry(ABC):
    """Shared store of agent views, merged by id on every write."""

    @abstractmethod
    def load(self) -> list[AgentView]:
        raise NotImplementedError

    @abstractmethod
    def replace_all(self, views: list[AgentView]) -> None:
        raise NotImplementedError

    def merge(self, updates: list[AgentView]) -> list[AgentView]:
        merged = merge_views(self.load(), updates)
        self.replace_all(merged)
        return merged


class MemoryAgentRegistry(AgentRegistry):
    def __init__(self) -> None:
        self._views: list[AgentView] = []

    def load(self) -> list[AgentView]:
        return [view.copy() for view in self._views]

    def replace_all(self, views: list[AgentView]) -> None:
        self._views = [view.copy() for view in views]


class FileAgentRegistry(AgentRegistry):
    def __init__(self, path: Path) -> None:
        self.path = path

    @property
    def corrupt_path(self) -> Path:
        return self.path.with_name(f"{self.path.name}.corrupt")

    def _load(self, *, preserve_unreadable: bool) -> list[AgentView] | None:
        try:
            raw = self.path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return []
        except OSError as exc:
            logger.warning("Unable to read agent registry %s: %s", self.path, exc)
            return []
        if not raw:
            return []
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as exc:
            logger.warning("Unable to read agent registry %s: %s", self.path, exc)
            if preserve_unreadable:
                try:
                    os.replace(self.path, self.corrupt_path)
                except OSError as move_exc:
                    logger.warning(
                        "Unable to preserve agent registry %s: %s", self.path, move_exc
                    )
                    return None
                logger.warning("Moved unreadable agent registry to %s", self.corrupt_path)
            return []
        return decode_agent_views(payload)

    def load(self) -> list[AgentView]:
        return self._load(preserve_unreadable=False) or []

    def merge(self, updates: list[AgentView]) -> list[AgentView]:
        current = self._load(preserve_unreadable=True)
        if current is None:
            logger.warning("Skipping agent registry write; %s is left untouched", self.path)
            return merge_views([], updates)
        merged = merge_views(current, updates)
        self.replace_all(merged)
        return merged

    def replace_all(self, views: list[AgentView]) -> None:
        try:
            write_json_atomic(self.path, [view.to_dict() for view in views])
        except OSError as exc:
            logger.warning("Unable to write agent registry %s: %s", self.path, exc)


def build_agent_registry(backend: str, path: Path) -> AgentRegistry:
    if backend == "memory":
        return MemoryAgentRegistry()
    if backend == "file":
        return FileAgentRegistry(path)
    raise ValueError(f"Unsupported agent registry backend: {backend}")
