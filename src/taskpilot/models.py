from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal

from taskpilot.errors import RecordDecodeError

TaskStatus = Literal["TODO", "IN_PROGRESS", "DONE", "FAILED", "CI_FIX"]
PhaseStatus = Literal[
    "PLANNING",
    "BRANCHING",
    "CODING",
    "CREATING_PR",
    "AWAITING_CI",
    "CI_FAILED",
    "READY_FOR_REVIEW",
    "DONE",
]
PhaseFailureKind = Literal["LOCAL_TESTER", "REMOTE_CI", "AGENT_FAILURE"]
ExceptionCategory = Literal["DIRTY_WORKTREE", "MISSING_COMMIT", "AGENT_FAILURE", "UNKNOWN"]
AdapterFailureKind = Literal["auth", "network", "missing-binary", "timeout", "unknown"]
CompletionContract = Literal["PR_CREATION", "REMOTE_PUSH", "CI_TRIGGERED_UPDATE"]
VerificationStatus = Literal["PASSED", "FAILED"]
RecoveryStatus = Literal["fixed", "unfixable"]

TASK_STATUSES: tuple[str, ...] = ("TODO", "IN_PROGRESS", "DONE", "FAILED", "CI_FIX")
PHASE_STATUSES: tuple[str, ...] = (
    "PLANNING",
    "BRANCHING",
    "CODING",
    "CREATING_PR",
    "AWAITING_CI",
    "CI_FAILED",
    "READY_FOR_REVIEW",
    "DONE",
)
PHASE_FAILURE_KINDS: tuple[str, ...] = ("LOCAL_TESTER", "REMOTE_CI", "AGENT_FAILURE")
EXCEPTION_CATEGORIES: tuple[str, ...] = (
    "DIRTY_WORKTREE",
    "MISSING_COMMIT",
    "AGENT_FAILURE",
    "UNKNOWN",
)
ADAPTER_FAILURE_KINDS: tuple[str, ...] = (
    "auth",
    "network",
    "missing-binary",
    "timeout",
    "unknown",
)
COMPLETION_CONTRACTS: tuple[str, ...] = ("PR_CREATION", "REMOTE_PUSH", "CI_TRIGGERED_UPDATE")
ADAPTER_IDS: tuple[str, ...] = ("CODEX_CLI", "CLAUDE_CLI", "GEMINI_CLI", "MOCK_CLI")
UNASSIGNED = "UNASSIGNED"

MAX_PERSISTED_TEXT = 4000
TRUNCATION_MARKER = "... [truncated]"


def utcnow_iso() -> str:
    return datetime.now(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def cap_persisted_text(value: str, limit: int = MAX_PERSISTED_TEXT) -> str:
    """Bound text stored on a task, keeping the head and marking the cut."""
    if len(value) <= limit:
        return value
    return value[: max(0, limit - len(TRUNCATION_MARKER))] + TRUNCATION_MARKER


def _require_str(payload: dict[str, Any], key: str, where: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str):
        raise RecordDecodeError(f"{where}.{key} must be a string.")
    return value


def _optional_str(payload: dict[str, Any], key: str, where: str) -> str | None:
    value = payload.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise RecordDecodeError(f"{where}.{key} must be a string when present.")
    return value


def _require_choice(
    payload: dict[str, Any],
    key: str,
    choices: tuple[str, ...],
    where: str,
    default: str | None = None,
) -> str:
    value = payload.get(key, default)
    if value not in choices:
        raise RecordDecodeError(f"{where}.{key} must be one of {', '.join(choices)}.")
    return str(value)


def _optional_choice(
    payload: dict[str, Any], key: str, choices: tuple[str, ...], where: str
) -> str | None:
    if payload.get(key) is None:
        return None
    return _require_choice(payload, key, choices, where)


def _string_list(payload: dict[str, Any], key: str, where: str) -> list[str]:
    value = payload.get(key, [])
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise RecordDecodeError(f"{where}.{key} must be a list of strings.")
    return list(value)


def _require_dict(value: Any, where: str) -> dict[str, Any]:
    if not isinstance(value, dict):
        raise RecordDecodeError(f"{where} must be an object.")
    return value


def _compact(payload: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in payload.items() if value is not None}


@dataclass(slots=True)
class ExceptionSnapshot:
    category: str
    message: str
    phase_id: str | None = None
    task_id: str | None = None
    adapter_failure_kind: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return _compact(
            {
                "category": self.category,
                "message": self.message,
                "phaseId": self.phase_id,
                "taskId": self.task_id,
                "adapterFailureKind": self.adapter_failure_kind,
            }
        )

    @classmethod
    def from_dict(cls, payload: Any) -> ExceptionSnapshot:
        data = _require_dict(payload, "exception")
        return cls(
            category=_require_choice(data, "category", EXCEPTION_CATEGORIES, "exception"),
            message=_require_str(data, "message", "exception"),
            phase_id=_optional_str(data, "phaseId", "exception"),
            task_id=_optional_str(data, "taskId", "exception"),
            adapter_failure_kind=_optional_choice(
                data, "adapterFailureKind", ADAPTER_FAILURE_KINDS, "exception"
            ),
        )


@dataclass(slots=True)
class RecoveryResult:
    status: str
    reasoning: str
    actions_taken: list[str] | None = None
    files_touched: list[str] | None = None

    def to_dict(self) -> dict[str, Any]:
        return _compact(
            {
                "status": self.status,
                "reasoning": self.reasoning,
                "actionsTaken": self.actions_taken,
                "filesTouched": self.files_touched,
            }
        )

    @classmethod
    def from_dict(cls, payload: Any) -> RecoveryResult:
        data = _require_dict(payload, "result")
        return cls(
            status=_require_choice(data, "status", ("fixed", "unfixable"), "result"),
            reasoning=_require_str(data, "reasoning", "result"),
            actions_taken=_string_list(data, "actionsTaken", "result")
            if "actionsTaken" in data
            else None,
            files_touched=_string_list(data, "filesTouched", "result")
            if "filesTouched" in data
            else None,
        )


@dataclass(slots=True, frozen=True)
class RecoveryAttemptRecord:
    id: str
    occurred_at: str
    attempt_number: int
    exception: ExceptionSnapshot
    result: RecoveryResult

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "occurredAt": self.occurred_at,
            "attemptNumber": self.attempt_number,
            "exception": self.exception.to_dict(),
            "result": self.result.to_dict(),
        }

    @classmethod
    def from_dict(cls, payload: Any) -> RecoveryAttemptRecord:
        data = _require_dict(payload, "recoveryAttempt")
        attempt_number = data.get("attemptNumber")
        if not isinstance(attempt_number, int) or attempt_number < 1:
            raise RecordDecodeError("recoveryAttempt.attemptNumber must be a positive integer.")
        return cls(
            id=_require_str(data, "id", "recoveryAttempt"),
            occurred_at=_require_str(data, "occurredAt", "recoveryAttempt"),
            attempt_number=attempt_number,
            exception=ExceptionSnapshot.from_dict(data.get("exception")),
            result=RecoveryResult.from_dict(data.get("result")),
        )


@dataclass(slots=True)
class ProbeResult:
    name: str
    success: bool
    details: str

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "success": self.success, "details": self.details}


@dataclass(slots=True)
class CompletionVerification:
    checked_at: str
    contracts: list[str]
    status: str
    probes: list[ProbeResult] = field(default_factory=list)
    missing_side_effects: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "checkedAt": self.checked_at,
            "contracts": list(self.contracts),
            "status": self.status,
            "probes": [probe.to_dict() for probe in self.probes],
            "missingSideEffects": list(self.missing_side_effects),
        }

    @classmethod
    def from_dict(cls, payload: Any) -> CompletionVerification:
        data = _require_dict(payload, "completionVerification")
        contracts = _string_list(data, "contracts", "completionVerification")
        if not contracts or any(item not in COMPLETION_CONTRACTS for item in contracts):
            raise RecordDecodeError(
                "completionVerification.contracts must be a non-empty list of known contracts."
            )
        raw_probes = data.get("probes", [])
        if not isinstance(raw_probes, list):
            raise RecordDecodeError("completionVerification.probes must be a list.")
        probes: list[ProbeResult] = []
        for raw_probe in raw_probes:
            probe = _require_dict(raw_probe, "completionVerification.probes[]")
            success = probe.get("success")
            if not isinstance(success, bool):
                raise RecordDecodeError("completionVerification.probes[].success must be bool.")
            probes.append(
                ProbeResult(
                    name=_require_str(probe, "name", "probe"),
                    success=success,
                    details=str(probe.get("details", "")),
                )
            )
        return cls(
            checked_at=_require_str(data, "checkedAt", "completionVerification"),
            contracts=contracts,
            status=_require_choice(
                data, "status", ("PASSED", "FAILED"), "completionVerification"
            ),
            probes=probes,
            missing_side_effects=_string_list(
                data, "missingSideEffects", "completionVerification"
            ),
        )


@dataclass(slots=True)
class Task:
    id: str
    title: str
    description: str
    status: str = "TODO"
    assignee: str = UNASSIGNED
    dependencies: list[str] = field(default_factory=list)
    result_context: str | None = None
    error_logs: str | None = None
    error_category: str | None = None
    adapter_failure_kind: str | None = None
    completion_verification: CompletionVerification | None = None
    recovery_attempts: list[RecoveryAttemptRecord] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "status": self.status,
            "assignee": self.assignee,
            "dependencies": list(self.dependencies),
            "resultContext": self.result_context,
            "errorLogs": self.error_logs,
            "errorCategory": self.error_category,
            "adapterFailureKind": self.adapter_failure_kind,
            "completionVerification": (
                self.completion_verification.to_dict()
                if self.completion_verification is not None
                else None
            ),
        }
        if self.recovery_attempts:
            payload["recoveryAttempts"] = [item.to_dict() for item in self.recovery_attempts]
        return _compact(payload)

    @classmethod
    def from_dict(cls, payload: Any) -> Task:
        data = _require_dict(payload, "task")
        verification = data.get("completionVerification")
        return cls(
            id=_require_str(data, "id", "task"),
            title=_require_str(data, "title", "task"),
            description=_require_str(data, "description", "task"),
            status=_require_choice(data, "status", TASK_STATUSES, "task", default="TODO"),
            assignee=_require_choice(
                data, "assignee", (*ADAPTER_IDS, UNASSIGNED), "task", default=UNASSIGNED
            ),
            dependencies=_string_list(data, "dependencies", "task"),
            result_context=_optional_str(data, "resultContext", "task"),
            error_logs=_optional_str(data, "errorLogs", "task"),
            error_category=_optional_choice(data, "errorCategory", EXCEPTION_CATEGORIES, "task"),
            adapter_failure_kind=_optional_choice(
                data, "adapterFailureKind", ADAPTER_FAILURE_KINDS, "task"
            ),
            completion_verification=(
                CompletionVerification.from_dict(verification)
                if verification is not None
                else None
            ),
            recovery_attempts=[
                RecoveryAttemptRecord.from_dict(item)
                for item in data.get("recoveryAttempts", []) or []
            ],
        )


@dataclass(slots=True)
class Phase:
    id: str
    name: str
    branch_name: str
    status: str = "PLANNING"
    tasks: list[Task] = field(default_factory=list)
    pr_url: str | None = None
    ci_status_context: str | None = None
    failure_kind: str | None = None
    recovery_attempts: list[RecoveryAttemptRecord] = field(default_factory=list)

    def find_task(self, task_id: str) -> Task | None:
        for task in self.tasks:
            if task.id == task_id:
                return task
        return None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "branchName": self.branch_name,
            "status": self.status,
            "tasks": [task.to_dict() for task in self.tasks],
            "prUrl": self.pr_url,
            "ciStatusContext": self.ci_status_context,
            "failureKind": self.failure_kind,
        }
        if self.recovery_attempts:
            payload["recoveryAttempts"] = [item.to_dict() for item in self.recovery_attempts]
        return _compact(payload)

    @classmethod
    def from_dict(cls, payload: Any) -> Phase:
        data = _require_dict(payload, "phase")
        raw_tasks = data.get("tasks", [])
        if not isinstance(raw_tasks, list):
            raise RecordDecodeError("phase.tasks must be a list.")
        phase = cls(
            id=_require_str(data, "id", "phase"),
            name=_require_str(data, "name", "phase"),
            branch_name=_require_str(data, "branchName", "phase"),
            status=_require_choice(data, "status", PHASE_STATUSES, "phase", default="PLANNING"),
            tasks=[Task.from_dict(item) for item in raw_tasks],
            pr_url=_optional_str(data, "prUrl", "phase"),
            ci_status_context=_optional_str(data, "ciStatusContext", "phase"),
            failure_kind=_optional_choice(data, "failureKind", PHASE_FAILURE_KINDS, "phase"),
            recovery_attempts=[
                RecoveryAttemptRecord.from_dict(item)
                for item in data.get("recoveryAttempts", []) or []
            ],
        )
        if phase.status != "CI_FAILED":
            phase.failure_kind = None
        return phase


@dataclass(slots=True)
class ProjectState:
    project_name: str
    root_dir: str
    phases: list[Phase] = field(default_factory=list)
    active_phase_id: str | None = None
    created_at: str = field(default_factory=utcnow_iso)
    updated_at: str = field(default_factory=utcnow_iso)

    def find_phase(self, phase_id: str) -> Phase | None:
        for phase in self.phases:
            if phase.id == phase_id:
                return phase
        return None

    def find_task_anywhere(self, task_id: str) -> tuple[Phase, Task] | None:
        for phase in self.phases:
            task = phase.find_task(task_id)
            if task is not None:
                return phase, task
        return None

    def active_phase(self) -> Phase | None:
        if self.active_phase_id:
            phase = self.find_phase(self.active_phase_id)
            if phase is not None:
                return phase
        return self.phases[0] if self.phases else None

    def to_dict(self) -> dict[str, Any]:
        return _compact(
            {
                "projectName": self.project_name,
                "rootDir": self.root_dir,
                "phases": [phase.to_dict() for phase in self.phases],
                "activePhaseId": self.active_phase_id,
                "createdAt": self.created_at,
                "updatedAt": self.updated_at,
            }
        )

    @classmethod
    def from_dict(cls, payload: Any) -> ProjectState:
        data = _require_dict(payload, "state")
        raw_phases = data.get("phases", [])
        if not isinstance(raw_phases, list):
            raise RecordDecodeError("state.phases must be a list.")
        return cls(
            project_name=_require_str(data, "projectName", "state"),
            root_dir=_require_str(data, "rootDir", "state"),
            phases=[Phase.from_dict(item) for item in raw_phases],
            active_phase_id=_optional_str(data, "activePhaseId", "state"),
            created_at=_require_str(data, "createdAt", "state"),
            updated_at=_require_str(data, "updatedAt", "state"),
        )
