from __future__ import annotations

import json
import re
import uuid

from taskpilot.errors import (
    AgentFailureError,
    PhasePreflightError,
    RecordDecodeError,
    RecoverableError,
    ValidationError,
)
from taskpilot.models import (
    ADAPTER_FAILURE_KINDS,
    EXCEPTION_CATEGORIES,
    ExceptionSnapshot,
    RecoveryAttemptRecord,
    RecoveryResult,
    utcnow_iso,
)

_JSON_FENCE = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.DOTALL)


def classify_recovery_exception(
    message: str,
    *,
    category: str | None = None,
    phase_id: str | None = None,
    task_id: str | None = None,
    adapter_failure_kind: str | None = None,
) -> ExceptionSnapshot:
    message = message.strip()
    if not message:
        raise ValidationError("Recovery exception message must not be empty.")
    category = category or "UNKNOWN"
    if category not in EXCEPTION_CATEGORIES:
        raise ValidationError(f"Unknown exception category: {category}")
    if adapter_failure_kind is not None and adapter_failure_kind not in ADAPTER_FAILURE_KINDS:
        raise ValidationError(f"Unknown adapter failure kind: {adapter_failure_kind}")
    return ExceptionSnapshot(
        category=category,
        message=message,
        phase_id=phase_id,
        task_id=task_id,
        adapter_failure_kind=adapter_failure_kind,
    )


def snapshot_from_error(
    error: BaseException, *, phase_id: str | None = None, task_id: str | None = None
) -> ExceptionSnapshot:
    """Describe an error for the recovery ledger.

    Preflight errors are refused: they need an operator, not a recovery worker.
    """
    if isinstance(error, PhasePreflightError):
        raise ValidationError(f"Preflight errors are not recoverable: {error}")
    category = error.category if isinstance(error, RecoverableError) else None
    failure_kind = error.failure_kind if isinstance(error, AgentFailureError) else None
    return classify_recovery_exception(
        str(error) or type(error).__name__,
        category=category,
        phase_id=phase_id,
        task_id=task_id,
        adapter_failure_kind=failure_kind,
    )


def is_recoverable_exception(exception: ExceptionSnapshot) -> bool:
    return exception.category != "UNKNOWN"


def validate_recovery_actions(actions_taken: list[str]) -> None:
    for action in actions_taken:
        normalized = action.strip()
        if not normalized:
            raise ValidationError("Recovery action list contains an empty action.")
        lower = normalized.lower()
        if not lower.startswith("git "):
            continue
        if lower.startswith("git push") or lower.startswith("git rebase"):
            raise ValidationError(
                f"Recovery action is forbidden by policy guardrails: {normalized}"
            )
        if lower.startswith("git add") or lower.startswith("git commit"):
            continue
        raise ValidationError(
            f"Recovery action is not allowed by single-path guardrails: {normalized}"
        )


def parse_recovery_result(raw_output: str) -> RecoveryResult:
    """Decode the JSON verdict a recovery worker printed on stdout."""
    candidates = [raw_output.strip()]
    candidates.extend(match.group(1) for match in _JSON_FENCE.finditer(raw_output))
    start, end = raw_output.find("{"), raw_output.rfind("}")
    if 0 <= start < end:
        candidates.append(raw_output[start : end + 1])
    for candidate in candidates:
        try:
            payload = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        try:
            return RecoveryResult.from_dict(payload)
        except RecordDecodeError:
            continue
    raise RecordDecodeError("Recovery adapter output is not contract-compliant JSON.")


def build_recovery_attempt_record(
    *, exception: ExceptionSnapshot, result: RecoveryResult, attempt_number: int
) -> RecoveryAttemptRecord:
    if attempt_number < 1:
        raise ValidationError("Recovery attemptNumber must be a positive integer.")
    validate_recovery_actions(result.actions_taken or [])
    return RecoveryAttemptRecord(
        id=str(uuid.uuid4()),
        occurred_at=utcnow_iso(),
        attempt_number=attempt_number,
        exception=exception,
        result=result,
    )
