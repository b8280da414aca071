from __future__ import annotations

from typing import Literal

RecoverableCategory = Literal["DIRTY_WORKTREE", "MISSING_COMMIT", "AGENT_FAILURE"]


class TaskpilotError(RuntimeError):
    """Base class for errors raised by taskpilot."""


class ValidationError(TaskpilotError):
    """Raised when caller input is rejected before any state is touched."""


class NotFoundError(TaskpilotError):
    """Raised when a phase, task or agent id does not resolve."""


class ConfigError(TaskpilotError):
    """Raised when taskpilot.toml cannot be loaded."""


class StateError(TaskpilotError):
    """Raised when the project state document cannot be read or written."""


class StateFileNotFoundError(StateError):
    """Raised when the project state document does not exist yet."""


class RecordDecodeError(StateError):
    """Raised when a persisted payload does not match the expected shape."""


class RunLockError(TaskpilotError):
    """Raised when the execution run lock cannot be acquired."""


class RecoverableError(TaskpilotError):
    """Errors that may be routed through the external recovery engine."""

    category: RecoverableCategory


class DirtyWorktreeError(RecoverableError):
    category: RecoverableCategory = "DIRTY_WORKTREE"

    def __init__(self, message: str = "Git working tree is not clean.") -> None:
        super().__init__(message)


class MissingCommitError(RecoverableError):
    category: RecoverableCategory = "MISSING_COMMIT"

    def __init__(
        self,
        message: str = (
            "CI integration requires a commit before push/PR, "
            "but there are no local changes to commit."
        ),
    ) -> None:
        super().__init__(message)


class AgentFailureError(RecoverableError):
    category: RecoverableCategory = "AGENT_FAILURE"

    def __init__(
        self,
        message: str,
        *,
        failure_kind: str = "unknown",
        exit_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.failure_kind = failure_kind
        self.exit_code = exit_code


class PhasePreflightError(TaskpilotError):
    """Raised when phase startup validation fails before any git or task work.

    Never routed through the recovery ledger: terminal phase status, an empty
    branch name or a stale active phase reference all need an operator.
    """
