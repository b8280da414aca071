from __future__ import annotations

import logging
import shlex
import subprocess
from pathlib import Path

from taskpilot.errors import TaskpilotError

logger = logging.getLogger(__name__)

RUNTIME_ARTIFACT_PREFIX = ".taskpilot/"


class GitCommandError(TaskpilotError):
    """Raised when a git or gh invocation exits non-zero."""


class GitClient:
    """Synchronous git and gh helpers scoped to one repository root."""

    def __init__(self, repo_root: Path) -> None:
        self.repo_root = repo_root.resolve()

    def _run(
        self, command: list[str], check: bool = True
    ) -> subprocess.CompletedProcess[str]:
        proc = subprocess.run(
            command,
            cwd=self.repo_root,
            text=True,
            capture_output=True,
        )
        if check and proc.returncode != 0:
            raise GitCommandError(proc.stderr.strip() or proc.stdout.strip())
        return proc

    def _run_git(self, args: list[str], check: bool = True) -> subprocess.CompletedProcess[str]:
        return self._run(["git", "--no-pager", *args], check=check)

    def hard_reset(self) -> None:
        """Discard tracked and untracked changes left behind by a failed task."""
        logger.warning("Hard-resetting repository at %s", self.repo_root)
        self._run_git(["reset", "--hard"])
        self._run_git(["clean", "-fd", "--exclude", RUNTIME_ARTIFACT_PREFIX])

    def remote_branch_exists(self, branch_name: str, remote: str = "origin") -> bool:
        proc = self._run_git(["ls-remote", "--heads", remote, branch_name], check=False)
        return proc.returncode == 0 and bool(proc.stdout.strip())

    def command_available(self, executable: str) -> bool:
        if not executable.strip():
            return False
        check = self._run(
            ["sh", "-lc", f"command -v {shlex.quote(executable)} >/dev/null 2>&1"],
            check=False,
        )
        return check.returncode == 0

    def github_authenticated(self) -> bool:
        return self._run(["gh", "auth", "status"], check=False).returncode == 0
