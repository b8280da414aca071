from __future__ import annotations

import json
import logging
import os
import re
import socket
import time
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Literal

from taskpilot.errors import RunLockError, ValidationError
from taskpilot.models import utcnow_iso

logger = logging.getLogger(__name__)

LockOwner = Literal["CLI_PHASE_RUN", "WEB_AUTO_MODE"]
LOCK_OWNERS: tuple[str, ...] = ("CLI_PHASE_RUN", "WEB_AUTO_MODE")


@dataclass(slots=True, frozen=True)
class RunLockRecord:
    pid: int
    owner: str
    projectName: str
    acquiredAt: str
    hostname: str


def is_process_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def _slug(value: str) -> str:
    slug = re.sub(r"[^A-Za-z0-9._-]+", "-", value.strip()).strip("-.")
    return slug or "project"


def lock_file_path(project_root: Path, project_name: str) -> Path:
    return project_root / ".taskpilot" / "locks" / f"{_slug(project_name)}.lock.json"


def _parse_record(raw: str) -> RunLockRecord | None:
    try:
        payload: Any = json.loads(raw)
    except json.JSONDecodeError:
        return None
    if not isinstance(payload, dict):
        return None
    pid = payload.get("pid")
    if isinstance(pid, bool) or not isinstance(pid, int) or pid <= 0:
        return None
    if payload.get("owner") not in LOCK_OWNERS:
        return None
    for key in ("projectName", "acquiredAt"):
        value = payload.get(key)
        if not isinstance(value, str) or not value.strip():
            return None
    hostname = payload.get("hostname")
    return RunLockRecord(
        pid=pid,
        owner=payload["owner"],
        projectName=payload["projectName"],
        acquiredAt=payload["acquiredAt"],
        hostname=hostname if isinstance(hostname, str) else "",
    )


class ExecutionRunLock:
    """Exclusive per-project token held by at most one auto-mode driver."""

    MAX_ACQUIRE_ATTEMPTS = 2
    MALFORMED_GRACE_SECONDS = 5.0

    def __init__(self, *, project_root: Path, project_name: str, owner: LockOwner) -> None:
        if not str(project_root).strip():
            raise ValidationError("project root must not be empty.")
        if not project_name.strip():
            raise ValidationError("project name must not be empty.")
        if owner not in LOCK_OWNERS:
            raise ValidationError(f"Unsupported lock owner: {owner}")
        self.project_name = project_name.strip()
        self.owner = owner
        self.path = lock_file_path(project_root, self.project_name)
        self._acquired = False

    @property
    def acquired(self) -> bool:
        return self._acquired

    def _read(self) -> RunLockRecord | None:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        return _parse_record(raw)

    def _is_stale(self, record: RunLockRecord) -> bool:
        if record.hostname and record.hostname != socket.gethostname():
            return False
        return not is_process_alive(record.pid)

    def _unreadable_lock_age(self) -> float | None:
        try:
            return time.time() - self.path.stat().st_mtime
        except FileNotFoundError:
            return None

    def _publish(self, record: RunLockRecord) -> bool:
        temp_path = self.path.with_name(f".{self.path.name}.{os.getpid()}.tmp")
        temp_path.write_text(json.dumps(asdict(record), indent=2) + "\n", encoding="utf-8")
        try:
            os.link(temp_path, self.path)
        except FileExistsError:
            return False
        finally:
            temp_path.unlink(missing_ok=True)
        return True

    def acquire(self) -> None:
        if self._acquired:
            raise RunLockError("Execution lock is already acquired by this process.")
        self.path.parent.mkdir(parents=True, exist_ok=True)
        record = RunLockRecord(
            pid=os.getpid(),
            owner=self.owner,
            projectName=self.project_name,
            acquiredAt=utcnow_iso(),
            hostname=socket.gethostname(),
        )
        for _ in range(self.MAX_ACQUIRE_ATTEMPTS):
            if self._publish(record):
                self._acquired = True
                logger.debug("Acquired execution lock %s as %s", self.path, self.owner)
                return
            existing = self._read()
            if existing is None:
                age = self._unreadable_lock_age()
                if age is None:
                    continue
                if age < self.MALFORMED_GRACE_SECONDS:
                    raise RunLockError(
                        f"Execution lock {self.path} is unreadable but was written "
                        f"{age:.1f}s ago; another driver may be starting."
                    )
                logger.warning("Removing malformed execution lock %s", self.path)
                self.path.unlink(missing_ok=True)
                continue
            if not self._is_stale(existing):
                raise RunLockError(
                    f"Execution is already running for project '{existing.projectName}' "
                    f"(owner: {existing.owner}, pid: {existing.pid}, "
                    f"acquiredAt: {existing.acquiredAt})."
                )
            logger.warning(
                "Removing stale execution lock %s held by dead pid %s",
                self.path,
                existing.pid,
            )
            self.path.unlink(missing_ok=True)
        raise RunLockError("Failed to acquire execution lock after removing stale lock file.")

    def release(self) -> None:
        if not self._acquired:
            return
        existing = self._read()
        if existing is None or (
            existing.pid == os.getpid()
            and existing.owner == self.owner
            and existing.projectName == self.project_name
        ):
            self.path.unlink(missing_ok=True)
        self._acquired = False
        logger.debug("Released execution lock %s", self.path)
