from __future__ import annotations

import json
import logging
import os
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from taskpilot.errors import RecordDecodeError, StateError, StateFileNotFoundError
from taskpilot.models import ProjectState, utcnow_iso

logger = logging.getLogger(__name__)


def write_json_atomic(path: Path, payload: object) -> None:
    """Write JSON to a sibling temporary file and rename it over ``path``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = path.with_name(f"{path.name}.{os.getpid()}.tmp")
    serialized = json.dumps(payload, ensure_ascii=False, indent=2) + "\n"
    try:
        temp_path.write_text(serialized, encoding="utf-8")
        os.replace(temp_path, path)
    finally:
        try:
            temp_path.unlink()
        except FileNotFoundError:
            pass


class StateEngine:
    """Whole-document store for a project's phases and tasks."""

    def __init__(self, state_file: Path) -> None:
        self.state_file = state_file
        self.lock_file = state_file.with_name(f"{state_file.name}.lock")

    def exists(self) -> bool:
        return self.state_file.exists()

    def read(self) -> ProjectState:
        if not self.state_file.exists():
            raise StateFileNotFoundError(f"State file not found: {self.state_file}")
        try:
            payload = json.loads(self.state_file.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise StateError(f"State file is not valid JSON: {self.state_file}: {exc}") from exc
        try:
            return ProjectState.from_dict(payload)
        except RecordDecodeError as exc:
            raise StateError(f"State file is invalid: {self.state_file}: {exc}") from exc

    def write(self, state: ProjectState) -> ProjectState:
        state.updated_at = utcnow_iso()
        with self._state_lock():
            try:
                write_json_atomic(self.state_file, state.to_dict())
            except OSError as exc:
                raise StateError(f"Failed to write state file {self.state_file}: {exc}") from exc
        return state

    def initialize(self, project_name: str, root_dir: Path) -> ProjectState:
        if self.exists():
            return self.read()
        logger.info("Creating project state at %s", self.state_file)
        return self.write(ProjectState(project_name=project_name, root_dir=str(root_dir)))

    @contextmanager
    def _state_lock(self, timeout_seconds: float = 3.0) -> Iterator[None]:
        self.lock_file.parent.mkdir(parents=True, exist_ok=True)
        start = time.monotonic()
        while True:
            try:
                fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, str(os.getpid()).encode("utf-8"))
                os.close(fd)
                break
            except FileExistsError as exc:
                if time.monotonic() - start > timeout_seconds:
                    raise StateError("Timed out waiting for state lock.") from exc
                time.sleep(0.02)

        try:
            yield
        finally:
            try:
                self.lock_file.unlink()
            except FileNotFoundError:
                pass
