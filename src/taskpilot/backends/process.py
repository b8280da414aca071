from __future__ import annotations

import asyncio
import os
import shutil
from abc import ABC, abstractmethod
from typing import Protocol


class ProcessHandle(Protocol):
    """The slice of ``asyncio.subprocess.Process`` the supervisor relies on."""

    pid: int
    returncode: int | None
    stdin: asyncio.StreamWriter | None
    stdout: asyncio.StreamReader | None
    stderr: asyncio.StreamReader | None

    async def wait(self) -> int: ...

    def kill(self) -> None: ...


class ProcessRunner(ABC):
    @abstractmethod
    async def spawn(
        self,
        command: str,
        args: list[str],
        *,
        cwd: str,
        env: dict[str, str] | None = None,
    ) -> ProcessHandle:
        """Start one OS process with piped stdin, stdout and stderr."""


def resolve_command(command: str, env: dict[str, str] | None = None) -> str:
    search_path = (env or os.environ).get("PATH")
    resolved = shutil.which(command, path=search_path)
    return resolved or command


class AsyncioProcessRunner(ProcessRunner):
    async def spawn(
        self,
        command: str,
        args: list[str],
        *,
        cwd: str,
        env: dict[str, str] | None = None,
    ) -> ProcessHandle:
        return await asyncio.create_subprocess_exec(
            resolve_command(command, env),
            *args,
            cwd=cwd,
            env=env,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
