from __future__ import annotations

import abc
import asyncio
import logging
import os
import shutil
from typing import Sequence

from ..config.models import SandboxMode, SandboxSettings
from ..errors import ExecutionError
from ..util.cancel import CancelToken
from ..util.subprocess import CmdResult, ProcessRun

logger = logging.getLogger(__name__)


def shell_argv(command: str) -> list[str]:
    # Use a real shell so built-ins like `cd`, pipes, &&, env expansion work.
    if os.name == "nt":
        return ["cmd.exe", "/c", command]
    shell = "bash" if shutil.which("bash") else "sh"
    return [shell, "-lc", command]


class SandboxSession(abc.ABC):
    """Where side-effecting commands actually run.

    One session per tool session; `start()` failing is fatal to the session.
    Subclasses build the argv for a command and may report a lost
    environment after a run.
    """

    mode: SandboxMode
    # Reused isolation boundaries serve one call at a time.
    exclusive: bool = False

    def __init__(self, settings: SandboxSettings, cwd: str):
        self.settings = settings
        self.cwd = cwd
        self.started = False
        self._lock = asyncio.Lock() if self.exclusive else None
        self._runs: set[ProcessRun] = set()

    async def start(self) -> None:
        await self._start()
        self.started = True
        logger.info("sandbox %s ready (cwd=%s)", self.mode.value, self.cwd)

    async def close(self) -> None:
        for run in list(self._runs):
            await run.kill()
        self._runs.clear()
        if self.started:
            await self._close()
        self.started = False

    @property
    def active_pids(self) -> list[int]:
        return [r.pid for r in self._runs if r.pid is not None]

    def stream(
        self,
        command: str,
        *,
        cancel: CancelToken,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
    ) -> ProcessRun:
        if not self.started:
            raise ExecutionError(f"sandbox {self.mode.value} is not started")
        argv, proc_env = self.build_command(command, cwd or self.cwd, env or {})
        return ProcessRun(
            argv,
            cwd=self.process_cwd(cwd or self.cwd),
            env=proc_env,
            cancel=cancel,
            grace=self.settings.kill_grace,
            lock=self._lock,
            on_cancel=self.on_cancel,
            on_start=self._runs.add,
            on_finish=self._runs.discard,
        )

    async def run(
        self,
        command: str,
        *,
        cancel: CancelToken,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
    ) -> CmdResult:
        run = self.stream(command, cancel=cancel, cwd=cwd, env=env)
        try:
            result = await run.collect()
        except (FileNotFoundError, PermissionError) as e:
            raise self.spawn_failed(e) from e
        await self.check_result(run, result)
        return result

    def process_cwd(self, cwd: str) -> str | None:
        return cwd

    def spawn_failed(self, exc: OSError) -> ExecutionError:
        return ExecutionError(f"failed to start command: {exc}")

    async def check_result(self, run: ProcessRun, result: CmdResult) -> None:
        """Hook for variants that can detect a crashed environment."""
        return None

    async def on_cancel(self) -> None:
        return None

    @abc.abstractmethod
    def build_command(self, command: str, cwd: str, env: dict[str, str]) -> tuple[Sequence[str], dict[str, str] | None]:
        ...

    @abc.abstractmethod
    async def _start(self) -> None:
        ...

    async def _close(self) -> None:
        return None
