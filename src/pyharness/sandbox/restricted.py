from __future__ import annotations

import asyncio
import os
import shutil
from pathlib import Path
from typing import Sequence

from .base import SandboxSession
from ..config.models import SandboxMode
from ..errors import EnvironmentLostError, ExecutionError, SandboxUnavailableError
from ..util.subprocess import CmdResult, ProcessRun, run_cmd


class RestrictedSandbox(SandboxSession):
    """Per-command bubblewrap jail.

    The host root is mounted read-only, the working directory read-write,
    /tmp is private, and the network is unshared unless disabled.
    """

    mode = SandboxMode.RESTRICTED

    def _bwrap(self) -> str | None:
        return shutil.which(self.settings.bwrap_path)

    async def _start(self) -> None:
        if not Path(self.cwd).is_dir():
            raise SandboxUnavailableError(f"working directory does not exist: {self.cwd}")
        if self._bwrap() is None:
            raise SandboxUnavailableError(f"bubblewrap not found: {self.settings.bwrap_path}")
        # user namespaces may be disabled even when the binary exists
        probe = self.jail_argv(self.cwd) + ["true"]
        try:
            res = await run_cmd(probe, timeout=15)
        except (OSError, asyncio.TimeoutError) as e:
            raise SandboxUnavailableError(f"bubblewrap probe failed: {e}") from e
        if res.returncode != 0:
            raise SandboxUnavailableError(f"bubblewrap probe failed: {res.stderr.strip()}")

    def jail_argv(self, cwd: str) -> list[str]:
        argv = [
            self._bwrap() or self.settings.bwrap_path,
            "--ro-bind", "/", "/",
            "--dev", "/dev",
            "--proc", "/proc",
            "--tmpfs", "/tmp",
            "--bind", cwd, cwd,
            "--chdir", cwd,
            "--unshare-pid",
            "--die-with-parent",
        ]
        for path in self.settings.ro_binds:
            argv += ["--ro-bind", path, path]
        if self.settings.unshare_net:
            argv.append("--unshare-net")
        return argv

    def build_command(self, command: str, cwd: str, env: dict[str, str]) -> tuple[Sequence[str], dict[str, str] | None]:
        proc_env = {**os.environ, **env} if env else None
        return self.jail_argv(cwd) + ["--", "sh", "-c", command], proc_env

    def spawn_failed(self, exc: OSError) -> ExecutionError:
        return EnvironmentLostError(f"bubblewrap could not be started: {exc}")

    async def check_result(self, run: ProcessRun, result: CmdResult) -> None:
        # bwrap relays the child's status; a negative code means bwrap itself died.
        if result.returncode < 0 and not run.killed:
            raise EnvironmentLostError(f"sandbox process killed by signal {-result.returncode}")

