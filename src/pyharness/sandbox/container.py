from __future__ import annotations

import asyncio
import logging
import shutil
import uuid
from pathlib import Path, PurePosixPath
from typing import Sequence

from .base import SandboxSession
from ..config.models import SandboxMode
from ..errors import EnvironmentLostError, ExecutionError, SandboxUnavailableError
from ..util.subprocess import CmdResult, ProcessRun, run_cmd

logger = logging.getLogger(__name__)


class ContainerSandbox(SandboxSession):
    """One long-lived docker container per session; commands go through `docker exec`.

    The container is shared by every call of the session, so calls are
    serialized on the session lock.
    """

    mode = SandboxMode.CONTAINERIZED
    exclusive = True

    def __init__(self, settings, cwd: str):
        super().__init__(settings, cwd)
        self.name = f"pyharness-{uuid.uuid4().hex[:10]}"

    def _docker(self) -> str:
        return shutil.which(self.settings.docker_path) or self.settings.docker_path

    def run_argv(self) -> list[str]:
        return [
            self._docker(), "run", "-d", "--rm",
            "--name", self.name,
            "--network", self.settings.network,
            "-v", f"{self.cwd}:{self.settings.workdir}",
            "-w", self.settings.workdir,
            self.settings.image,
            "sleep", "infinity",
        ]

    async def _start(self) -> None:
        if shutil.which(self.settings.docker_path) is None:
            raise SandboxUnavailableError(f"docker not found: {self.settings.docker_path}")
        try:
            res = await run_cmd(self.run_argv(), timeout=300)
        except (OSError, asyncio.TimeoutError) as e:
            raise SandboxUnavailableError(f"could not start container: {e}") from e
        if res.returncode != 0:
            raise SandboxUnavailableError(f"could not start container: {res.stderr.strip()}")
        logger.info("container %s started from %s", self.name, self.settings.image)

    async def _close(self) -> None:
        try:
            await run_cmd([self._docker(), "rm", "-f", self.name], timeout=60)
        except (OSError, asyncio.TimeoutError) as e:
            logger.warning("failed to remove container %s: %s", self.name, e)

    def container_path(self, cwd: str) -> str:
        try:
            rel = Path(cwd).resolve().relative_to(Path(self.cwd).resolve())
        except ValueError:
            return self.settings.workdir
        return str(PurePosixPath(self.settings.workdir, *rel.parts))

    def build_command(self, command: str, cwd: str, env: dict[str, str]) -> tuple[Sequence[str], dict[str, str] | None]:
        argv = [self._docker(), "exec", "-w", self.container_path(cwd)]
        for k, v in env.items():
            argv += ["-e", f"{k}={v}"]
        argv += [self.name, "sh", "-c", command]
        return argv, None

    def process_cwd(self, cwd: str) -> str | None:
        return self.cwd

    async def on_cancel(self) -> None:
        # Killing the docker client does not stop the process inside the container.
        # The session lock guarantees the only user processes belong to this call.
        await run_cmd(
            [self._docker(), "exec", self.name, "sh", "-c",
             "kill -TERM -1 2>/dev/null; sleep 0.2; kill -KILL -1 2>/dev/null; true"],
            timeout=10,
        )

    async def is_alive(self) -> bool:
        try:
            res = await run_cmd(
                [self._docker(), "inspect", "-f", "{{.State.Running}}", self.name], timeout=30
            )
        except (OSError, asyncio.TimeoutError):
            return False
        return res.returncode == 0 and res.stdout.strip() == "true"

    def spawn_failed(self, exc: OSError) -> ExecutionError:
        return EnvironmentLostError(f"docker could not be started: {exc}")

    async def check_result(self, run: ProcessRun, result: CmdResult) -> None:
        if not await self.is_alive():
            raise EnvironmentLostError(f"container {self.name} is no longer running")
