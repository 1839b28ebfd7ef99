from __future__ import annotations

import os
from pathlib import Path
from typing import Sequence

from .base import SandboxSession, shell_argv
from ..config.models import SandboxMode
from ..errors import SandboxUnavailableError


class HostSandbox(SandboxSession):
    """No isolation: commands run directly on the host."""

    mode = SandboxMode.NONE

    async def _start(self) -> None:
        if not Path(self.cwd).is_dir():
            raise SandboxUnavailableError(f"working directory does not exist: {self.cwd}")

    def build_command(self, command: str, cwd: str, env: dict[str, str]) -> tuple[Sequence[str], dict[str, str] | None]:
        proc_env = {**os.environ, **env} if env else None
        return shell_argv(command), proc_env
