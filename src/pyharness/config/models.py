from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from ..tools.permissions import AutoApprovePolicy, PermissionConfig
from ..mcp.models import MCPServerConfig


class SandboxMode(str, Enum):
    NONE = "none"
    RESTRICTED = "restricted"
    CONTAINERIZED = "containerized"


@dataclass
class SandboxSettings:
    mode: SandboxMode = SandboxMode.NONE
    # restricted (bubblewrap)
    bwrap_path: str = "bwrap"
    unshare_net: bool = True
    ro_binds: list[str] = field(default_factory=list)
    # containerized (docker)
    docker_path: str = "docker"
    image: str = "python:3.12-slim"
    network: str = "none"
    workdir: str = "/workspace"
    # seconds between SIGTERM and SIGKILL on cancellation
    kill_grace: float = 2.0

    @staticmethod
    def from_obj(obj: Any) -> "SandboxSettings":
        s = SandboxSettings()
        if isinstance(obj, str):
            obj = {"mode": obj}
        if not isinstance(obj, dict):
            return s
        mode = obj.get("mode")
        if isinstance(mode, str) and mode in {m.value for m in SandboxMode}:
            s.mode = SandboxMode(mode)
        for key in ("bwrap_path", "docker_path", "image", "network", "workdir"):
            v = obj.get(key)
            if isinstance(v, str) and v.strip():
                setattr(s, key, v.strip())
        if isinstance(obj.get("unshare_net"), bool):
            s.unshare_net = obj["unshare_net"]
        binds = obj.get("ro_binds")
        if isinstance(binds, list):
            s.ro_binds = [str(b) for b in binds if isinstance(b, str)]
        grace = obj.get("kill_grace")
        if isinstance(grace, (int, float)) and grace >= 0:
            s.kill_grace = float(grace)
        return s


@dataclass
class Settings:
    """Validated settings consumed by the tool core.

    Built by config.loader from JSON/YAML files, or directly in code/tests.
    """

    sandbox: SandboxSettings = field(default_factory=SandboxSettings)
    permissions: PermissionConfig = field(default_factory=PermissionConfig)
    auto_approve: AutoApprovePolicy = field(default_factory=AutoApprovePolicy)
    mcp_servers: dict[str, MCPServerConfig] = field(default_factory=dict)

    max_parallel: int = 4
    cancel_grace: float = 5.0
    mcp_timeout: float = 30.0
    max_result_chars: int = 30000

    loaded_from: Path | None = None
