from __future__ import annotations
import os
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

_ENV_PATTERN = re.compile(r"\$\{(\w+)\}")


def expand_env_placeholders(s: str) -> str:
    def repl(m: re.Match) -> str:
        var = m.group(1)
        val = os.getenv(var)
        if val is None:
            raise ValueError(f"Environment placeholder '${{{var}}}' is not set.")
        return val

    return _ENV_PATTERN.sub(repl, s)


class ConnectionState(str, Enum):
    CONNECTING = "connecting"
    READY = "ready"
    CLOSED = "closed"
    ERRORED = "errored"


@dataclass
class MCPServerConfig:
    name: str
    command: list[str]
    env: dict[str, str] = field(default_factory=dict)
    cwd: str | None = None
    prefix: str | None = None  # tool name prefix override
    timeout: float | None = None  # per-call timeout; falls back to Settings.mcp_timeout
    required: bool = False  # failing to connect aborts session start
    reconnect: bool = True
    max_reconnect_attempts: int = 5
    reconnect_backoff: float = 0.5  # initial delay, doubles per attempt

    @property
    def tool_prefix(self) -> str:
        return self.prefix or f"mcp.{self.name}"

    @staticmethod
    def from_obj(name: str, obj: Any) -> "MCPServerConfig | None":
        if not isinstance(obj, dict):
            return None
        cmd = obj.get("command")
        if isinstance(cmd, str):
            extra = obj.get("args", [])
            cmd = [cmd] + ([str(a) for a in extra] if isinstance(extra, list) else [])
        if not isinstance(cmd, list) or not cmd or not all(isinstance(x, str) for x in cmd):
            return None
        env = obj.get("env", {})
        if not isinstance(env, dict):
            env = {}
        try:
            env = {str(k): expand_env_placeholders(str(v)) for k, v in env.items()}
        except ValueError:
            return None
        cwd = obj.get("cwd")
        if cwd is not None and not isinstance(cwd, str):
            cwd = None
        prefix = obj.get("prefix")
        if prefix is not None and not isinstance(prefix, str):
            prefix = None
        timeout = obj.get("timeout")
        if not isinstance(timeout, (int, float)) or isinstance(timeout, bool) or timeout <= 0:
            timeout = None
        attempts = obj.get("max_reconnect_attempts", 5)
        backoff = obj.get("reconnect_backoff", 0.5)
        return MCPServerConfig(
            name=name,
            command=[str(x) for x in cmd],
            env=env,
            cwd=cwd,
            prefix=prefix,
            timeout=float(timeout) if timeout is not None else None,
            required=bool(obj.get("required", False)),
            reconnect=bool(obj.get("reconnect", True)),
            max_reconnect_attempts=attempts if isinstance(attempts, int) and attempts >= 0 else 5,
            reconnect_backoff=float(backoff) if isinstance(backoff, (int, float)) and backoff > 0 else 0.5,
        )
