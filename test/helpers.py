"""Fake tools and builders shared by the test modules."""

from __future__ import annotations

import asyncio
import sys
import time
from pathlib import Path
from typing import Any

from pyharness.mcp import example_server
from pyharness.mcp.models import MCPServerConfig
from pyharness.runner import ExecutionEngine
from pyharness.tools.base import BaseTool, ToolContext, ToolOutput, ToolSpec
from pyharness.tools.permissions import (
    ApprovalDecision,
    ApprovalMemory,
    AutoApprover,
    PermissionConfig,
    PermissionEngine,
)
from pyharness.tools.registry import ToolRegistry

EXAMPLE_SERVER = str(Path(example_server.__file__).resolve())


class FakeTool(BaseTool):
    """Sleeps for `delay`, then returns `name` (or raises `fail`).

    Every start/end is appended to the shared `log` so tests can check
    ordering and overlap.
    """

    def __init__(
        self,
        name: str,
        *,
        delay: float = 0.0,
        side_effecting: bool = False,
        exclusive: bool = False,
        permission_key: str | None = None,
        fail: Exception | None = None,
        output: str | None = None,
        is_error: bool = False,
        ignore_cancel: bool = False,
        log: list | None = None,
    ):
        self.spec = ToolSpec(
            name=name,
            description=f"fake tool {name}",
            parameters={"type": "object", "properties": {"x": {"type": "integer"}}},
            permission_key=permission_key or ("edit" if side_effecting else "read"),
            side_effecting=side_effecting,
            exclusive=exclusive,
        )
        self.delay = delay
        self.fail = fail
        self.output = output if output is not None else name
        self.is_error = is_error
        self.ignore_cancel = ignore_cancel
        self.log = log if log is not None else []
        self.executed = 0

    async def execute(self, ctx: ToolContext, args: dict[str, Any]) -> ToolOutput:
        self.executed += 1
        self.log.append(("start", self.spec.name))
        if self.ignore_cancel:
            await asyncio.sleep(self.delay)
        else:
            await ctx.cancel.guard(asyncio.sleep(self.delay))
        if self.fail is not None:
            raise self.fail
        self.log.append(("end", self.spec.name))
        return ToolOutput(self.output, payload={"args": args}, is_error=self.is_error)


class CountingApprover:
    """Answers every prompt with `decision`, recording requests and concurrency."""

    def __init__(self, decision: ApprovalDecision = ApprovalDecision.ALLOW_ONCE, delay: float = 0.0):
        self.decision = decision
        self.delay = delay
        self.requests = []
        self.active = 0
        self.max_active = 0

    async def __call__(self, request):
        self.requests.append(request)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(self.delay)
        finally:
            self.active -= 1
        return self.decision


class BlockingApprover:
    """Never answers until released."""

    def __init__(self) -> None:
        self.asked = asyncio.Event()
        self.release = asyncio.Event()
        self.decision = ApprovalDecision.ALLOW_ONCE

    async def __call__(self, request):
        self.asked.set()
        await self.release.wait()
        return self.decision


def make_engine(
    tools,
    cwd,
    *,
    approver=None,
    config: PermissionConfig | None = None,
    max_parallel: int = 4,
    cancel_grace: float = 0.5,
    max_result_chars: int = 30000,
    events=None,
    sandbox=None,
) -> ExecutionEngine:
    registry = ToolRegistry()
    for t in tools:
        registry.register(t)
    permissions = PermissionEngine(
        config or PermissionConfig(),
        approver or AutoApprover(ApprovalDecision.ALLOW_ONCE),
        ApprovalMemory(),
    )
    return ExecutionEngine(
        registry,
        permissions,
        cwd=str(cwd),
        sandbox=sandbox,
        events=events,
        max_parallel=max_parallel,
        cancel_grace=cancel_grace,
        max_result_chars=max_result_chars,
    )


def example_config(name: str = "ex", **overrides) -> MCPServerConfig:
    cfg = MCPServerConfig(
        name=name,
        command=[sys.executable, EXAMPLE_SERVER],
        reconnect=False,
        reconnect_backoff=0.05,
    )
    for k, v in overrides.items():
        setattr(cfg, k, v)
    return cfg


async def wait_until(predicate, timeout: float = 5.0, interval: float = 0.02) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        await asyncio.sleep(interval)
    return predicate()
