from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from .config.models import Settings
from .events.store import EventStore
from .mcp.bridge import MCPManager
from .runner import ExecutionEngine
from .sandbox.base import SandboxSession
from .sandbox.factory import create_sandbox
from .tools.builtin import register_builtin_tools
from .tools.permissions import ApprovalMemory, Approver, ConsoleApprover, PermissionEngine
from .tools.registry import ToolRegistry
from .util.subprocess import OutputChunk

logger = logging.getLogger(__name__)


@dataclass
class AppContext:
    """Everything one tool session owns.

    Built by `open()`: registry with built-ins, a started sandbox, connected
    remote servers, a fresh approval memory and the execution engine.
    `close()` tears it all down; nothing outlives the session.
    """

    cwd: Path
    settings: Settings
    session_id: str
    tools: ToolRegistry
    sandbox: SandboxSession
    permissions: PermissionEngine
    mcp: MCPManager
    engine: ExecutionEngine
    events: EventStore | None = None
    closed: bool = field(default=False, init=False)

    @staticmethod
    async def open(
        cwd: Path,
        settings: Settings,
        *,
        approver: Approver | None = None,
        session_id: str | None = None,
        events: EventStore | None = None,
        record_events: bool = True,
        on_output: Callable[[str, OutputChunk], None] | None = None,
    ) -> "AppContext":
        session_id = session_id or f"ses_{uuid.uuid4().hex[:12]}"
        if events is None and record_events:
            events = EventStore.open(session_id)

        tools = ToolRegistry()
        builtins = register_builtin_tools(tools)
        logger.debug("registered %d built-in tools: %s", len(builtins), ", ".join(builtins))

        # Sandbox first: if the isolation boundary can't be set up, nothing else starts.
        sandbox = create_sandbox(settings.sandbox, str(cwd))
        await sandbox.start()

        mcp = MCPManager(
            tools,
            list(settings.mcp_servers.values()),
            default_timeout=settings.mcp_timeout,
            events=events,
        )
        try:
            await mcp.start()
        except BaseException:
            await sandbox.close()
            raise

        permissions = PermissionEngine(
            config=settings.permissions,
            approver=approver or ConsoleApprover(),
            memory=ApprovalMemory(),
            auto_approve=settings.auto_approve,
        )
        engine = ExecutionEngine(
            tools,
            permissions,
            cwd=str(cwd),
            sandbox=sandbox,
            session_id=session_id,
            events=events,
            max_parallel=settings.max_parallel,
            cancel_grace=settings.cancel_grace,
            max_result_chars=settings.max_result_chars,
            on_output=on_output,
        )
        if events:
            events.append(
                "session.start",
                {
                    "cwd": str(cwd),
                    "sandbox": settings.sandbox.mode.value,
                    "tools": tools.names(),
                    "config": str(settings.loaded_from) if settings.loaded_from else None,
                },
            )
        logger.info("session %s ready with %d tools", session_id, len(tools))
        return AppContext(
            cwd=cwd,
            settings=settings,
            session_id=session_id,
            tools=tools,
            sandbox=sandbox,
            permissions=permissions,
            mcp=mcp,
            engine=engine,
            events=events,
        )

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            await self.mcp.close()
        finally:
            await self.sandbox.close()
        if self.events:
            self.events.append("session.end", {"approvals": len(self.permissions.memory)})

    async def __aenter__(self) -> "AppContext":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()
