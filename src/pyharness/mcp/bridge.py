from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional

from .client import MCPClient, MCPToolInfo, StdioTransport
from .models import ConnectionState, MCPServerConfig
from ..errors import ConflictError, HarnessError, ServerDisconnectedError, TransportUnavailableError
from ..events.store import EventStore
from ..tools.base import BaseTool, ToolContext, ToolOutput, ToolSpec
from ..tools.registry import ToolRegistry

logger = logging.getLogger(__name__)


def normalize_content(res: Any) -> str:
    """Flatten a tools/call result into text for the model."""
    if isinstance(res, dict) and "content" in res:
        c = res["content"]
        if isinstance(c, str):
            return c
        if isinstance(c, list):
            texts = []
            for part in c:
                if isinstance(part, dict):
                    if part.get("type") == "text":
                        texts.append(str(part.get("text", "")))
                    else:
                        texts.append(json.dumps(part, ensure_ascii=False))
                else:
                    texts.append(str(part))
            return "\n".join(texts)
    if isinstance(res, str):
        return res
    return json.dumps(res, ensure_ascii=False, indent=2)


class MCPTool(BaseTool):
    """Adapts one remote tool to the local tool contract."""

    def __init__(self, connection: "ServerConnection", info: MCPToolInfo):
        self.connection = connection
        self.remote_name = info.name
        self.spec = ToolSpec(
            name=f"{connection.config.tool_prefix}.{info.name}",
            description=f"[MCP:{connection.name}] {info.description}".strip(),
            parameters=info.input_schema if isinstance(info.input_schema, dict) else {},
            permission_key="mcp",
            side_effecting=True,
        )

    def permission_target(self, args: Mapping[str, Any], cwd: str) -> str:
        return "*"

    def describe_effect(self, args: Mapping[str, Any], cwd: str) -> str:
        keys = ", ".join(sorted(args)) or "no arguments"
        return f"Call remote tool {self.remote_name} on server {self.connection.name} ({keys})"

    async def execute(self, ctx: ToolContext, args: dict[str, Any]) -> ToolOutput:
        client = self.connection.client
        if client is None or client.state is not ConnectionState.READY:
            raise ServerDisconnectedError(f"server {self.connection.name} is not connected")
        res = await client.call_tool(
            self.remote_name, args, timeout=self.connection.timeout, cancel=ctx.cancel
        )
        is_error = bool(res.get("isError")) if isinstance(res, dict) else False
        return ToolOutput(
            normalize_content(res),
            payload={"server": self.connection.name, "tool": self.remote_name, "result": res},
            is_error=is_error,
            error_kind="remote-error",
        )


@dataclass(frozen=True)
class ToolDiff:
    added: tuple[MCPToolInfo, ...] = ()
    removed: tuple[str, ...] = ()
    changed: tuple[MCPToolInfo, ...] = ()

    @property
    def empty(self) -> bool:
        return not (self.added or self.removed or self.changed)

    @staticmethod
    def compute(old: Mapping[str, MCPToolInfo], new: list[MCPToolInfo]) -> "ToolDiff":
        new_by_name: dict[str, MCPToolInfo] = {}
        for info in new:
            new_by_name.setdefault(info.name, info)
        return ToolDiff(
            added=tuple(i for n, i in new_by_name.items() if n not in old),
            removed=tuple(n for n in old if n not in new_by_name),
            changed=tuple(i for n, i in new_by_name.items() if n in old and old[n] != i),
        )


class ServerConnection:
    """Lifecycle of one remote tool server: connect, reconcile tools, reconnect."""

    def __init__(
        self,
        config: MCPServerConfig,
        registry: ToolRegistry,
        *,
        default_timeout: float = 30.0,
        events: EventStore | None = None,
        transport_factory: Optional[Callable[[MCPServerConfig], StdioTransport]] = None,
    ):
        self.config = config
        self.registry = registry
        self.timeout = config.timeout or default_timeout
        self.events = events
        self.transport_factory = transport_factory or (
            lambda c: StdioTransport(c.command, cwd=c.cwd, env=c.env)
        )
        self.client: MCPClient | None = None
        self.tools: dict[str, MCPToolInfo] = {}
        self.reconnects = 0
        self._closing = False
        self._refresh_lock = asyncio.Lock()
        self._reconnect_task: asyncio.Task | None = None
        self._failed = False

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def state(self) -> ConnectionState:
        if self._failed:
            return ConnectionState.ERRORED
        if self.client is None:
            return ConnectionState.CLOSED
        return self.client.state

    def _event(self, event_type: str, data: dict[str, Any]) -> None:
        if self.events:
            self.events.append(event_type, {"server": self.name, **data})

    async def connect(self) -> None:
        client = MCPClient(
            self.transport_factory(self.config),
            name=self.name,
            timeout=self.timeout,
            on_tools_changed=self._on_list_changed,
            on_close=self._on_lost,
        )
        try:
            await client.connect()
            infos = await client.list_tools()
        except BaseException:
            # handshake may have succeeded: the server process is ours to stop
            await client.close()
            raise
        self.client = client
        self._failed = False
        self._reconcile(infos)
        self._event("mcp.connected", {"tools": [i.name for i in infos]})

    async def _on_list_changed(self) -> None:
        try:
            await self.refresh()
        except (HarnessError, OSError) as e:
            logger.warning("MCP %s: tool list refresh failed: %s", self.name, e)

    async def refresh(self) -> ToolDiff:
        """Re-fetch the advertised tools and reconcile the registry."""
        async with self._refresh_lock:
            if self.client is None or self.client.state is not ConnectionState.READY:
                return ToolDiff()
            infos = await self.client.list_tools()
            return self._reconcile(infos)

    def _reconcile(self, infos: list[MCPToolInfo]) -> ToolDiff:
        diff = ToolDiff.compute(self.tools, infos)
        if diff.empty:
            return diff
        prefix = self.config.tool_prefix
        added: list[MCPTool] = []
        for info in diff.added:
            tool = MCPTool(self, info)
            if tool.spec.name in self.registry:
                logger.warning("MCP %s: tool %s conflicts with an existing tool; skipped", self.name, tool.spec.name)
                self._event("mcp.tool_conflict", {"tool": tool.spec.name})
                continue
            added.append(tool)
        registered = set(self.registry.names(self.name))
        removed = [f"{prefix}.{n}" for n in diff.removed if f"{prefix}.{n}" in registered]
        replace = [MCPTool(self, i) for i in diff.changed if f"{prefix}.{i.name}" in registered]
        try:
            self.registry.apply(self.name, add=added, remove=removed, replace=replace)
        except ConflictError as e:
            logger.warning("MCP %s: tool list not applied: %s", self.name, e)
            self._event("mcp.tool_conflict", {"error": str(e)})
            return ToolDiff()
        skipped = {i.name for i in diff.added} - {t.remote_name for t in added}
        self.tools = {i.name: i for i in infos if i.name not in skipped}
        self._event(
            "mcp.tools_changed",
            {
                "added": [t.spec.name for t in added],
                "removed": removed,
                "changed": [t.spec.name for t in replace],
            },
        )
        return diff

    def _on_lost(self, client: MCPClient, error: Exception | None) -> None:
        if client is not self.client or self._closing:
            return
        removed = self.registry.remove_source(self.name)
        self.tools = {}
        self._event("mcp.disconnected", {"removed": removed, "error": str(error) if error else None})
        if self.config.reconnect and self.config.max_reconnect_attempts > 0:
            self._reconnect_task = asyncio.ensure_future(self._reconnect())
        else:
            self._failed = True

    async def _reconnect(self) -> None:
        old = self.client
        if old is not None:
            await old.close()
        delay = self.config.reconnect_backoff
        for attempt in range(1, self.config.max_reconnect_attempts + 1):
            await asyncio.sleep(delay)
            if self._closing:
                return
            try:
                await self.connect()
            except (OSError, HarnessError, asyncio.TimeoutError, RuntimeError) as e:
                logger.warning("MCP %s: reconnect attempt %d failed: %s", self.name, attempt, e)
                delay *= 2
                continue
            self.reconnects += 1
            logger.info("MCP %s: reconnected after %d attempt(s)", self.name, attempt)
            return
        self._failed = True
        logger.error("MCP %s: giving up after %d reconnect attempts", self.name, self.config.max_reconnect_attempts)

    async def close(self) -> None:
        self._closing = True
        if self._reconnect_task is not None and not self._reconnect_task.done():
            self._reconnect_task.cancel()
            try:
                await self._reconnect_task
            except asyncio.CancelledError:
                pass
        if self.client is not None:
            await self.client.close()
        self.registry.remove_source(self.name)
        self.tools = {}


class MCPManager:
    """Owns every remote tool server connection of a session."""

    def __init__(
        self,
        registry: ToolRegistry,
        servers: list[MCPServerConfig],
        *,
        default_timeout: float = 30.0,
        events: EventStore | None = None,
    ):
        self.registry = registry
        self.connections: dict[str, ServerConnection] = {
            s.name: ServerConnection(s, registry, default_timeout=default_timeout, events=events)
            for s in servers
        }
        self.events = events

    async def start(self) -> None:
        """Connect all servers concurrently.

        A failing `required` server aborts with TransportUnavailableError;
        other failures are logged and the server is left out.
        """
        for name in self.connections:
            self.registry.add_source(name)
        conns = list(self.connections.values())
        results = await asyncio.gather(*(c.connect() for c in conns), return_exceptions=True)
        fatal: list[str] = []
        for conn, res in zip(conns, results):
            if not isinstance(res, BaseException):
                continue
            conn._failed = True
            if conn.client is not None:
                await conn.client.close()
            logger.warning("MCP server %s failed to start: %s", conn.name, res)
            if self.events:
                self.events.append("mcp.failed", {"server": conn.name, "error": str(res)})
            if conn.config.required:
                fatal.append(f"{conn.name}: {res}")
        if fatal:
            await self.close()
            raise TransportUnavailableError("required MCP server(s) unavailable: " + "; ".join(fatal))

    async def close(self) -> None:
        for conn in self.connections.values():
            await conn.close()

    def status(self) -> list[tuple[str, ConnectionState, int]]:
        return [(c.name, c.state, len(c.tools)) for c in self.connections.values()]
