from __future__ import annotations

import asyncio
import itertools
import json
import logging
import os
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from .models import ConnectionState
from ..errors import (
    HarnessError,
    RemoteToolError,
    ServerDisconnectedError,
    ToolCancelledError,
    ToolTimeoutError,
)
from ..util.cancel import CancelToken
from ..util.subprocess import terminate_process

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = "2024-11-05"
CLIENT_INFO = {"name": "pyharness", "version": "0.1.0"}


@dataclass(frozen=True)
class MCPToolInfo:
    name: str
    description: str
    input_schema: dict[str, Any]


class StdioTransport:
    """Newline-delimited JSON over a child process's stdin/stdout."""

    def __init__(self, command: list[str], *, cwd: str | None = None, env: dict[str, str] | None = None):
        self.command = command
        self.cwd = cwd
        self.env = env
        self._proc: asyncio.subprocess.Process | None = None
        self._stderr_task: asyncio.Task | None = None

    @property
    def pid(self) -> int | None:
        return self._proc.pid if self._proc else None

    async def open(self) -> None:
        self._proc = await asyncio.create_subprocess_exec(
            *self.command,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=self.cwd,
            env={**os.environ, **self.env} if self.env else None,
            start_new_session=(os.name != "nt"),
            limit=16 * 1024 * 1024,
        )
        self._stderr_task = asyncio.ensure_future(self._drain_stderr())

    async def _drain_stderr(self) -> None:
        assert self._proc and self._proc.stderr
        while True:
            line = await self._proc.stderr.readline()
            if not line:
                return
            logger.debug("[%s stderr] %s", self.command[0], line.decode("utf-8", errors="replace").rstrip())

    async def send(self, msg: dict[str, Any]) -> None:
        if self._proc is None or self._proc.stdin is None or self._proc.returncode is not None:
            raise ServerDisconnectedError("server process is not running")
        try:
            self._proc.stdin.write((json.dumps(msg, ensure_ascii=False) + "\n").encode("utf-8"))
            await self._proc.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            raise ServerDisconnectedError(f"server pipe closed: {e}") from e

    async def receive(self) -> dict[str, Any] | None:
        """Next JSON object from the server, or None at EOF. Non-JSON lines are skipped."""
        assert self._proc and self._proc.stdout
        while True:
            line = await self._proc.stdout.readline()
            if not line:
                return None
            line = line.strip()
            if not line:
                continue
            try:
                msg = json.loads(line)
            except json.JSONDecodeError:
                logger.debug("ignoring non-JSON line from %s: %r", self.command[0], line[:200])
                continue
            if isinstance(msg, dict):
                return msg

    async def close(self) -> None:
        if self._proc is None:
            return
        if self._proc.stdin is not None:
            self._proc.stdin.close()
        await terminate_process(self._proc, grace=2.0)
        if self._stderr_task is not None:
            self._stderr_task.cancel()


class MCPClient:
    """A JSON-RPC 2.0 client for MCP tool servers.

    Requests are correlated by integer id; each waits on a future that the
    reader task resolves. When the reader hits EOF every pending request
    fails with ServerDisconnectedError and `on_close` fires.
    """

    def __init__(
        self,
        transport: StdioTransport,
        *,
        name: str = "server",
        timeout: float = 30.0,
        on_tools_changed: Optional[Callable[[], Awaitable[None]]] = None,
        on_close: Optional[Callable[["MCPClient", Exception | None], None]] = None,
    ):
        self.transport = transport
        self.name = name
        self.timeout = timeout
        self.on_tools_changed = on_tools_changed
        self.on_close = on_close
        self.state = ConnectionState.CONNECTING
        self.server_info: dict[str, Any] = {}
        self.server_capabilities: dict[str, Any] = {}
        self._id_iter = itertools.count(1)
        self._pending: dict[int, asyncio.Future] = {}
        self._send_lock = asyncio.Lock()
        self._reader: asyncio.Task | None = None
        self._closing = False
        self._notify_tasks: set[asyncio.Task] = set()

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def connect(self) -> None:
        self.state = ConnectionState.CONNECTING
        await self.transport.open()
        self._reader = asyncio.ensure_future(self._read_loop())
        try:
            res = await self.request(
                "initialize",
                {
                    "protocolVersion": PROTOCOL_VERSION,
                    "capabilities": {},
                    "clientInfo": CLIENT_INFO,
                },
            )
            if isinstance(res, dict):
                self.server_info = res.get("serverInfo") or {}
                self.server_capabilities = res.get("capabilities") or {}
            await self.notify("notifications/initialized")
        except BaseException:
            await self.close()
            self.state = ConnectionState.ERRORED
            raise
        self.state = ConnectionState.READY
        logger.info("connected to MCP server %s (%s)", self.name, self.server_info.get("name", "?"))

    async def close(self) -> None:
        self._closing = True
        if self._reader is not None:
            self._reader.cancel()
            try:
                await self._reader
            except (asyncio.CancelledError, Exception):
                pass
        for t in list(self._notify_tasks):
            t.cancel()
        await self.transport.close()
        self._fail_pending(ServerDisconnectedError(f"connection to {self.name} closed"))
        self.state = ConnectionState.CLOSED

    async def notify(self, method: str, params: dict[str, Any] | None = None) -> None:
        msg: dict[str, Any] = {"jsonrpc": "2.0", "method": method}
        if params is not None:
            msg["params"] = params
        async with self._send_lock:
            await self.transport.send(msg)

    async def request(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        *,
        timeout: float | None = None,
        cancel: CancelToken | None = None,
    ) -> Any:
        rid = next(self._id_iter)
        fut: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[rid] = fut
        req = {"jsonrpc": "2.0", "id": rid, "method": method, "params": params or {}}
        timeout = self.timeout if timeout is None else timeout
        try:
            async with self._send_lock:
                await self.transport.send(req)
            waiter = asyncio.wait_for(asyncio.shield(fut), timeout=timeout)
            if cancel is not None:
                return await cancel.guard(waiter)
            return await waiter
        except asyncio.TimeoutError:
            await self._send_cancelled(rid, "timeout")
            raise ToolTimeoutError(f"{self.name}: {method} timed out after {timeout}s") from None
        except ToolCancelledError:
            await self._send_cancelled(rid, "cancelled by client")
            raise
        finally:
            self._pending.pop(rid, None)

    async def _send_cancelled(self, rid: int, reason: str) -> None:
        if self.state is not ConnectionState.READY:
            return
        try:
            await self.notify("notifications/cancelled", {"requestId": rid, "reason": reason})
        except HarnessError as e:
            logger.debug("could not send cancellation for %s: %s", rid, e)

    async def list_tools(self) -> list[MCPToolInfo]:
        tools: list[MCPToolInfo] = []
        cursor: str | None = None
        while True:
            res = await self.request("tools/list", {"cursor": cursor} if cursor else {})
            arr = res.get("tools", []) if isinstance(res, dict) else res
            if isinstance(arr, list):
                for t in arr:
                    if not isinstance(t, dict):
                        continue
                    name = t.get("name")
                    desc = t.get("description", "")
                    schema = t.get("inputSchema") or t.get("input_schema") or t.get("parameters") or {}
                    if isinstance(name, str) and name:
                        tools.append(MCPToolInfo(name=name, description=str(desc or ""), input_schema=schema if isinstance(schema, dict) else {}))
            cursor = res.get("nextCursor") if isinstance(res, dict) else None
            if not cursor:
                return tools

    async def call_tool(
        self,
        name: str,
        arguments: dict[str, Any],
        *,
        timeout: float | None = None,
        cancel: CancelToken | None = None,
    ) -> Any:
        return await self.request(
            "tools/call", {"name": name, "arguments": arguments or {}}, timeout=timeout, cancel=cancel
        )

    # -- reader ---------------------------------------------------------

    async def _read_loop(self) -> None:
        error: Exception | None = None
        try:
            while True:
                msg = await self.transport.receive()
                if msg is None:
                    break
                await self._dispatch(msg)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            error = e
            logger.warning("MCP server %s reader failed: %s", self.name, e)
        if self._closing:
            return
        self.state = ConnectionState.ERRORED
        self._fail_pending(ServerDisconnectedError(f"server {self.name} disconnected"))
        logger.warning("MCP server %s disconnected", self.name)
        if self.on_close is not None:
            self.on_close(self, error)

    async def _dispatch(self, msg: dict[str, Any]) -> None:
        method = msg.get("method")
        if method is None:
            rid = msg.get("id")
            fut = self._pending.get(rid) if isinstance(rid, int) else None
            if fut is None or fut.done():
                return
            if "error" in msg:
                err = msg["error"]
                text = err.get("message") if isinstance(err, dict) else str(err)
                fut.set_exception(RemoteToolError(f"{self.name}: {text}"))
            else:
                fut.set_result(msg.get("result"))
            return

        if "id" in msg:
            # server -> client request
            if method == "ping":
                reply: dict[str, Any] = {"jsonrpc": "2.0", "id": msg["id"], "result": {}}
            else:
                reply = {"jsonrpc": "2.0", "id": msg["id"], "error": {"code": -32601, "message": f"Method not found: {method}"}}
            async with self._send_lock:
                await self.transport.send(reply)
            return

        if method == "notifications/tools/list_changed" and self.on_tools_changed is not None:
            task = asyncio.ensure_future(self.on_tools_changed())
            self._notify_tasks.add(task)
            task.add_done_callback(self._notify_tasks.discard)

    def _fail_pending(self, exc: Exception) -> None:
        for fut in self._pending.values():
            if not fut.done():
                fut.set_exception(exc)
        self._pending.clear()
