"""Tiny MCP-style tool server over stdio, used by tests and for local demos.

Run: python example_server.py
Set EXAMPLE_PAGE_SIZE=N to paginate tools/list.
Set EXAMPLE_PID_FILE=path to append the server pid on startup.
Set EXAMPLE_STALL_LIST=path to leave tools/list unanswered while that file exists.
"""
from __future__ import annotations

import json
import os
import sys
import threading
import time

BASE_TOOLS = [
    {
        "name": "echo",
        "description": "Echo back the provided text.",
        "inputSchema": {
            "type": "object",
            "properties": {"text": {"type": "string"}},
            "required": ["text"],
        },
    },
    {
        "name": "now",
        "description": "Return current epoch time.",
        "inputSchema": {"type": "object", "properties": {}, "required": []},
    },
    {
        "name": "sleep",
        "description": "Sleep for the given number of seconds, then reply.",
        "inputSchema": {
            "type": "object",
            "properties": {"seconds": {"type": "number"}},
            "required": ["seconds"],
        },
    },
    {
        "name": "fail",
        "description": "Always returns an error result.",
        "inputSchema": {"type": "object", "properties": {}},
    },
    {
        "name": "add_tool",
        "description": "Advertise a new tool and notify the client.",
        "inputSchema": {
            "type": "object",
            "properties": {"name": {"type": "string"}},
            "required": ["name"],
        },
    },
    {
        "name": "remove_tool",
        "description": "Stop advertising a tool and notify the client.",
        "inputSchema": {
            "type": "object",
            "properties": {"name": {"type": "string"}},
            "required": ["name"],
        },
    },
    {
        "name": "crash",
        "description": "Exit the server process immediately.",
        "inputSchema": {"type": "object", "properties": {}},
    },
]

_tools = list(BASE_TOOLS)
_write_lock = threading.Lock()
_state_lock = threading.Lock()
_cancelled: dict[int, threading.Event] = {}
PAGE_SIZE = int(os.environ.get("EXAMPLE_PAGE_SIZE", "0") or 0)
STALL_LIST = os.environ.get("EXAMPLE_STALL_LIST")


def _send(msg: dict) -> None:
    with _write_lock:
        sys.stdout.write(json.dumps(msg, ensure_ascii=False) + "\n")
        sys.stdout.flush()


def _reply(rid: int, result=None, error=None):
    msg = {"jsonrpc": "2.0", "id": rid}
    if error is not None:
        msg["error"] = {"code": -32000, "message": str(error)}
    else:
        msg["result"] = result
    _send(msg)


def _text(s: str, is_error: bool = False) -> dict:
    return {"content": [{"type": "text", "text": s}], "isError": is_error}


def _list_tools(params: dict) -> dict:
    with _state_lock:
        tools = list(_tools)
    if not PAGE_SIZE:
        return {"tools": tools}
    start = int(params.get("cursor") or 0)
    page = tools[start:start + PAGE_SIZE]
    res: dict = {"tools": page}
    if start + PAGE_SIZE < len(tools):
        res["nextCursor"] = str(start + PAGE_SIZE)
    return res


def _notify_changed() -> None:
    _send({"jsonrpc": "2.0", "method": "notifications/tools/list_changed"})


def _call(rid: int, name: str, args: dict) -> None:
    if name == "echo":
        _reply(rid, _text(str(args.get("text", ""))))
    elif name == "now":
        _reply(rid, _text(str(time.time())))
    elif name == "sleep":
        ev = _cancelled.setdefault(rid, threading.Event())
        if ev.wait(float(args.get("seconds", 0))):
            return  # cancelled by the client: no reply
        _reply(rid, _text(f"slept {args.get('seconds')}"))
    elif name == "fail":
        _reply(rid, _text("tool failed on purpose", is_error=True))
    elif name == "add_tool":
        tool = {
            "name": str(args["name"]),
            "description": "Dynamically added tool.",
            "inputSchema": {"type": "object", "properties": {}},
        }
        with _state_lock:
            _tools.append(tool)
        _reply(rid, _text(f"added {tool['name']}"))
        _notify_changed()
    elif name == "remove_tool":
        with _state_lock:
            _tools[:] = [t for t in _tools if t["name"] != args.get("name")]
        _reply(rid, _text(f"removed {args.get('name')}"))
        _notify_changed()
    elif name == "crash":
        sys.stdout.flush()
        os._exit(3)
    elif any(t["name"] == name for t in _tools):
        _reply(rid, _text(f"{name} called"))
    else:
        _reply(rid, error=f"Unknown tool: {name}")


def main():
    pid_file = os.environ.get("EXAMPLE_PID_FILE")
    if pid_file:
        with open(pid_file, "a", encoding="utf-8") as f:
            f.write(f"{os.getpid()}\n")
    for line in sys.stdin:
        line = line.strip()
        if not line:
            continue
        try:
            req = json.loads(line)
        except json.JSONDecodeError:
            continue
        if not isinstance(req, dict):
            continue
        method = req.get("method")
        params = req.get("params") or {}

        if "id" not in req:
            if method == "notifications/cancelled":
                rid = params.get("requestId")
                if isinstance(rid, int):
                    _cancelled.setdefault(rid, threading.Event()).set()
            continue

        rid = req.get("id")
        if method == "initialize":
            _reply(rid, {
                "protocolVersion": params.get("protocolVersion", "2024-11-05"),
                "capabilities": {"tools": {"listChanged": True}},
                "serverInfo": {"name": "example", "version": "0.1"},
            })
        elif method == "tools/list":
            if STALL_LIST and os.path.exists(STALL_LIST):
                continue
            _reply(rid, _list_tools(params))
        elif method == "tools/call":
            name = params.get("name")
            args = params.get("arguments") or {}
            threading.Thread(target=_call, args=(rid, name, args), daemon=True).start()
        elif method == "ping":
            _reply(rid, {})
        else:
            _reply(rid, error=f"Unknown method: {method}")


if __name__ == "__main__":
    main()
