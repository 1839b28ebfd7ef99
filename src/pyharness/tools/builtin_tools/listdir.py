from __future__ import annotations
import os
from pathlib import Path
from typing import Any, Mapping

from ..base import BaseTool, ToolContext, ToolOutput, ToolSpec
from ...util.fs import resolve_path, FsError

class ListDirTool(BaseTool):
    spec = ToolSpec(
        name="list",
        description="List files/directories under a path (relative to cwd).",
        permission_key="read",
        parameters={
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "Directory path relative to cwd. Default '.'"},
                "max_entries": {"type": "integer", "minimum": 1, "description": "Max entries to return", "default": 200},
                "recursive": {"type": "boolean", "description": "If true, list recursively", "default": False},
            },
            "required": [],
        },
    )

    def check_preconditions(self, args: Mapping[str, Any], cwd: str) -> None:
        path = args.get("path", ".")
        p = resolve_path(Path(cwd), path)
        if not p.exists():
            raise FsError(f"Path not found: {path}")
        if not p.is_dir():
            raise FsError(f"Not a directory: {path}")

    def permission_target(self, args: Mapping[str, Any], cwd: str) -> str:
        return str(resolve_path(Path(cwd), args.get("path", ".")))

    def describe_effect(self, args: Mapping[str, Any], cwd: str) -> str:
        return f"List directory {args.get('path', '.')}"

    async def execute(self, ctx: ToolContext, args: dict[str, Any]) -> ToolOutput:
        cwd = Path(ctx.cwd).expanduser().resolve()
        max_entries = int(args.get("max_entries", 200))
        recursive = bool(args.get("recursive", False))
        p = resolve_path(cwd, args.get("path", "."))

        entries: list[str] = []
        if recursive:
            for root, dirs, files in os.walk(p):
                ctx.cancel.raise_if_cancelled()
                rootp = Path(root)
                for name in dirs + files:
                    entries.append(str((rootp / name).resolve().relative_to(cwd)))
                    if len(entries) >= max_entries:
                        break
                if len(entries) >= max_entries:
                    break
        else:
            for child in sorted(p.iterdir(), key=lambda x: (not x.is_dir(), x.name.lower())):
                entries.append(str(child.resolve().relative_to(cwd)))
                if len(entries) >= max_entries:
                    break

        out = "\n".join(entries) if entries else "(empty)"
        return ToolOutput(out, payload={"entries": entries, "truncated": len(entries) >= max_entries})
