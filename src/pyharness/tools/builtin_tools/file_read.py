from __future__ import annotations
from pathlib import Path
from typing import Any, Mapping

from ..base import BaseTool, ToolContext, ToolOutput, ToolSpec
from ...util.fs import resolve_path, read_text, FsError

class ReadFileTool(BaseTool):
    spec = ToolSpec(
        name="read",
        description="Read a text file. Optionally limit to a line range.",
        permission_key="read",
        parameters={
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "File path relative to cwd."},
                "start_line": {"type": "integer", "minimum": 1, "description": "1-based start line (inclusive)."},
                "end_line": {"type": "integer", "minimum": 1, "description": "1-based end line (inclusive)."},
                "max_chars": {"type": "integer", "minimum": 1, "default": 40000},
            },
            "required": ["path"],
        },
    )

    def check_preconditions(self, args: Mapping[str, Any], cwd: str) -> None:
        p = resolve_path(Path(cwd), args["path"])
        if not p.exists() or not p.is_file():
            raise FsError(f"File not found: {args['path']}")

    def permission_target(self, args: Mapping[str, Any], cwd: str) -> str:
        return str(resolve_path(Path(cwd), args["path"]))

    def describe_effect(self, args: Mapping[str, Any], cwd: str) -> str:
        return f"Read {args['path']}"

    async def execute(self, ctx: ToolContext, args: dict[str, Any]) -> ToolOutput:
        p = resolve_path(Path(ctx.cwd), args["path"])
        lines = read_text(p).splitlines()

        s = args.get("start_line")
        e = args.get("end_line")
        if s is not None or e is not None:
            s = max(1, int(s or 1))
            e = min(len(lines), int(e or len(lines)))
            excerpt = lines[s-1:e]
        else:
            excerpt = lines

        out = "\n".join(excerpt)
        max_chars = int(args.get("max_chars", 40000))
        truncated = len(out) > max_chars
        if truncated:
            out = out[:max_chars] + "\n... (truncated)"
        return ToolOutput(out, payload={"lines": len(excerpt), "total_lines": len(lines), "truncated": truncated})
