from __future__ import annotations
from pathlib import Path
from typing import Any, Mapping

from ..base import BaseTool, ToolContext, ToolOutput, ToolSpec
from ...util.fs import resolve_path, read_text, unified_diff, diff_stats, FsError

class WriteFileTool(BaseTool):
    spec = ToolSpec(
        name="write",
        description="Create or overwrite a file with given content.",
        permission_key="edit",
        side_effecting=True,
        parameters={
            "type": "object",
            "properties": {
                "path": {"type": "string", "minLength": 1, "description": "File path relative to cwd."},
                "content": {"type": "string", "description": "Full file content."},
                "mkdirs": {"type": "boolean", "default": True, "description": "Create parent directories if needed."},
            },
            "required": ["path", "content"],
        },
    )

    def check_preconditions(self, args: Mapping[str, Any], cwd: str) -> None:
        p = resolve_path(Path(cwd), args["path"])
        if p.is_dir():
            raise FsError(f"Path is a directory: {args['path']}")
        if not args.get("mkdirs", True) and not p.parent.is_dir():
            raise FsError(f"Parent directory does not exist: {args['path']}")

    def permission_target(self, args: Mapping[str, Any], cwd: str) -> str:
        return str(resolve_path(Path(cwd), args["path"]))

    def describe_effect(self, args: Mapping[str, Any], cwd: str) -> str:
        p = resolve_path(Path(cwd), args["path"])
        verb = "Overwrite" if p.exists() else "Create"
        return f"{verb} {args['path']} ({len(args['content'])} chars)"

    async def execute(self, ctx: ToolContext, args: dict[str, Any]) -> ToolOutput:
        path = args["path"]
        content = args["content"]
        p = resolve_path(Path(ctx.cwd), path)
        before = read_text(p) if p.exists() else ""
        ctx.cancel.raise_if_cancelled()
        if args.get("mkdirs", True):
            p.parent.mkdir(parents=True, exist_ok=True)
        p.write_text(content, encoding="utf-8")
        diff = unified_diff(before, content, path)
        added, removed = diff_stats(diff)
        return ToolOutput(
            f"Wrote {path} ({len(content)} chars).",
            payload={"path": path, "diff": diff, "added": added, "removed": removed},
        )
