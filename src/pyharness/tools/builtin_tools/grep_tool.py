from __future__ import annotations
import asyncio
from pathlib import Path
from typing import Any, Mapping
import re

from ..base import BaseTool, ToolContext, ToolOutput, ToolSpec
from ...errors import ToolCancelledError, ValidationError
from ...util.cancel import CancelToken
from ...util.fs import resolve_path, read_text, FsError

class GrepTool(BaseTool):
    spec = ToolSpec(
        name="grep",
        description="Search for a pattern in files. Returns matching lines with line numbers.",
        permission_key="read",
        parameters={
            "type": "object",
            "properties": {
                "pattern": {"type": "string", "minLength": 1, "description": "Regex (default) or literal string if regex=false."},
                "path": {"type": "string", "description": "File or directory to search (relative to cwd). Default '.'"},
                "regex": {"type": "boolean", "default": True},
                "include": {"type": "string", "description": "Optional glob filter like '*.py'."},
                "max_matches": {"type": "integer", "minimum": 1, "default": 200},
            },
            "required": ["pattern"],
        },
    )

    def check_preconditions(self, args: Mapping[str, Any], cwd: str) -> None:
        path = args.get("path", ".")
        if not resolve_path(Path(cwd), path).exists():
            raise FsError(f"Path not found: {path}")
        if args.get("regex", True):
            try:
                re.compile(args["pattern"])
            except re.error as e:
                raise ValidationError(f"Invalid regex: {e}")

    def permission_target(self, args: Mapping[str, Any], cwd: str) -> str:
        return str(resolve_path(Path(cwd), args.get("path", ".")))

    def describe_effect(self, args: Mapping[str, Any], cwd: str) -> str:
        return f"Search {args.get('path', '.')} for {args['pattern']!r}"

    async def execute(self, ctx: ToolContext, args: dict[str, Any]) -> ToolOutput:
        return await asyncio.to_thread(self._search, Path(ctx.cwd).expanduser().resolve(), args, ctx.cancel)

    def _search(self, cwd: Path, args: dict[str, Any], cancel: CancelToken) -> ToolOutput:
        pattern = args["pattern"]
        include = args.get("include")
        max_matches = int(args.get("max_matches", 200))
        target = resolve_path(cwd, args.get("path", "."))
        rx = re.compile(pattern) if args.get("regex", True) else None

        if target.is_file():
            files = iter([target])
        else:
            files = (p for p in target.rglob("*") if p.is_file() and (not include or p.match(include)))

        out_lines: list[str] = []
        for f in files:
            # runs in a worker thread; the token is polled between files
            if cancel.cancelled:
                raise ToolCancelledError(cancel.reason or "cancelled")
            try:
                text = read_text(f)
            except OSError:
                continue
            for i, line in enumerate(text.splitlines(), start=1):
                hit = (rx.search(line) is not None) if rx else (pattern in line)
                if hit:
                    rel = str(f.resolve().relative_to(cwd))
                    out_lines.append(f"{rel}:{i}: {line}")
                    if len(out_lines) >= max_matches:
                        return ToolOutput("\n".join(out_lines), payload={"matches": len(out_lines), "truncated": True})
        return ToolOutput(
            "\n".join(out_lines) if out_lines else "(no matches)",
            payload={"matches": len(out_lines), "truncated": False},
        )
