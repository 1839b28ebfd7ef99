from __future__ import annotations
from pathlib import Path
from typing import Any, Mapping
import glob as _glob

from ..base import BaseTool, ToolContext, ToolOutput, ToolSpec
from ...util.fs import FsError

class GlobTool(BaseTool):
    spec = ToolSpec(
        name="glob",
        description="Find files matching a glob pattern (relative to cwd).",
        permission_key="read",
        parameters={
            "type": "object",
            "properties": {
                "pattern": {"type": "string", "minLength": 1, "description": "Glob pattern, e.g. 'src/**/*.py'."},
                "max_results": {"type": "integer", "minimum": 1, "default": 200},
            },
            "required": ["pattern"],
        },
    )

    def check_preconditions(self, args: Mapping[str, Any], cwd: str) -> None:
        pattern = args["pattern"]
        if Path(pattern).is_absolute() or ".." in Path(pattern).parts:
            raise FsError(f"Pattern must stay inside the working directory: {pattern}")

    def permission_target(self, args: Mapping[str, Any], cwd: str) -> str:
        return args["pattern"]

    def describe_effect(self, args: Mapping[str, Any], cwd: str) -> str:
        return f"Find files matching {args['pattern']}"

    async def execute(self, ctx: ToolContext, args: dict[str, Any]) -> ToolOutput:
        cwd = Path(ctx.cwd).resolve()
        pattern = args["pattern"]
        max_results = int(args.get("max_results", 200))
        matches = _glob.glob(str(cwd / pattern), recursive=True)
        rel: list[str] = []
        for m in sorted(matches):
            try:
                rel.append(str(Path(m).resolve().relative_to(cwd)))
            except ValueError:
                continue
            if len(rel) >= max_results:
                break
        return ToolOutput("\n".join(rel) if rel else "(no matches)", payload={"matches": rel})
