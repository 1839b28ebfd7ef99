from __future__ import annotations
from pathlib import Path
from typing import Any, Mapping

from ..base import BaseTool, ToolContext, ToolOutput, ToolSpec
from ...errors import ValidationError
from ...util.fs import resolve_path, read_text, unified_diff, diff_stats, FsError
from .file_edit import apply_line_edits, check_range


def _check_edits(edits: list[Mapping[str, Any]], line_count: int) -> None:
    ranges = [(int(e["start_line"]), int(e["end_line"])) for e in edits]
    if ranges != sorted(ranges, key=lambda x: x[0]):
        raise ValidationError("edits must be sorted by start_line")
    for (s1, e1), (s2, e2) in zip(ranges, ranges[1:]):
        if s2 <= e1:
            raise ValidationError("edits must not overlap")
    for s, e in ranges:
        check_range(s, e, line_count)


class MultiEditFileTool(BaseTool):
    spec = ToolSpec(
        name="multiedit",
        description="Apply multiple line-range edits in a single call. Edits must be non-overlapping and sorted.",
        permission_key="edit",
        side_effecting=True,
        parameters={
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "File path relative to cwd."},
                "edits": {
                    "type": "array",
                    "minItems": 1,
                    "items": {
                        "type": "object",
                        "properties": {
                            "start_line": {"type": "integer"},
                            "end_line": {"type": "integer"},
                            "new_text": {"type": "string"},
                        },
                        "required": ["start_line", "end_line", "new_text"],
                    },
                },
            },
            "required": ["path", "edits"],
        },
    )

    def check_preconditions(self, args: Mapping[str, Any], cwd: str) -> None:
        p = resolve_path(Path(cwd), args["path"])
        if not p.is_file():
            raise FsError(f"File not found: {args['path']}")
        _check_edits(list(args["edits"]), len(read_text(p).splitlines()))

    def permission_target(self, args: Mapping[str, Any], cwd: str) -> str:
        return str(resolve_path(Path(cwd), args["path"]))

    def describe_effect(self, args: Mapping[str, Any], cwd: str) -> str:
        ranges = ", ".join(f"{e['start_line']}-{e['end_line']}" for e in args["edits"])
        return f"Apply {len(args['edits'])} edit(s) to {args['path']} (lines {ranges})"

    async def execute(self, ctx: ToolContext, args: dict[str, Any]) -> ToolOutput:
        path = args["path"]
        p = resolve_path(Path(ctx.cwd), path)
        text = read_text(p)
        edits = list(args["edits"])
        _check_edits(edits, len(text.splitlines()))
        # all edits land in one write so a failure leaves the file untouched
        new_text = apply_line_edits(text, edits)
        ctx.cancel.raise_if_cancelled()
        p.write_text(new_text, encoding="utf-8")
        diff = unified_diff(text, new_text, path)
        added, removed = diff_stats(diff)
        return ToolOutput(
            f"Applied {len(edits)} edits to {path}.",
            payload={"path": path, "diff": diff, "added": added, "removed": removed},
        )
