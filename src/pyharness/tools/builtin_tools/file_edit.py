from __future__ import annotations
from pathlib import Path
from typing import Any, Mapping, Sequence

from ..base import BaseTool, ToolContext, ToolOutput, ToolSpec
from ...errors import ValidationError
from ...util.fs import resolve_path, read_text, unified_diff, diff_stats, FsError


def check_range(start: int, end: int, line_count: int) -> None:
    # end == line_count + 1 is allowed: append at EOF
    if start < 1 or end < start or start > line_count + 1:
        raise ValidationError(f"Invalid line range {start}-{end} for file with {line_count} lines.")


def apply_line_edits(text: str, edits: Sequence[Mapping[str, Any]]) -> str:
    """Apply sorted, non-overlapping 1-based inclusive line-range edits."""
    lines = text.splitlines()
    for e in reversed(edits):
        start = int(e["start_line"])
        end = min(int(e["end_line"]), len(lines))
        lines = lines[:start-1] + str(e["new_text"]).splitlines() + lines[end:]
    return "\n".join(lines) + ("\n" if text.endswith("\n") or not text else "")


def _existing_file(cwd: str, path: str) -> Path:
    p = resolve_path(Path(cwd), path)
    if not p.exists() or not p.is_file():
        raise FsError(f"File not found: {path}")
    return p


class EditFileTool(BaseTool):
    spec = ToolSpec(
        name="edit",
        description="Replace a line range in a file. Lines are 1-based inclusive. This is deterministic and safe.",
        permission_key="edit",
        side_effecting=True,
        parameters={
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "File path relative to cwd."},
                "start_line": {"type": "integer", "description": "1-based start line (inclusive)."},
                "end_line": {"type": "integer", "description": "1-based end line (inclusive)."},
                "new_text": {"type": "string", "description": "Replacement text for the range."},
            },
            "required": ["path", "start_line", "end_line", "new_text"],
        },
    )

    def check_preconditions(self, args: Mapping[str, Any], cwd: str) -> None:
        p = _existing_file(cwd, args["path"])
        check_range(int(args["start_line"]), int(args["end_line"]), len(read_text(p).splitlines()))

    def permission_target(self, args: Mapping[str, Any], cwd: str) -> str:
        return str(resolve_path(Path(cwd), args["path"]))

    def describe_effect(self, args: Mapping[str, Any], cwd: str) -> str:
        n = len(str(args["new_text"]).splitlines())
        return f"Replace lines {args['start_line']}-{args['end_line']} of {args['path']} with {n} line(s)"

    async def execute(self, ctx: ToolContext, args: dict[str, Any]) -> ToolOutput:
        path = args["path"]
        p = _existing_file(ctx.cwd, path)
        text = read_text(p)
        # the file may have changed since validation
        check_range(int(args["start_line"]), int(args["end_line"]), len(text.splitlines()))
        new_text = apply_line_edits(text, [args])
        ctx.cancel.raise_if_cancelled()
        p.write_text(new_text, encoding="utf-8")
        diff = unified_diff(text, new_text, path)
        added, removed = diff_stats(diff)
        return ToolOutput(
            f"Edited {path}: replaced lines {args['start_line']}-{args['end_line']}.",
            payload={"path": path, "diff": diff, "added": added, "removed": removed},
        )
