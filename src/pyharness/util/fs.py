from __future__ import annotations
import difflib
from pathlib import Path

from ..errors import ValidationError

class FsError(ValidationError):
    pass

def resolve_path(cwd: Path, path_str: str) -> Path:
    p = Path(path_str)
    if not p.is_absolute():
        p = (cwd / p).resolve()
    else:
        p = p.resolve()
    # Paths must stay inside the working directory.
    try:
        p.relative_to(cwd.resolve())
    except ValueError:
        raise FsError(f"Path escapes working directory: {path_str}")
    return p

def read_text(path: Path) -> str:
    return path.read_text(encoding="utf-8", errors="replace")

def unified_diff(before: str, after: str, rel_path: str) -> str:
    lines = difflib.unified_diff(
        before.splitlines(keepends=True),
        after.splitlines(keepends=True),
        fromfile=f"a/{rel_path}",
        tofile=f"b/{rel_path}",
    )
    return "".join(lines)

def diff_stats(diff: str) -> tuple[int, int]:
    added = removed = 0
    for line in diff.splitlines():
        if line.startswith("+++") or line.startswith("---"):
            continue
        if line.startswith("+"):
            added += 1
        elif line.startswith("-"):
            removed += 1
    return added, removed
