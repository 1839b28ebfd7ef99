from __future__ import annotations

from .base import BaseTool
from .registry import ToolRegistry

from .builtin_tools.bash_tool import BashTool
from .builtin_tools.file_edit import EditFileTool
from .builtin_tools.file_multiedit import MultiEditFileTool
from .builtin_tools.file_read import ReadFileTool
from .builtin_tools.file_write import WriteFileTool
from .builtin_tools.glob_tool import GlobTool
from .builtin_tools.grep_tool import GrepTool
from .builtin_tools.listdir import ListDirTool
from .builtin_tools.webfetch_tool import WebFetchTool

# Registration order is listing order: read-only first, then edits, then bash/net.
BUILTIN_TOOLS: tuple[type[BaseTool], ...] = (
    ListDirTool,
    GlobTool,
    GrepTool,
    ReadFileTool,
    WriteFileTool,
    EditFileTool,
    MultiEditFileTool,
    BashTool,
    WebFetchTool,
)


def register_builtin_tools(registry: ToolRegistry) -> list[str]:
    """Register fresh instances of every built-in tool; returns their names in order."""
    names: list[str] = []
    for cls in BUILTIN_TOOLS:
        tool = cls()
        registry.register(tool)
        names.append(tool.spec.name)
    return names
