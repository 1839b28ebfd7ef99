from __future__ import annotations
import json
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Mapping, Protocol

import jsonschema

from ..errors import ValidationError
from ..util.cancel import CancelToken
from ..util.subprocess import OutputChunk

if TYPE_CHECKING:
    from ..sandbox.base import SandboxSession


@dataclass(frozen=True)
class ToolSpec:
    name: str
    description: str
    parameters: dict[str, Any]   # JSONSchema
    permission_key: str          # "read" | "edit" | "bash" | "net" | "mcp"
    side_effecting: bool = False
    # Exclusive tools never run alongside other calls of the same turn.
    exclusive: bool = False


class ToolStatus(str, Enum):
    SUCCESS = "success"
    USER_REJECTED = "user-rejected"
    VALIDATION_FAILED = "validation-failed"
    EXECUTION_ERROR = "execution-error"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class ErrorDetail:
    kind: str
    message: str


@dataclass(frozen=True)
class ToolOutput:
    """What a tool's execute() returns; the engine turns it into a ToolResult."""

    content: str
    payload: dict[str, Any] = field(default_factory=dict)
    is_error: bool = False
    error_kind: str = "execution"


@dataclass(frozen=True)
class ToolResult:
    call_id: str
    tool_name: str
    status: ToolStatus
    content: str
    payload: dict[str, Any] = field(default_factory=dict)
    error: ErrorDetail | None = None

    @property
    def is_error(self) -> bool:
        return self.status is not ToolStatus.SUCCESS

    def to_message(self) -> dict[str, Any]:
        """OpenAI-compatible tool message for the conversation transcript."""
        return {"role": "tool", "tool_call_id": self.call_id, "content": self.content}


@dataclass
class ToolContext:
    cwd: str
    cancel: CancelToken
    sandbox: "SandboxSession | None" = None
    session_id: str | None = None
    turn_id: str | None = None
    call_id: str | None = None
    # receives streamed process output as (call_id, chunk)
    on_output: Callable[[str, OutputChunk], None] | None = None


class Tool(Protocol):
    spec: ToolSpec
    def validate(self, args: Mapping[str, Any], cwd: str) -> None: ...
    def permission_target(self, args: Mapping[str, Any], cwd: str) -> str: ...
    def describe_effect(self, args: Mapping[str, Any], cwd: str) -> str: ...
    async def execute(self, ctx: ToolContext, args: dict[str, Any]) -> ToolOutput: ...


def check_schema(schema: Mapping[str, Any], args: Mapping[str, Any]) -> None:
    if not schema:
        return
    try:
        jsonschema.validate(dict(args), dict(schema))
    except jsonschema.ValidationError as e:
        where = "/".join(str(p) for p in e.absolute_path)
        raise ValidationError(f"{where}: {e.message}" if where else e.message) from None
    except jsonschema.SchemaError as e:
        raise ValidationError(f"Tool schema is invalid: {e.message}") from None


class BaseTool:
    """Shared behaviour for tools: schema validation and default summaries.

    Subclasses set `spec`, implement `execute` and usually override
    `check_preconditions`, `permission_target` and `describe_effect`.
    """

    spec: ToolSpec

    def validate(self, args: Mapping[str, Any], cwd: str) -> None:
        check_schema(self.spec.parameters, args)
        self.check_preconditions(args, cwd)

    def check_preconditions(self, args: Mapping[str, Any], cwd: str) -> None:
        return None

    def permission_target(self, args: Mapping[str, Any], cwd: str) -> str:
        return "*"

    def describe_effect(self, args: Mapping[str, Any], cwd: str) -> str:
        return f"{self.spec.name}: {args_preview(args, limit=400)}"

    async def execute(self, ctx: ToolContext, args: dict[str, Any]) -> ToolOutput:
        raise NotImplementedError


def args_preview(args: Mapping[str, Any], limit: int = 2000) -> str:
    try:
        s = json.dumps(dict(args), ensure_ascii=False, indent=2)
    except Exception:
        s = str(args)
    if len(s) > limit:
        s = s[:limit] + "\n... (truncated)"
    return s
