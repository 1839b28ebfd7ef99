from __future__ import annotations
import json
import uuid
from dataclasses import dataclass, field
from typing import Any, Mapping


@dataclass(frozen=True)
class ToolCall:
    id: str
    name: str
    arguments: Mapping[str, Any] = field(default_factory=dict)  # parsed json
    turn_id: str = ""


def new_turn_id() -> str:
    return f"turn_{uuid.uuid4().hex[:12]}"


def parse_openai_tool_calls(tool_calls: list[dict] | None, turn_id: str) -> list[ToolCall]:
    """Build ToolCalls from an OpenAI-compatible assistant `tool_calls` list.

    Arguments that are not valid JSON objects are passed through under
    `_raw` so validation reports them instead of the call being dropped.
    """
    out: list[ToolCall] = []
    for i, tc in enumerate(tool_calls or []):
        fn = tc.get("function") or {}
        arg_str = fn.get("arguments") or "{}"
        if isinstance(arg_str, str):
            try:
                args = json.loads(arg_str)
            except json.JSONDecodeError:
                args = {"_raw": arg_str}
        else:
            args = arg_str
        if not isinstance(args, dict):
            args = {"_raw": args}
        call_id = str(tc.get("id") or f"{turn_id}_{i}_{uuid.uuid4().hex[:8]}")
        out.append(ToolCall(id=call_id, name=str(fn.get("name") or ""), arguments=args, turn_id=turn_id))
    return out
