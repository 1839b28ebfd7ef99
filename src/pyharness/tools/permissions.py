from __future__ import annotations

import asyncio
import inspect
import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from fnmatch import fnmatch
from typing import Any, Awaitable, Callable, Literal, Mapping, Protocol, Union

from rich.console import Console

from .base import Tool, args_preview
from ..util.cancel import CancelToken

Decision = Literal["allow", "ask", "deny"]

logger = logging.getLogger(__name__)
console = Console()


@dataclass
class PermissionRule:
    """A single permission rule.

    match supports:
    - "tool:<name_or_pattern>"  -> matches tool name only
    - otherwise: fnmatch against both permission_key and tool_name
    """

    match: str
    decision: Decision

    @staticmethod
    def from_obj(obj: Any) -> "PermissionRule | None":
        if not isinstance(obj, dict):
            return None
        m = obj.get("match")
        d = obj.get("decision")
        if not isinstance(m, str) or d not in {"allow", "ask", "deny"}:
            return None
        return PermissionRule(match=m, decision=d)


@dataclass
class PermissionConfig:
    """Policy layer: per tool-class defaults plus ordered rules (later rules win)."""

    defaults: dict[str, Decision] = field(
        default_factory=lambda: {"read": "allow", "net": "allow", "edit": "ask", "bash": "ask", "mcp": "ask"}
    )
    rules: list[PermissionRule] = field(default_factory=list)

    def set(self, key: str, decision: Decision) -> None:
        self.defaults[key] = decision

    def apply_rules(self, rules: list[PermissionRule]) -> None:
        self.rules.extend(rules)

    def _match_rules(self, permission_key: str, tool_name: str) -> Decision | None:
        decision: Decision | None = None
        for rule in self.rules:
            m = rule.match
            if m.startswith("tool:"):
                pat = m[len("tool:") :]
                if fnmatch(tool_name, pat):
                    decision = rule.decision
            else:
                if fnmatch(permission_key, m) or fnmatch(tool_name, m):
                    decision = rule.decision
        return decision

    def decide(self, permission_key: str, tool_name: str) -> Decision:
        r = self._match_rules(permission_key, tool_name)
        if r is not None:
            return r
        return self.defaults.get(permission_key, self.defaults.get(tool_name, "ask"))


@dataclass
class AutoApprovePolicy:
    """Tool classes and tool-name patterns trusted without a prompt."""

    all: bool = False
    classes: set[str] = field(default_factory=set)
    tools: list[str] = field(default_factory=list)

    def covers(self, permission_key: str, tool_name: str) -> bool:
        if self.all or permission_key in self.classes:
            return True
        return any(fnmatch(tool_name, pat) for pat in self.tools)

    @staticmethod
    def from_obj(obj: Any) -> "AutoApprovePolicy":
        if obj is True:
            return AutoApprovePolicy(all=True)
        if not isinstance(obj, dict):
            return AutoApprovePolicy()
        classes = obj.get("classes", [])
        tools = obj.get("tools", [])
        return AutoApprovePolicy(
            all=bool(obj.get("all", False)),
            classes={str(c) for c in classes} if isinstance(classes, list) else set(),
            tools=[str(t) for t in tools] if isinstance(tools, list) else [],
        )


class ApprovalDecision(str, Enum):
    ALLOW_ONCE = "allow-once"
    ALWAYS_ALLOW = "always-allow"
    DENY = "deny"

    @property
    def allowed(self) -> bool:
        return self is not ApprovalDecision.DENY


@dataclass(frozen=True)
class ApprovalRequest:
    call_id: str
    tool_name: str
    permission_key: str
    target: str
    summary: str
    args_preview: str = ""


class Approver(Protocol):
    async def __call__(self, request: ApprovalRequest) -> ApprovalDecision: ...


class AutoApprover:
    """Non-interactive approver returning a fixed decision."""

    def __init__(self, decision: ApprovalDecision = ApprovalDecision.ALLOW_ONCE):
        self.decision = decision

    async def __call__(self, request: ApprovalRequest) -> ApprovalDecision:
        return self.decision


class CallbackApprover:
    """Adapts a plain or async callable to the Approver protocol."""

    def __init__(self, fn: Callable[[ApprovalRequest], Union[ApprovalDecision, Awaitable[ApprovalDecision]]]):
        self.fn = fn

    async def __call__(self, request: ApprovalRequest) -> ApprovalDecision:
        res = self.fn(request)
        if inspect.isawaitable(res):
            res = await res
        return ApprovalDecision(res)


class ConsoleApprover:
    """Interactive approval on the terminal.

    The blocking prompt runs on a daemon thread so an abandoned prompt (turn
    cancelled while waiting) never keeps the process from exiting.
    """

    _answers = {
        "y": ApprovalDecision.ALLOW_ONCE,
        "yes": ApprovalDecision.ALLOW_ONCE,
        "a": ApprovalDecision.ALWAYS_ALLOW,
        "always": ApprovalDecision.ALWAYS_ALLOW,
    }

    def __init__(self, console_: Console | None = None):
        self.console = console_ or console

    def _ask(self, request: ApprovalRequest) -> ApprovalDecision:
        self.console.print(
            f"\n[yellow]Tool requires approval[/yellow]: [bold]{request.tool_name}[/bold]"
            f" ([cyan]{request.target}[/cyan])\n{request.summary}"
        )
        if request.args_preview:
            self.console.print(request.args_preview)
        try:
            resp = self.console.input("Approve? [y]es / [a]lways / [N]o ").strip().lower()
        except EOFError:
            return ApprovalDecision.DENY
        return self._answers.get(resp, ApprovalDecision.DENY)

    async def __call__(self, request: ApprovalRequest) -> ApprovalDecision:
        loop = asyncio.get_running_loop()
        fut: asyncio.Future[ApprovalDecision] = loop.create_future()

        def _deliver(decision: ApprovalDecision | None, error: BaseException | None) -> None:
            if fut.done():
                return
            if error is not None:
                fut.set_exception(error)
            else:
                fut.set_result(decision)

        def _prompt() -> None:
            try:
                decision, error = self._ask(request), None
            except Exception as e:
                decision, error = None, e
            try:
                loop.call_soon_threadsafe(_deliver, decision, error)
            except RuntimeError:
                pass  # loop already closed

        threading.Thread(target=_prompt, name=f"approval-{request.call_id}", daemon=True).start()
        try:
            return await fut
        except asyncio.CancelledError:
            self.console.print("\n[yellow]Approval prompt abandoned: the turn was cancelled.[/yellow]")
            raise


class ApprovalMemory:
    """Session-scoped, append-only store of always-allow decisions.

    Created at session start and dropped at session end; nothing is persisted.
    """

    def __init__(self) -> None:
        self._entries: list[tuple[str, str]] = []
        self._keys: set[tuple[str, str]] = set()

    def remember(self, tool_name: str, target: str) -> None:
        key = (tool_name, target)
        if key not in self._keys:
            self._entries.append(key)
            self._keys.add(key)

    def allows(self, tool_name: str, target: str) -> bool:
        return (tool_name, target) in self._keys or (tool_name, "*") in self._keys

    def entries(self) -> list[tuple[str, str]]:
        return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)


@dataclass(frozen=True)
class PermissionOutcome:
    allowed: bool
    reason: str  # policy-deny | policy-allow | read-only | auto-approve | remembered | prompt
    decision: ApprovalDecision | None = None
    target: str = ""

    @property
    def prompted(self) -> bool:
        return self.reason == "prompt"


class PermissionEngine:
    """Decides whether a call may run, prompting the approver when needed."""

    def __init__(
        self,
        config: PermissionConfig,
        approver: Approver,
        memory: ApprovalMemory,
        auto_approve: AutoApprovePolicy | None = None,
    ):
        self.config = config
        self.approver = approver
        self.memory = memory
        self.auto_approve = auto_approve or AutoApprovePolicy()
        self._prompt_lock: asyncio.Lock | None = None

    def _lock(self) -> asyncio.Lock:
        if self._prompt_lock is None:
            self._prompt_lock = asyncio.Lock()
        return self._prompt_lock

    def _precheck(self, tool: Tool, target: str) -> PermissionOutcome | None:
        spec = tool.spec
        decision = self.config.decide(spec.permission_key, spec.name)
        if decision == "deny":
            return PermissionOutcome(False, "policy-deny", target=target)
        if decision == "allow":
            return PermissionOutcome(True, "policy-allow", target=target)
        if not spec.side_effecting:
            return PermissionOutcome(True, "read-only", target=target)
        if self.auto_approve.covers(spec.permission_key, spec.name):
            return PermissionOutcome(True, "auto-approve", target=target)
        if self.memory.allows(spec.name, target):
            return PermissionOutcome(True, "remembered", ApprovalDecision.ALWAYS_ALLOW, target)
        return None

    async def check(
        self,
        tool: Tool,
        args: Mapping[str, Any],
        *,
        call_id: str,
        cwd: str,
        cancel: CancelToken,
    ) -> PermissionOutcome:
        """Resolve the permission for one call.

        Blocks on the approver when no policy or remembered decision applies.
        Raises ToolCancelledError if `cancel` fires while waiting.
        """
        target = tool.permission_target(args, cwd)
        outcome = self._precheck(tool, target)
        if outcome is not None:
            return outcome

        request = ApprovalRequest(
            call_id=call_id,
            tool_name=tool.spec.name,
            permission_key=tool.spec.permission_key,
            target=target,
            summary=tool.describe_effect(args, cwd),
            args_preview=args_preview(args),
        )
        # One prompt at a time; a decision made while we queued may already cover us.
        await cancel.guard(self._lock().acquire())
        try:
            outcome = self._precheck(tool, target)
            if outcome is not None:
                return outcome
            decision = await cancel.guard(self.approver(request))
        finally:
            self._lock().release()

        if decision is ApprovalDecision.ALWAYS_ALLOW:
            self.memory.remember(tool.spec.name, target)
        if decision is ApprovalDecision.DENY:
            logger.info("tool %s denied by user (%s)", tool.spec.name, target)
        return PermissionOutcome(decision.allowed, "prompt", decision, target)
