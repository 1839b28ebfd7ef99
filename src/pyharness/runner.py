from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import AsyncIterator, Callable, Sequence

from .errors import (
    ExecutionError,
    HarnessError,
    NotFoundError,
    PermissionDeniedError,
    ToolCancelledError,
    ToolTimeoutError,
    ValidationError,
)
from .events.store import EventStore
from .sandbox.base import SandboxSession
from .session.models import ToolCall, new_turn_id
from .tools.base import ErrorDetail, Tool, ToolContext, ToolOutput, ToolResult, ToolStatus
from .tools.permissions import PermissionEngine
from .tools.registry import ToolRegistry
from .util.cancel import CancelToken
from .util.subprocess import OutputChunk

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TurnOutcome:
    turn_id: str
    results: list[ToolResult]
    cancelled: bool = False


class _ResultSlot:
    """Holds the single result of one call; a second finalize is a bug."""

    def __init__(self, call: ToolCall):
        self.call = call
        self.future: asyncio.Future[ToolResult] = asyncio.get_running_loop().create_future()

    @property
    def done(self) -> bool:
        return self.future.done()

    def finalize(self, result: ToolResult) -> None:
        if self.future.done():
            raise RuntimeError(f"duplicate result for tool call {self.call.id}")
        self.future.set_result(result)


class _TurnGate:
    """Shared/exclusive gate: exclusive calls run with nothing else in flight."""

    def __init__(self) -> None:
        self._cond = asyncio.Condition()
        self._active = 0
        self._exclusive = False
        self._waiting_exclusive = 0

    async def acquire(self, exclusive: bool) -> None:
        async with self._cond:
            if exclusive:
                self._waiting_exclusive += 1
                try:
                    await self._cond.wait_for(lambda: not self._exclusive and self._active == 0)
                finally:
                    self._waiting_exclusive -= 1
                self._exclusive = True
            else:
                await self._cond.wait_for(lambda: not self._exclusive and self._waiting_exclusive == 0)
                self._active += 1

    async def release(self, exclusive: bool) -> None:
        async with self._cond:
            if exclusive:
                self._exclusive = False
            else:
                self._active -= 1
            self._cond.notify_all()


def _result(call: ToolCall, status: ToolStatus, content: str, *, kind: str | None = None, payload=None) -> ToolResult:
    error = ErrorDetail(kind=kind or status.value, message=content) if status is not ToolStatus.SUCCESS else None
    return ToolResult(
        call_id=call.id,
        tool_name=call.name,
        status=status,
        content=content,
        payload=dict(payload or {}),
        error=error,
    )


class TurnRun:
    """One turn in flight.

    Iterating yields results in call-issue order as soon as each one and all
    earlier ones are final. `cancel()` interrupts the turn; `wait()` returns
    the outcome once every call has resolved.
    """

    def __init__(self, engine: "ExecutionEngine", calls: Sequence[ToolCall], turn_id: str, cancel: CancelToken):
        self.engine = engine
        self.turn_id = turn_id
        self.token = cancel
        self.slots = [_ResultSlot(c) for c in calls]
        self._sem = asyncio.Semaphore(max(1, engine.max_parallel))
        self._gate = _TurnGate()
        self._tasks = [asyncio.ensure_future(self._run_call(s)) for s in self.slots]
        self._supervisor = asyncio.ensure_future(self._supervise())

    def cancel(self, reason: str = "turn cancelled") -> None:
        self.token.cancel(reason)

    @property
    def done(self) -> bool:
        return self._supervisor.done()

    async def wait(self) -> TurnOutcome:
        return await asyncio.shield(self._supervisor)

    async def __aiter__(self) -> AsyncIterator[ToolResult]:
        for slot in self.slots:
            yield await asyncio.shield(slot.future)

    async def _run_call(self, slot: _ResultSlot) -> None:
        token = self.token.child()
        try:
            result = await self.engine._execute_call(slot.call, token, self._sem, self._gate, self.turn_id)
        except asyncio.CancelledError:
            if not slot.done:
                slot.finalize(_result(slot.call, ToolStatus.CANCELLED, "Tool call cancelled (turn interrupted).", kind="cancelled"))
            raise
        except Exception as e:
            logger.exception("unexpected failure running %s", slot.call.name)
            result = _result(slot.call, ToolStatus.EXECUTION_ERROR, f"Tool {slot.call.name} exception: {e}", kind="internal")
        if slot.done:
            logger.warning("discarding late result for tool call %s", slot.call.id)
            return
        slot.finalize(result)

    async def _supervise(self) -> TurnOutcome:
        try:
            return await self._settle()
        finally:
            # drop the link to the driver's token
            self.token.detach()

    async def _settle(self) -> TurnOutcome:
        engine = self.engine
        if not self._tasks:
            engine._event("turn.end", {"turn_id": self.turn_id, "cancelled": False, "statuses": []})
            return TurnOutcome(turn_id=self.turn_id, results=[], cancelled=False)
        all_done = asyncio.ensure_future(asyncio.wait(self._tasks))
        cancel_wait = asyncio.ensure_future(self.token.wait())
        try:
            await asyncio.wait({all_done, cancel_wait}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            cancel_wait.cancel()

        cancelled = self.token.cancelled and not all_done.done()
        if cancelled:
            engine._event("turn.cancelled", {"turn_id": self.turn_id, "reason": self.token.reason})
            done, pending = await asyncio.wait(self._tasks, timeout=engine.cancel_grace)
            if pending:
                logger.warning("turn %s: %d call(s) ignored cancellation, forcing", self.turn_id, len(pending))
                for t in pending:
                    t.cancel()
                _, stuck = await asyncio.wait(pending, timeout=engine.cancel_grace)
                if stuck:
                    logger.error("turn %s: %d call(s) did not stop after forced cancellation", self.turn_id, len(stuck))
        if not cancelled:
            await all_done
        elif not all_done.done():
            all_done.cancel()

        for slot in self.slots:
            if not slot.done:
                slot.finalize(_result(slot.call, ToolStatus.CANCELLED, "Tool call cancelled (turn interrupted).", kind="cancelled"))
        for t in self._tasks:
            if t.done() and not t.cancelled() and t.exception() is not None:
                logger.error("call task failed: %s", t.exception())

        results = [s.future.result() for s in self.slots]
        engine._event(
            "turn.end",
            {
                "turn_id": self.turn_id,
                "cancelled": cancelled,
                "statuses": [r.status.value for r in results],
            },
        )
        return TurnOutcome(turn_id=self.turn_id, results=results, cancelled=cancelled)


class ExecutionEngine:
    """Runs the tool calls of a turn: resolve, validate, gate, execute, report."""

    def __init__(
        self,
        registry: ToolRegistry,
        permissions: PermissionEngine,
        *,
        cwd: str,
        sandbox: SandboxSession | None = None,
        session_id: str | None = None,
        events: EventStore | None = None,
        max_parallel: int = 4,
        cancel_grace: float = 5.0,
        max_result_chars: int = 30000,
        on_output: Callable[[str, OutputChunk], None] | None = None,
    ):
        self.registry = registry
        self.permissions = permissions
        self.cwd = cwd
        self.sandbox = sandbox
        self.session_id = session_id
        self.events = events
        self.max_parallel = max_parallel
        self.cancel_grace = cancel_grace
        self.max_result_chars = max_result_chars
        self.on_output = on_output

    def _event(self, event_type: str, data: dict) -> None:
        if self.events:
            self.events.append(event_type, data)

    def start_turn(
        self,
        calls: Sequence[ToolCall],
        *,
        cancel: CancelToken | None = None,
        turn_id: str | None = None,
    ) -> TurnRun:
        ids = [c.id for c in calls]
        dupes = sorted({i for i in ids if ids.count(i) > 1})
        if dupes:
            raise ValueError(f"duplicate tool call ids in turn: {', '.join(dupes)}")
        turn_id = turn_id or (calls[0].turn_id if calls and calls[0].turn_id else new_turn_id())
        self._event("turn.start", {"turn_id": turn_id, "calls": [{"id": c.id, "tool": c.name} for c in calls]})
        return TurnRun(self, calls, turn_id, cancel.child() if cancel else CancelToken())

    async def run_turn(
        self,
        calls: Sequence[ToolCall],
        *,
        cancel: CancelToken | None = None,
        turn_id: str | None = None,
    ) -> TurnOutcome:
        run = self.start_turn(calls, cancel=cancel, turn_id=turn_id)
        try:
            return await run.wait()
        except asyncio.CancelledError:
            # the driver itself was cancelled: still settle every call
            run.cancel("driver cancelled")
            await run.wait()
            raise

    async def stream_turn(
        self,
        calls: Sequence[ToolCall],
        *,
        cancel: CancelToken | None = None,
        turn_id: str | None = None,
    ) -> AsyncIterator[ToolResult]:
        """Yield results in issue order as soon as each one (and all before it) is final.

        Stopping the iteration early cancels whatever is still running.
        """
        run = self.start_turn(calls, cancel=cancel, turn_id=turn_id)
        try:
            async for res in run:
                yield res
        finally:
            if not run.done:
                run.cancel("consumer stopped")
            await run.wait()

    # -- one call ---------------------------------------------------------

    async def _execute_call(
        self,
        call: ToolCall,
        token: CancelToken,
        sem: asyncio.Semaphore,
        gate: _TurnGate,
        turn_id: str,
    ) -> ToolResult:
        tool = self.registry.get_optional(call.name)
        if tool is None:
            self._event("tool.missing", {"turn_id": turn_id, "tool": call.name, "tool_call_id": call.id})
            return _result(call, ToolStatus.EXECUTION_ERROR, f"Tool {call.name} not found.", kind=NotFoundError.kind)

        args = dict(call.arguments)
        try:
            tool.validate(args, self.cwd)
        except ValidationError as e:
            return self._report(call, _result(call, ToolStatus.VALIDATION_FAILED, f"Invalid arguments for {call.name}: {e}", kind=e.kind), turn_id)
        except Exception as e:
            return self._report(call, _result(call, ToolStatus.VALIDATION_FAILED, f"Invalid arguments for {call.name}: {e}", kind="validation"), turn_id)

        self._event(
            "tool.call",
            {
                "turn_id": turn_id,
                "tool": tool.spec.name,
                "permission_key": tool.spec.permission_key,
                "tool_call_id": call.id,
                "args": args,
            },
        )

        try:
            outcome = await self.permissions.check(tool, args, call_id=call.id, cwd=self.cwd, cancel=token)
        except ToolCancelledError:
            return self._report(call, _result(call, ToolStatus.CANCELLED, "Tool call cancelled while awaiting approval.", kind="cancelled"), turn_id)
        if not outcome.allowed:
            by = "policy" if outcome.reason == "policy-deny" else "user"
            self._event("tool.denied", {"turn_id": turn_id, "tool": tool.spec.name, "tool_call_id": call.id, "by": by})
            return self._report(
                call,
                _result(call, ToolStatus.USER_REJECTED, f"Tool {tool.spec.name} was denied by {by} permissions.", kind=PermissionDeniedError.kind),
                turn_id,
            )

        ctx = ToolContext(
            cwd=self.cwd,
            cancel=token,
            sandbox=self.sandbox,
            session_id=self.session_id,
            turn_id=turn_id,
            call_id=call.id,
            on_output=self.on_output,
        )
        t0 = time.perf_counter()
        result = await self._run_gated(tool, call, ctx, args, sem, gate)
        elapsed_ms = int((time.perf_counter() - t0) * 1000)
        return self._report(call, result, turn_id, elapsed_ms)

    async def _run_gated(
        self,
        tool: Tool,
        call: ToolCall,
        ctx: ToolContext,
        args: dict,
        sem: asyncio.Semaphore,
        gate: _TurnGate,
    ) -> ToolResult:
        exclusive = tool.spec.exclusive
        try:
            await ctx.cancel.guard(sem.acquire())
        except ToolCancelledError:
            return _result(call, ToolStatus.CANCELLED, "Tool call cancelled before it started.", kind="cancelled")
        try:
            try:
                await ctx.cancel.guard(gate.acquire(exclusive))
            except ToolCancelledError:
                return _result(call, ToolStatus.CANCELLED, "Tool call cancelled before it started.", kind="cancelled")
            try:
                output = await tool.execute(ctx, args)
            finally:
                await gate.release(exclusive)
        except ToolCancelledError as e:
            return _result(call, ToolStatus.CANCELLED, f"Tool {call.name} cancelled: {e}", kind="cancelled")
        except ValidationError as e:
            return _result(call, ToolStatus.VALIDATION_FAILED, f"Invalid arguments for {call.name}: {e}", kind=e.kind)
        except PermissionDeniedError as e:
            return _result(call, ToolStatus.USER_REJECTED, str(e), kind=e.kind)
        except ToolTimeoutError as e:
            return _result(call, ToolStatus.EXECUTION_ERROR, f"Tool {call.name} timed out: {e}", kind=e.kind)
        except ExecutionError as e:
            payload = {"environment_lost": True} if e.environment_lost else {}
            return _result(call, ToolStatus.EXECUTION_ERROR, f"Tool {call.name} failed: {e}", kind=e.kind, payload=payload)
        except HarnessError as e:
            return _result(call, ToolStatus.EXECUTION_ERROR, f"Tool {call.name} failed: {e}", kind=e.kind)
        except Exception as e:
            logger.debug("tool %s raised", call.name, exc_info=True)
            return _result(call, ToolStatus.EXECUTION_ERROR, f"Tool {call.name} exception: {e}", kind="exception")
        finally:
            sem.release()
        return self._from_output(call, output)

    def _from_output(self, call: ToolCall, output: ToolOutput) -> ToolResult:
        content = output.content or ""
        # Truncate overly-long tool results to keep context manageable.
        if len(content) > self.max_result_chars:
            head = content[: self.max_result_chars // 2]
            tail = content[-self.max_result_chars // 2:]
            content = head + "\n\n... (truncated) ...\n\n" + tail
        if output.is_error:
            return _result(call, ToolStatus.EXECUTION_ERROR, content, kind=output.error_kind, payload=output.payload)
        return _result(call, ToolStatus.SUCCESS, content, payload=output.payload)

    def _report(self, call: ToolCall, result: ToolResult, turn_id: str, elapsed_ms: int | None = None) -> ToolResult:
        self._event(
            "tool.result",
            {
                "turn_id": turn_id,
                "tool": call.name,
                "tool_call_id": call.id,
                "status": result.status.value,
                "error_kind": result.error.kind if result.error else None,
                "elapsed_ms": elapsed_ms,
                "content_len": len(result.content),
                "content_preview": result.content[:4000],
            },
        )
        return result
