from __future__ import annotations
import asyncio
import tempfile
from pathlib import Path

from pyharness.app_context import AppContext
from pyharness.config.models import Settings
from pyharness.session.models import ToolCall
from pyharness.tools.permissions import ApprovalDecision, AutoApprover


async def main():
    with tempfile.TemporaryDirectory() as td:
        cwd = Path(td)
        ctx = await AppContext.open(cwd, Settings(), approver=AutoApprover(ApprovalDecision.ALLOW_ONCE), record_events=False)
        async with ctx:
            # write first, everything else reads what it wrote
            first = await ctx.engine.run_turn(
                [ToolCall(id="w", name="write", arguments={"path": "a.txt", "content": "hello\nworld\n"})]
            )
            print("WRITE:", first.results[0].content)

            calls = [
                ToolCall(id="r", name="read", arguments={"path": "a.txt"}),
                ToolCall(id="g", name="grep", arguments={"pattern": "world"}),
                ToolCall(id="gl", name="glob", arguments={"pattern": "*.txt"}),
                ToolCall(id="ls", name="list", arguments={}),
                ToolCall(id="b", name="bash", arguments={"command": "echo ok && cat a.txt | wc -l"}),
            ]
            outcome = await ctx.engine.run_turn(calls)
            for res in outcome.results:
                print(f"{res.call_id.upper()} [{res.status.value}]:", res.content.strip())

            edit = await ctx.engine.run_turn(
                [ToolCall(id="e", name="edit", arguments={"path": "a.txt", "start_line": 2, "end_line": 2, "new_text": "there"})]
            )
            print("EDIT:", edit.results[0].content)
            print("FINAL:", (cwd / "a.txt").read_text(encoding="utf-8").strip())


if __name__ == "__main__":
    asyncio.run(main())
