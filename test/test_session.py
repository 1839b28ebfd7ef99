"""
Session wiring, event log and the command line.
"""

import asyncio
import json
import os
import time

import pytest
from typer.testing import CliRunner

from pyharness.app_context import AppContext
from pyharness.config.models import SandboxMode, Settings
from pyharness.errors import SandboxUnavailableError
from pyharness.events.store import EventStore
from pyharness.main import app
from pyharness.session.models import ToolCall, parse_openai_tool_calls
from pyharness.tools.base import ToolStatus
from pyharness.tools.permissions import ApprovalDecision, AutoApprover
from pyharness.util.cancel import CancelToken

from helpers import example_config


class TestEventStore:
    def test_append_and_read(self, tmp_path):
        es = EventStore.open("ses_1", tmp_path)
        es.append("tool.call", {"tool": "bash", "path": tmp_path})
        es.append("tool.result", {"status": "success"})
        assert es.types() == ["tool.call", "tool.result"]
        assert list(es.iter_events())[0].data["path"] == str(tmp_path)

    def test_tolerates_corrupt_lines(self, tmp_path):
        es = EventStore.open("ses_2", tmp_path)
        es.append("a", {})
        with es.path.open("a", encoding="utf-8") as f:
            f.write("{broken\n\n")
        es.append("b", {})
        assert es.types() == ["a", "b"]

    def test_queries(self, tmp_path):
        es = EventStore.open("ses_q", tmp_path)
        for t in ("turn.start", "tool.call", "tool.result", "tool.call", "turn.end"):
            es.append(t, {})
        assert len(es.of_type("tool.call")) == 2
        assert [e.type for e in es.of_type("turn.start", "turn.end")] == ["turn.start", "turn.end"]
        assert [e.type for e in es.tail(2)] == ["tool.call", "turn.end"]
        assert len(es.tail(0)) == 5

    def test_missing_file(self, tmp_path):
        assert list(EventStore.open("ses_none", tmp_path).iter_events()) == []


class TestToolCalls:
    def test_parse_openai_tool_calls(self):
        calls = parse_openai_tool_calls(
            [
                {"id": "call_a", "type": "function", "function": {"name": "read", "arguments": '{"path": "a.txt"}'}},
                {"type": "function", "function": {"name": "bash", "arguments": "{oops"}},
            ],
            "turn_1",
        )
        assert calls[0] == ToolCall(id="call_a", name="read", arguments={"path": "a.txt"}, turn_id="turn_1")
        assert calls[1].id.startswith("turn_1_1_")
        assert calls[1].arguments == {"_raw": "{oops"}


class TestAppContext:
    async def test_open_run_close(self, workspace, tmp_path):
        settings = Settings()
        settings.mcp_servers["ex"] = example_config("ex")
        events = EventStore.open("ses_ctx", tmp_path / "ev")
        ctx = await AppContext.open(workspace, settings, approver=AutoApprover(ApprovalDecision.ALLOW_ONCE), events=events)
        async with ctx:
            assert "bash" in ctx.tools and "mcp.ex.echo" in ctx.tools
            outcome = await ctx.engine.run_turn(
                [
                    ToolCall(id="1", name="bash", arguments={"command": "echo from-shell"}),
                    ToolCall(id="2", name="mcp.ex.echo", arguments={"text": "from-server"}),
                    ToolCall(id="3", name="read", arguments={"path": "a.txt"}),
                ]
            )
        assert [r.status for r in outcome.results] == [ToolStatus.SUCCESS] * 3
        assert "from-shell" in outcome.results[0].payload["stdout"]
        assert outcome.results[1].content == "from-server"
        assert ctx.tools.names(source="ex") == []
        types = events.types()
        # servers are connected before the session is announced
        assert types.index("mcp.connected") < types.index("session.start")
        assert types[-1] == "session.end"
        assert {"turn.start", "tool.call", "tool.result", "turn.end"} <= set(types)

    async def test_cancelled_turn_leaves_no_process(self, workspace):
        settings = Settings()
        settings.cancel_grace = 1.0
        chunks = []
        ctx = await AppContext.open(
            workspace,
            settings,
            approver=AutoApprover(ApprovalDecision.ALLOW_ONCE),
            record_events=False,
            on_output=lambda call_id, chunk: chunks.append((call_id, chunk.text)),
        )
        async with ctx:
            token = CancelToken()
            calls = [
                ToolCall(id="r", name="read", arguments={"path": "a.txt"}),
                ToolCall(id="s", name="bash", arguments={"command": "echo $$; exec sleep 60"}),
                ToolCall(id="g", name="grep", arguments={"pattern": "hello"}),
            ]
            asyncio.get_running_loop().call_later(0.5, token.cancel, "interrupted")

            t0 = time.monotonic()
            outcome = await ctx.engine.run_turn(calls, cancel=token)
            elapsed = time.monotonic() - t0

            assert outcome.cancelled
            assert [r.status for r in outcome.results] == [ToolStatus.SUCCESS, ToolStatus.CANCELLED, ToolStatus.SUCCESS]
            assert elapsed < 0.5 + settings.cancel_grace + 1.0
            assert ctx.sandbox.active_pids == []

        pids = [int(line) for call_id, text in chunks if call_id == "s" for line in text.split() if line.isdigit()]
        assert pids
        with pytest.raises(ProcessLookupError):
            os.kill(pids[0], 0)

    async def test_unavailable_sandbox_is_fatal(self, workspace):
        settings = Settings()
        settings.sandbox.mode = SandboxMode.RESTRICTED
        settings.sandbox.bwrap_path = "definitely-not-bwrap-xyz"
        with pytest.raises(SandboxUnavailableError):
            await AppContext.open(workspace, settings, record_events=False)

    async def test_approvals_start_fresh_each_session(self, workspace):
        for _ in range(2):
            ctx = await AppContext.open(workspace, Settings(), approver=AutoApprover(ApprovalDecision.ALWAYS_ALLOW), record_events=False)
            async with ctx:
                assert len(ctx.permissions.memory) == 0
                await ctx.engine.run_turn([ToolCall(id="1", name="bash", arguments={"command": "true"})])
                assert ctx.permissions.memory.entries() == [("bash", "true")]


class TestCli:
    runner = CliRunner()

    def test_tools(self, workspace):
        result = self.runner.invoke(app, ["tools", "--cwd", str(workspace)])
        assert result.exit_code == 0, result.output
        assert "bash" in result.output and "multiedit" in result.output

    def test_run_single_call(self, workspace):
        result = self.runner.invoke(
            app, ["run", "--cwd", str(workspace), "--yes", "--call", "read", "--args", json.dumps({"path": "a.txt"})]
        )
        assert result.exit_code == 0, result.output
        assert "hello" in result.output

    def test_run_calls_file(self, workspace, tmp_path):
        calls = tmp_path / "calls.json"
        calls.write_text(json.dumps([
            {"id": "w", "name": "write", "arguments": {"path": "out.txt", "content": "done\n"}},
            {"id": "bad", "name": "read", "arguments": {"path": "missing.txt"}},
        ]))
        result = self.runner.invoke(app, ["run", "--cwd", str(workspace), "--yes", "--file", str(calls)])
        # one call failed validation
        assert result.exit_code == 1
        assert (workspace / "out.txt").read_text() == "done\n"
        assert "validation-failed" in result.output

    def test_run_rejects_bad_args(self, workspace):
        result = self.runner.invoke(app, ["run", "--cwd", str(workspace), "--call", "read", "--args", "[1]"])
        assert result.exit_code != 0

    def test_events_and_stats(self, workspace):
        run = self.runner.invoke(
            app, ["run", "--cwd", str(workspace), "--yes", "--session", "ses_cli", "--call", "list"]
        )
        assert run.exit_code == 0, run.output
        events = self.runner.invoke(app, ["events", "--session", "ses_cli"])
        assert "turn.end" in events.output
        stats = self.runner.invoke(app, ["stats", "--session", "ses_cli"])
        assert "tool_calls: 1" in stats.output
