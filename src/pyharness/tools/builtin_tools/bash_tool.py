from __future__ import annotations
import asyncio
import re
import shlex
from pathlib import Path
from typing import Any, Mapping

from ..base import BaseTool, ToolContext, ToolOutput, ToolSpec
from ...errors import ExecutionError, ToolCancelledError
from ...util.fs import resolve_path, FsError

# Anything that can chain or redirect makes a prefix approval unsafe.
_COMPOUND = re.compile(r"[;&|`<>\n]|\$\(")
_ENV_ASSIGN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*=")


def command_prefix(command: str) -> str:
    """Normalized approval target for a shell command.

    Simple commands reduce to their program name (`npm test` -> `npm`);
    compound commands are only ever matched verbatim.
    """
    command = command.strip()
    if _COMPOUND.search(command):
        return command
    try:
        words = shlex.split(command)
    except ValueError:
        return command
    words = [w for w in words if not _ENV_ASSIGN.match(w)] or words
    return words[0] if words else command


def _format(stdout: str, stderr: str, code: int | None) -> str:
    out = ""
    if stdout:
        out += f"STDOUT:\n{stdout}\n"
    if stderr:
        out += f"STDERR:\n{stderr}\n"
    if code is not None:
        out += f"EXIT_CODE: {code}"
    return out


class BashTool(BaseTool):
    spec = ToolSpec(
        name="bash",
        description="Run a shell command in the working directory. Returns stdout/stderr and exit code.",
        permission_key="bash",
        side_effecting=True,
        parameters={
            "type": "object",
            "properties": {
                "command": {"type": "string", "minLength": 1, "description": "Shell command to run."},
                "cwd": {"type": "string", "description": "Subdirectory to run in (relative to cwd)."},
                "timeout": {"type": "number", "exclusiveMinimum": 0, "description": "Optional timeout seconds."},
            },
            "required": ["command"],
        },
    )

    def check_preconditions(self, args: Mapping[str, Any], cwd: str) -> None:
        if not str(args["command"]).strip():
            raise FsError("Empty command.")
        sub = args.get("cwd")
        if sub is not None and not resolve_path(Path(cwd), sub).is_dir():
            raise FsError(f"Not a directory: {sub}")

    def permission_target(self, args: Mapping[str, Any], cwd: str) -> str:
        return command_prefix(str(args["command"]))

    def describe_effect(self, args: Mapping[str, Any], cwd: str) -> str:
        where = args.get("cwd") or "."
        return f"Run shell command in {where}:\n  $ {args['command']}"

    async def execute(self, ctx: ToolContext, args: dict[str, Any]) -> ToolOutput:
        if ctx.sandbox is None:
            raise ExecutionError("no sandbox session available for bash")
        cmd = str(args["command"]).strip()
        run_cwd = str(resolve_path(Path(ctx.cwd), args["cwd"])) if args.get("cwd") else ctx.cwd

        token = ctx.cancel.child()
        timer = None
        timeout = args.get("timeout")
        if timeout is not None:
            timer = asyncio.get_running_loop().call_later(float(timeout), token.cancel, "timeout")

        run = ctx.sandbox.stream(cmd, cancel=token, cwd=run_cwd)
        stdout: list[str] = []
        stderr: list[str] = []
        try:
            async for chunk in run:
                (stdout if chunk.stream == "stdout" else stderr).append(chunk.text)
                if ctx.on_output is not None:
                    ctx.on_output(ctx.call_id or "", chunk)
        except ToolCancelledError:
            if ctx.cancel.cancelled or token.reason != "timeout":
                raise
            partial = _format("".join(stdout), "".join(stderr), None)
            return ToolOutput(
                f"{partial}\nTIMEOUT: command exceeded {timeout}s and was killed".lstrip(),
                payload={"exit_code": None, "stdout": "".join(stdout), "stderr": "".join(stderr), "timed_out": True},
                is_error=True,
                error_kind="timeout",
            )
        except (FileNotFoundError, PermissionError) as e:
            raise ctx.sandbox.spawn_failed(e) from e
        finally:
            if timer is not None:
                timer.cancel()

        assert run.result is not None
        await ctx.sandbox.check_result(run, run.result)
        res = run.result
        return ToolOutput(
            _format(res.stdout, res.stderr, res.returncode),
            payload={"exit_code": res.returncode, "stdout": res.stdout, "stderr": res.stderr, "timed_out": False},
        )
