from __future__ import annotations
import asyncio
import codecs
import logging
import os
import signal
from dataclasses import dataclass
from typing import AsyncIterator, Awaitable, Callable, Optional, Sequence

from .cancel import CancelToken
from ..errors import ToolCancelledError

logger = logging.getLogger(__name__)

_READ_SIZE = 4096


@dataclass
class CmdResult:
    returncode: int
    stdout: str
    stderr: str


@dataclass(frozen=True)
class OutputChunk:
    stream: str  # "stdout" | "stderr"
    text: str


async def terminate_process(proc: asyncio.subprocess.Process, grace: float = 2.0) -> None:
    """SIGTERM the process group, then SIGKILL it if it is still alive after `grace`."""
    if proc.returncode is not None:
        return
    try:
        if os.name == "nt":
            proc.terminate()
        else:
            os.killpg(proc.pid, signal.SIGTERM)
    except ProcessLookupError:
        return
    try:
        await asyncio.wait_for(proc.wait(), timeout=grace)
        return
    except asyncio.TimeoutError:
        pass
    try:
        if os.name == "nt":
            proc.kill()
        else:
            os.killpg(proc.pid, signal.SIGKILL)
    except ProcessLookupError:
        return
    await proc.wait()


class ProcessRun:
    """One command execution, consumed as an async stream of OutputChunk.

    The stream is lazy and can be iterated once. The cancel token is checked
    at every chunk boundary and while the process is idle; cancelling kills
    the process group and raises ToolCancelledError. `result` is set once the
    stream is exhausted.
    """

    def __init__(
        self,
        argv: Sequence[str],
        *,
        cwd: str | None,
        env: dict[str, str] | None,
        cancel: CancelToken,
        grace: float = 2.0,
        lock: asyncio.Lock | None = None,
        on_cancel: Optional[Callable[[], Awaitable[None]]] = None,
        on_start: Optional[Callable[["ProcessRun"], None]] = None,
        on_finish: Optional[Callable[["ProcessRun"], None]] = None,
    ):
        self.argv = list(argv)
        self.cwd = cwd
        self.env = env
        self.cancel = cancel
        self.grace = grace
        self.lock = lock
        self.on_cancel = on_cancel
        self.on_start = on_start
        self.on_finish = on_finish
        self.result: CmdResult | None = None
        self.killed = False
        self._proc: asyncio.subprocess.Process | None = None
        self._iterated = False

    @property
    def pid(self) -> int | None:
        return self._proc.pid if self._proc else None

    def __aiter__(self) -> AsyncIterator[OutputChunk]:
        if self._iterated:
            raise RuntimeError("ProcessRun can only be iterated once")
        self._iterated = True
        return self._iterate()

    async def collect(self) -> CmdResult:
        async for _ in self:
            pass
        assert self.result is not None
        return self.result

    async def kill(self) -> None:
        if self._proc is None or self._proc.returncode is not None:
            return
        self.killed = True
        if self.on_cancel is not None:
            try:
                await self.on_cancel()
            except Exception as e:
                logger.warning("cancel hook failed for %s: %s", self.argv[:1], e)
        await terminate_process(self._proc, self.grace)

    async def _pump(self, reader: asyncio.StreamReader, name: str, queue: asyncio.Queue) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        try:
            while True:
                data = await reader.read(_READ_SIZE)
                if not data:
                    tail = decoder.decode(b"", final=True)
                    if tail:
                        await queue.put(OutputChunk(name, tail))
                    break
                text = decoder.decode(data)
                if text:
                    await queue.put(OutputChunk(name, text))
        finally:
            await queue.put(None)

    async def _iterate(self) -> AsyncIterator[OutputChunk]:
        locked = False
        if self.lock is not None:
            await self.cancel.guard(self.lock.acquire())
            locked = True
        readers: list[asyncio.Task] = []
        cancel_wait = asyncio.ensure_future(self.cancel.wait())
        try:
            self.cancel.raise_if_cancelled()
            self._proc = await asyncio.create_subprocess_exec(
                *self.argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self.cwd,
                env=self.env,
                start_new_session=(os.name != "nt"),
            )
            if self.on_start is not None:
                self.on_start(self)
            proc = self._proc
            assert proc.stdout is not None and proc.stderr is not None
            queue: asyncio.Queue = asyncio.Queue()
            readers = [
                asyncio.ensure_future(self._pump(proc.stdout, "stdout", queue)),
                asyncio.ensure_future(self._pump(proc.stderr, "stderr", queue)),
            ]
            parts: dict[str, list[str]] = {"stdout": [], "stderr": []}
            open_streams = 2
            while open_streams:
                getter = asyncio.ensure_future(queue.get())
                await asyncio.wait({getter, cancel_wait}, return_when=asyncio.FIRST_COMPLETED)
                if not getter.done():
                    getter.cancel()
                    await self.kill()
                    raise ToolCancelledError(self.cancel.reason or "cancelled")
                chunk = getter.result()
                if chunk is None:
                    open_streams -= 1
                    continue
                parts[chunk.stream].append(chunk.text)
                yield chunk
                if self.cancel.cancelled:
                    await self.kill()
                    raise ToolCancelledError(self.cancel.reason or "cancelled")

            waiter = asyncio.ensure_future(proc.wait())
            await asyncio.wait({waiter, cancel_wait}, return_when=asyncio.FIRST_COMPLETED)
            if not waiter.done():
                waiter.cancel()
                await self.kill()
                raise ToolCancelledError(self.cancel.reason or "cancelled")
            self.result = CmdResult(
                returncode=proc.returncode if proc.returncode is not None else -1,
                stdout="".join(parts["stdout"]),
                stderr="".join(parts["stderr"]),
            )
        finally:
            cancel_wait.cancel()
            for r in readers:
                r.cancel()
            if self._proc is not None and self._proc.returncode is None:
                await self.kill()
            if self.on_finish is not None:
                self.on_finish(self)
            if locked and self.lock is not None:
                self.lock.release()


async def run_cmd(
    cmd: Sequence[str],
    cwd: str | None = None,
    timeout: Optional[float] = 120,
    env: dict[str, str] | None = None,
) -> CmdResult:
    """Run a short helper command to completion (no streaming)."""
    proc = await asyncio.create_subprocess_exec(
        *cmd,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        cwd=cwd,
        env=env,
        start_new_session=(os.name != "nt"),
    )
    try:
        out, err = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        await terminate_process(proc)
        raise
    return CmdResult(
        proc.returncode if proc.returncode is not None else -1,
        out.decode("utf-8", errors="replace"),
        err.decode("utf-8", errors="replace"),
    )
