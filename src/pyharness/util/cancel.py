from __future__ import annotations

import asyncio
from typing import Any, Awaitable, TypeVar

from ..errors import ToolCancelledError

T = TypeVar("T")


class CancelToken:
    """Hierarchical cancellation signal.

    A turn owns the root token; each call gets a child. Cancelling a parent
    cancels every child, cancelling a child leaves the parent alone.
    """

    def __init__(self, parent: "CancelToken | None" = None) -> None:
        self._event = asyncio.Event()
        self._children: list[CancelToken] = []
        self.reason: str | None = None
        self._parent = parent
        if parent is not None:
            parent._children.append(self)
            if parent.cancelled:
                self.cancel(parent.reason)

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str | None = None) -> None:
        if self._event.is_set():
            return
        self.reason = reason or "cancelled"
        self._event.set()
        for child in list(self._children):
            child.cancel(self.reason)

    def child(self) -> "CancelToken":
        return CancelToken(parent=self)

    def detach(self) -> None:
        """Stop following the parent; its later cancellation no longer reaches this token."""
        parent, self._parent = self._parent, None
        if parent is not None and self in parent._children:
            parent._children.remove(self)

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise ToolCancelledError(self.reason or "cancelled")

    async def guard(self, aw: Awaitable[T]) -> T:
        """Await `aw`, raising ToolCancelledError if the token fires first.

        The awaitable is cancelled when the token wins the race.
        """
        self.raise_if_cancelled()
        task: asyncio.Future[Any] = asyncio.ensure_future(aw)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()
        if task.done():
            return task.result()
        task.cancel()
        try:
            await task
        except (asyncio.CancelledError, Exception):
            pass
        raise ToolCancelledError(self.reason or "cancelled")
