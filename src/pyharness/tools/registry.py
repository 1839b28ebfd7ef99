from __future__ import annotations
import logging
import threading
from dataclasses import dataclass, field
from typing import Iterable, Optional

from .base import Tool, ToolSpec
from ..errors import ConflictError, NotFoundError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _Entry:
    tool: Tool
    source: str | None  # None for built-ins, server name for remote tools
    seq: int


@dataclass(frozen=True)
class _Snapshot:
    by_name: dict[str, _Entry] = field(default_factory=dict)
    ordered: tuple[_Entry, ...] = ()


class ToolRegistry:
    """Holds built-in and remote tools.

    Writers serialize on a lock and publish a fresh immutable snapshot;
    readers just grab the current snapshot, so a read never sees half of a
    transaction.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._snapshot = _Snapshot()
        self._sources: list[str] = []
        self._seq = 0

    # -- writes ---------------------------------------------------------

    def register(self, tool: Tool, *, source: str | None = None) -> None:
        self.apply(source, add=[tool])

    def unregister(self, name: str) -> None:
        with self._lock:
            by_name = dict(self._snapshot.by_name)
            if name not in by_name:
                raise NotFoundError(f"Unknown tool: {name}")
            del by_name[name]
            self._publish(by_name)

    def apply(
        self,
        source: str | None,
        *,
        add: Iterable[Tool] = (),
        remove: Iterable[str] = (),
        replace: Iterable[Tool] = (),
    ) -> None:
        """Apply one atomic change set for `source`.

        Every add is conflict-checked before anything changes. Replaced tools
        keep their position.
        """
        add = list(add)
        remove = list(remove)
        replace = list(replace)
        with self._lock:
            by_name = dict(self._snapshot.by_name)
            for name in remove:
                entry = by_name.get(name)
                if entry is None or entry.source != source:
                    raise NotFoundError(f"Tool {name} is not registered by {source or 'builtin'}")
                del by_name[name]
            for tool in replace:
                entry = by_name.get(tool.spec.name)
                if entry is None or entry.source != source:
                    raise NotFoundError(f"Tool {tool.spec.name} is not registered by {source or 'builtin'}")
                by_name[tool.spec.name] = _Entry(tool=tool, source=source, seq=entry.seq)
            seen: set[str] = set()
            for tool in add:
                name = tool.spec.name
                if name in by_name or name in seen:
                    owner = by_name[name].source if name in by_name else source
                    raise ConflictError(f"Tool already registered: {name} (owner: {owner or 'builtin'})")
                seen.add(name)
            for tool in add:
                self._seq += 1
                by_name[tool.spec.name] = _Entry(tool=tool, source=source, seq=self._seq)
            if source is not None and source not in self._sources and add:
                self._sources.append(source)
            self._publish(by_name)
        if add or remove or replace:
            logger.debug(
                "registry %s: +%d -%d ~%d", source or "builtin", len(add), len(remove), len(replace)
            )

    def add_source(self, source: str) -> None:
        """Reserve a position for a server's tools ahead of its first registration."""
        with self._lock:
            if source not in self._sources:
                self._sources.append(source)

    def remove_source(self, source: str) -> list[str]:
        """Drop every tool registered by `source` in one step."""
        with self._lock:
            by_name = dict(self._snapshot.by_name)
            removed = [n for n, e in by_name.items() if e.source == source]
            for name in removed:
                del by_name[name]
            self._publish(by_name)
        return removed

    def _publish(self, by_name: dict[str, _Entry]) -> None:
        rank = {s: i for i, s in enumerate(self._sources)}

        def key(e: _Entry) -> tuple[int, int, int]:
            if e.source is None:
                return (0, 0, e.seq)
            return (1, rank.get(e.source, len(rank)), e.seq)

        self._snapshot = _Snapshot(by_name=by_name, ordered=tuple(sorted(by_name.values(), key=key)))

    # -- reads ----------------------------------------------------------

    def resolve(self, name: str) -> Tool:
        entry = self._snapshot.by_name.get(name)
        if entry is None:
            raise NotFoundError(f"Unknown tool: {name}")
        return entry.tool

    def get_optional(self, name: str) -> Optional[Tool]:
        """Return a tool if registered, otherwise None.

        Use this in agent loops to avoid crashing when the model hallucinates
        an unknown tool name.
        """
        entry = self._snapshot.by_name.get(name)
        return entry.tool if entry else None

    def source_of(self, name: str) -> str | None:
        entry = self._snapshot.by_name.get(name)
        if entry is None:
            raise NotFoundError(f"Unknown tool: {name}")
        return entry.source

    def names(self, source: str | None = None) -> list[str]:
        return [e.tool.spec.name for e in self._snapshot.ordered if source is None or e.source == source]

    def list_tools(self) -> list[Tool]:
        return [e.tool for e in self._snapshot.ordered]

    def list_specs(self) -> list[ToolSpec]:
        return [e.tool.spec for e in self._snapshot.ordered]

    def __contains__(self, name: object) -> bool:
        return name in self._snapshot.by_name

    def __len__(self) -> int:
        return len(self._snapshot.by_name)
