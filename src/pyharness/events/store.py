from __future__ import annotations

import json
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable

from platformdirs import user_data_dir

APP_NAME = "pyharness"


def events_dir() -> Path:
    root = Path(user_data_dir(APP_NAME))
    d = root / "events"
    d.mkdir(parents=True, exist_ok=True)
    return d


@dataclass
class Event:
    ts: float
    type: str
    data: dict[str, Any]


@dataclass
class EventStore:
    """Simple jsonl event store per session.

    This is intentionally append-only and tolerant of partial corruption.
    """

    session_id: str
    path: Path

    def __post_init__(self) -> None:
        self._lock = threading.Lock()

    @staticmethod
    def open(session_id: str, directory: Path | None = None) -> "EventStore":
        d = directory or events_dir()
        d.mkdir(parents=True, exist_ok=True)
        return EventStore(session_id=session_id, path=d / f"{session_id}.jsonl")

    def append(self, event_type: str, data: dict[str, Any]) -> None:
        ev = Event(ts=time.time(), type=event_type, data=data)
        line = json.dumps(ev.__dict__, ensure_ascii=False, default=str) + "\n"
        with self._lock, self.path.open("a", encoding="utf-8") as f:
            f.write(line)

    def iter_events(self) -> Iterable[Event]:
        if not self.path.exists():
            return []
        out: list[Event] = []
        for line in self.path.read_text(encoding="utf-8", errors="replace").splitlines():
            if not line.strip():
                continue
            try:
                obj = json.loads(line)
                out.append(Event(ts=float(obj.get("ts", 0.0)), type=str(obj.get("type")), data=obj.get("data") or {}))
            except (json.JSONDecodeError, AttributeError, TypeError, ValueError):
                continue
        return out

    def types(self) -> list[str]:
        return [e.type for e in self.iter_events()]

    def of_type(self, *event_types: str) -> list[Event]:
        wanted = set(event_types)
        return [e for e in self.iter_events() if e.type in wanted]

    def tail(self, n: int) -> list[Event]:
        """Last `n` events; everything when `n` is not positive."""
        evs = list(self.iter_events())
        return evs[-n:] if n > 0 else evs
