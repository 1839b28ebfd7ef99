"""
Shared fixtures.

Tests never touch the real user config or data directories.
"""

from pathlib import Path

import pytest

from pyharness.config import loader
from pyharness.events import store


@pytest.fixture
def workspace(tmp_path) -> Path:
    """A project directory with a couple of files in it."""
    ws = tmp_path / "ws"
    ws.mkdir()
    (ws / "a.txt").write_text("hello\nworld\n", encoding="utf-8")
    (ws / "src").mkdir()
    (ws / "src" / "main.py").write_text("def main():\n    return 1\n", encoding="utf-8")
    return ws.resolve()


@pytest.fixture(autouse=True)
def isolate_user_dirs(tmp_path, monkeypatch):
    """Point global config lookup and the event store at tmp dirs."""
    monkeypatch.setattr(loader, "user_config_dir", lambda app: str(tmp_path / "user_config"))
    monkeypatch.setattr(store, "user_data_dir", lambda app: str(tmp_path / "user_data"))
