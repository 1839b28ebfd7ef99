"""
Tool registry: collision policy, atomic transactions, snapshot reads.
"""

import threading

import pytest

from pyharness.errors import ConflictError, NotFoundError
from pyharness.tools.builtin import register_builtin_tools
from pyharness.tools.registry import ToolRegistry

from helpers import FakeTool

BUILTINS = ["list", "glob", "grep", "read", "write", "edit", "multiedit", "bash", "webfetch"]


@pytest.fixture
def registry():
    reg = ToolRegistry()
    register_builtin_tools(reg)
    return reg


class TestRegistration:
    def test_builtins_in_registration_order(self, registry):
        assert registry.names() == BUILTINS
        assert len(registry) == len(BUILTINS)
        assert "bash" in registry

    def test_resolve_unknown(self, registry):
        with pytest.raises(NotFoundError):
            registry.resolve("nope")
        assert registry.get_optional("nope") is None
        # one lookup API: resolve() raises, get_optional() returns None
        assert not hasattr(registry, "get")

    def test_duplicate_name_is_rejected_not_overwritten(self, registry):
        original = registry.resolve("read")
        with pytest.raises(ConflictError):
            registry.register(FakeTool("read"), source="srv")
        assert registry.resolve("read") is original
        assert registry.source_of("read") is None

    def test_unregister(self, registry):
        registry.unregister("webfetch")
        assert "webfetch" not in registry
        with pytest.raises(NotFoundError):
            registry.unregister("webfetch")

    def test_list_specs(self, registry):
        specs = registry.list_specs()
        assert [s.name for s in specs] == BUILTINS
        assert next(s for s in specs if s.name == "bash").side_effecting


class TestTransactions:
    def test_conflicting_add_changes_nothing(self, registry):
        with pytest.raises(ConflictError):
            registry.apply("srv", add=[FakeTool("mcp.srv.a"), FakeTool("grep")])
        assert "mcp.srv.a" not in registry
        assert registry.names(source="srv") == []

    def test_duplicate_within_one_transaction(self, registry):
        with pytest.raises(ConflictError):
            registry.apply("srv", add=[FakeTool("x"), FakeTool("x")])
        assert "x" not in registry

    def test_remove_foreign_tool_fails(self, registry):
        registry.apply("a", add=[FakeTool("a.t")])
        with pytest.raises(NotFoundError):
            registry.apply("b", remove=["a.t"])
        assert "a.t" in registry

    def test_replace_keeps_position(self, registry):
        registry.apply("srv", add=[FakeTool("s.one"), FakeTool("s.two")])
        new_one = FakeTool("s.one", output="v2")
        registry.apply("srv", replace=[new_one])
        assert registry.names(source="srv") == ["s.one", "s.two"]
        assert registry.resolve("s.one") is new_one

    def test_remove_source(self, registry):
        registry.apply("srv", add=[FakeTool("s.one"), FakeTool("s.two")])
        removed = registry.remove_source("srv")
        assert sorted(removed) == ["s.one", "s.two"]
        assert registry.names() == BUILTINS


class TestOrdering:
    def test_remote_tools_follow_source_order(self, registry):
        registry.add_source("first")
        registry.add_source("second")
        # second connects before first
        registry.apply("second", add=[FakeTool("second.t")])
        registry.apply("first", add=[FakeTool("first.t")])
        assert registry.names()[len(BUILTINS):] == ["first.t", "second.t"]

    def test_builtins_always_first(self, registry):
        registry.apply("srv", add=[FakeTool("srv.t")])
        registry.register(FakeTool("late_builtin"))
        names = registry.names()
        assert names.index("late_builtin") < names.index("srv.t")


class TestSnapshots:
    def test_readers_never_see_half_a_transaction(self, registry):
        stop = threading.Event()
        bad: list[int] = []

        def writer():
            while not stop.is_set():
                registry.apply("srv", add=[FakeTool("srv.a"), FakeTool("srv.b")])
                registry.apply("srv", remove=["srv.a", "srv.b"])

        def reader():
            for _ in range(5000):
                n = len(registry.names(source="srv"))
                if n not in (0, 2):
                    bad.append(n)

        t = threading.Thread(target=writer)
        t.start()
        try:
            reader()
        finally:
            stop.set()
            t.join()
        assert bad == []
