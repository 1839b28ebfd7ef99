"""
Settings loading: file discovery, merge order and validation.
"""

import json

import pytest

from pyharness.config.loader import load_settings, settings_from_obj
from pyharness.config.models import SandboxMode
from pyharness.mcp.models import MCPServerConfig, expand_env_placeholders


class TestDiscovery:
    def test_defaults_without_files(self, workspace):
        s = load_settings(cwd=workspace)
        assert s.loaded_from is None
        assert s.sandbox.mode is SandboxMode.NONE
        assert s.max_parallel == 4
        assert s.mcp_servers == {}

    def test_project_yaml(self, workspace):
        (workspace / "pyharness.yaml").write_text(
            "sandbox: restricted\n"
            "max_parallel: 2\n"
            "permissions:\n"
            "  defaults: {bash: deny}\n"
            "  rules:\n"
            "    - {match: 'tool:mcp.git.*', decision: allow}\n"
            "auto_approve: {classes: [edit]}\n"
            "mcp_servers:\n"
            "  git:\n"
            "    command: [python, server.py]\n"
            "    timeout: 5\n",
            encoding="utf-8",
        )
        s = load_settings(cwd=workspace)
        assert s.loaded_from == workspace / "pyharness.yaml"
        assert s.sandbox.mode is SandboxMode.RESTRICTED
        assert s.max_parallel == 2
        assert s.permissions.decide("bash", "bash") == "deny"
        assert s.permissions.decide("mcp", "mcp.git.log") == "allow"
        assert s.auto_approve.covers("edit", "write")
        assert s.mcp_servers["git"].command == ["python", "server.py"]
        assert s.mcp_servers["git"].timeout == 5.0

    def test_first_project_file_wins(self, workspace):
        (workspace / ".pyharness.json").write_text(json.dumps({"max_parallel": 7}))
        (workspace / "pyharness.yaml").write_text("max_parallel: 9\n")
        assert load_settings(cwd=workspace).max_parallel == 7

    def test_merge_order(self, workspace, tmp_path):
        global_dir = tmp_path / "user_config"
        global_dir.mkdir()
        (global_dir / "pyharness.json").write_text(json.dumps({"max_parallel": 3, "cancel_grace": 9, "sandbox": {"image": "alpine"}}))
        (workspace / "pyharness.json").write_text(json.dumps({"max_parallel": 5, "sandbox": {"mode": "containerized"}}))
        explicit = tmp_path / "explicit.json"
        explicit.write_text(json.dumps({"max_parallel": 6}))

        s = load_settings(cwd=workspace, explicit_path=explicit)

        assert s.max_parallel == 6
        assert s.cancel_grace == 9.0
        # nested mappings merge key by key
        assert s.sandbox.mode is SandboxMode.CONTAINERIZED
        assert s.sandbox.image == "alpine"
        assert s.loaded_from == explicit.resolve()

    def test_missing_explicit_file(self, workspace, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_settings(cwd=workspace, explicit_path=tmp_path / "nope.json")

    def test_broken_project_file_is_ignored(self, workspace):
        (workspace / "pyharness.json").write_text("{not json")
        s = load_settings(cwd=workspace)
        assert s.loaded_from is None


class TestValidation:
    def test_invalid_values_fall_back(self):
        s = settings_from_obj({"max_parallel": 0, "cancel_grace": "soon", "mcp_timeout": True, "max_result_chars": -1})
        assert (s.max_parallel, s.cancel_grace, s.mcp_timeout, s.max_result_chars) == (4, 5.0, 30.0, 30000)

    def test_permission_rules_as_list(self):
        s = settings_from_obj({"permissions": [{"match": "edit", "decision": "allow"}, {"bogus": 1}]})
        assert len(s.permissions.rules) == 1
        assert s.permissions.decide("edit", "write") == "allow"

    def test_camel_case_servers_and_string_command(self):
        s = settings_from_obj({"mcpServers": {"fs": {"command": "node", "args": ["fs.js", "--root", "."]}}})
        assert s.mcp_servers["fs"].command == ["node", "fs.js", "--root", "."]

    def test_invalid_server_skipped(self):
        s = settings_from_obj({"mcp_servers": {"bad": {"command": []}, "ok": {"command": ["x"]}}})
        assert list(s.mcp_servers) == ["ok"]


class TestServerConfig:
    def test_env_placeholders(self, monkeypatch):
        monkeypatch.setenv("TOKEN_FOR_TEST", "s3cret")
        cfg = MCPServerConfig.from_obj("gh", {"command": ["gh-mcp"], "env": {"TOKEN": "${TOKEN_FOR_TEST}"}})
        assert cfg.env == {"TOKEN": "s3cret"}

    def test_unset_placeholder_rejects_server(self, monkeypatch):
        monkeypatch.delenv("TOKEN_FOR_TEST", raising=False)
        assert MCPServerConfig.from_obj("gh", {"command": ["gh-mcp"], "env": {"TOKEN": "${TOKEN_FOR_TEST}"}}) is None
        with pytest.raises(ValueError):
            expand_env_placeholders("${TOKEN_FOR_TEST}")

    def test_prefix(self):
        assert MCPServerConfig(name="fs", command=["x"]).tool_prefix == "mcp.fs"
        assert MCPServerConfig(name="fs", command=["x"], prefix="files").tool_prefix == "files"
