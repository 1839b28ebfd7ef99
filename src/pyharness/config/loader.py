from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

import yaml
from platformdirs import user_config_dir

from .models import SandboxSettings, Settings
from ..mcp.models import MCPServerConfig
from ..tools.permissions import AutoApprovePolicy, PermissionRule

APP_NAME = "pyharness"

logger = logging.getLogger(__name__)


def _candidate_paths(cwd: Path) -> list[Path]:
    # project-level (higher priority)
    return [
        cwd / ".pyharness.json",
        cwd / "pyharness.json",
        cwd / "pyharness.yaml",
        cwd / "pyharness.yml",
    ]


def _global_candidate_paths() -> list[Path]:
    cfg_dir = Path(user_config_dir(APP_NAME))
    return [
        cfg_dir / "pyharness.json",
        cfg_dir / "pyharness.yaml",
    ]


def _load_file(p: Path) -> dict[str, Any] | None:
    try:
        text = p.read_text(encoding="utf-8")
        if p.suffix in {".yaml", ".yml"}:
            obj = yaml.safe_load(text) or {}
        else:
            obj = json.loads(text)
    except (OSError, json.JSONDecodeError, yaml.YAMLError) as e:
        logger.warning("ignoring unreadable config %s: %s", p, e)
        return None
    if isinstance(obj, dict):
        return obj
    logger.warning("ignoring config %s: top level must be a mapping", p)
    return None


def _merge_dicts(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    out = dict(base)
    for k, v in override.items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _merge_dicts(out[k], v)  # type: ignore
        else:
            out[k] = v
    return out


def _positive(value: Any, default, cast):
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        return default
    return cast(value)


def settings_from_obj(merged: dict[str, Any]) -> Settings:
    """Build Settings from an already-merged mapping; invalid entries are skipped."""
    cfg = Settings()

    if "sandbox" in merged:
        cfg.sandbox = SandboxSettings.from_obj(merged["sandbox"])

    # permissions: either a list of rules, or {"defaults": {...}, "rules": [...]}
    perms = merged.get("permissions", [])
    rules_obj: Any = perms
    if isinstance(perms, dict):
        defaults = perms.get("defaults", {})
        if isinstance(defaults, dict):
            for key, decision in defaults.items():
                if decision in {"allow", "ask", "deny"}:
                    cfg.permissions.set(str(key), decision)
        rules_obj = perms.get("rules", [])
    if isinstance(rules_obj, list):
        rules = [r for r in (PermissionRule.from_obj(it) for it in rules_obj) if r is not None]
        cfg.permissions.apply_rules(rules)

    if "auto_approve" in merged:
        cfg.auto_approve = AutoApprovePolicy.from_obj(merged["auto_approve"])

    # mcp servers
    mcp = merged.get("mcp_servers", {}) or merged.get("mcpServers", {})
    if isinstance(mcp, dict):
        for name, obj in mcp.items():
            if not isinstance(name, str):
                continue
            sc = MCPServerConfig.from_obj(name, obj)
            if sc is None:
                logger.warning("skipping invalid MCP server config %r", name)
                continue
            cfg.mcp_servers[name] = sc

    cfg.max_parallel = _positive(merged.get("max_parallel"), cfg.max_parallel, int)
    cfg.cancel_grace = _positive(merged.get("cancel_grace"), cfg.cancel_grace, float)
    cfg.mcp_timeout = _positive(merged.get("mcp_timeout"), cfg.mcp_timeout, float)
    cfg.max_result_chars = _positive(merged.get("max_result_chars"), cfg.max_result_chars, int)
    return cfg


def load_settings(*, cwd: Path, explicit_path: Path | None = None, include_global: bool = True) -> Settings:
    """Load settings.

    Merge order: global < project < explicit_path. Within the project only
    the first existing candidate file is read.
    """
    merged: dict[str, Any] = {}
    loaded_from: Path | None = None

    if include_global:
        for p in _global_candidate_paths():
            if p.is_file():
                obj = _load_file(p)
                if obj is not None:
                    merged = _merge_dicts(merged, obj)
                    loaded_from = p

    for p in _candidate_paths(cwd):
        if p.is_file():
            obj = _load_file(p)
            if obj is not None:
                merged = _merge_dicts(merged, obj)
                loaded_from = p
            break  # first match wins for project-level

    if explicit_path is not None:
        p = explicit_path.expanduser().resolve()
        if not p.is_file():
            raise FileNotFoundError(f"Config not found: {p}")
        obj = _load_file(p)
        if obj is not None:
            merged = _merge_dicts(merged, obj)
            loaded_from = p

    cfg = settings_from_obj(merged)
    cfg.loaded_from = loaded_from
    return cfg
