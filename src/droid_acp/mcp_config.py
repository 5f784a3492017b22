"""
MCP server registry file shared with the droid.

ACP clients hand MCP servers to ``new_session``; the droid reads them from
``<cwd>/.factory/mcp.json``. Several sessions may share one working directory,
so every entry is keyed ``<serverName>-<sessionId>`` and a session only ever
adds or removes its own keys.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

CONFIG_DIR = ".factory"
CONFIG_FILE = "mcp.json"


def config_path(cwd: str | Path) -> Path:
    """Return the MCP config path for a working directory."""
    return Path(cwd) / CONFIG_DIR / CONFIG_FILE


def _get(server: Any, key: str, default: Any = None) -> Any:
    if isinstance(server, dict):
        return server.get(key, default)
    return getattr(server, key, default)


def _pairs(items: Any) -> dict[str, str]:
    """Convert ACP ``[{name, value}]`` lists (or plain dicts) into a mapping."""
    if not items:
        return {}
    if isinstance(items, dict):
        return {str(k): str(v) for k, v in items.items()}
    return {str(_get(item, "name")): str(_get(item, "value", "")) for item in items}


def convert_mcp_server(server: Any) -> dict[str, Any]:
    """Convert one ACP MCP server descriptor into the droid's config shape."""
    url = _get(server, "url")
    server_type = _get(server, "type")

    if url and server_type in (None, "http", "sse"):
        return {
            "type": "http",
            "url": url,
            "headers": _pairs(_get(server, "headers")),
        }

    return {
        "type": "stdio",
        "command": _get(server, "command", ""),
        "args": list(_get(server, "args") or []),
        "env": _pairs(_get(server, "env")),
    }


def _read(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        logger.warning(f"Ignoring unreadable MCP config {path}: {e}")
        return {}
    return data if isinstance(data, dict) else {}


def _write(path: Path, data: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data, indent=2) + "\n", encoding="utf-8")


def add_session_servers(cwd: str | Path, session_id: str, servers: list[Any]) -> Path | None:
    """
    Merge a session's MCP servers into the config file.

    Returns the config path, or None if there was nothing to write.
    """
    if not servers:
        return None

    path = config_path(cwd)
    data = _read(path)
    registry = data.get("mcpServers")
    if not isinstance(registry, dict):
        registry = {}

    for server in servers:
        name = _get(server, "name") or "mcp"
        registry[f"{name}-{session_id}"] = convert_mcp_server(server)

    data["mcpServers"] = registry
    _write(path, data)
    logger.info(f"Wrote {len(servers)} MCP server(s) for session {session_id} to {path}")
    return path


def remove_session_servers(path: str | Path, session_id: str) -> None:
    """
    Remove a session's entries from the config file.

    The file is deleted once it holds nothing else, and its directory too if
    that leaves it empty.
    """
    path = Path(path)
    if not path.exists():
        return

    data = _read(path)
    registry = data.get("mcpServers")
    if isinstance(registry, dict):
        suffix = f"-{session_id}"
        data["mcpServers"] = {k: v for k, v in registry.items() if not k.endswith(suffix)}

    if data.get("mcpServers") or set(data) - {"mcpServers"}:
        _write(path, data)
        return

    path.unlink(missing_ok=True)
    logger.info(f"Removed MCP config {path}")
    try:
        path.parent.rmdir()
    except OSError:
        pass  # not empty


__all__ = [
    "add_session_servers",
    "config_path",
    "convert_mcp_server",
    "remove_session_servers",
]
