"""
Registers the relay as an MCP server in editor config files.

`init` adds an `mcpServers` entry to each known editor config (Cursor,
Windsurf) so the editor launches `main.py mcp` with the pairing code;
`reset` removes that entry again. Other servers in the file are left alone.
"""

import json
import logging
import os
import sys
from pathlib import Path
from typing import Optional

from config import MCP_CONFIG_FILES, MCP_SERVER_NAME

logger = logging.getLogger(__name__)


def server_entry(code: str, signaling_url: str) -> dict:
    """The mcpServers entry that starts this relay in MCP mode."""
    return {
        "command": sys.executable,
        "args": ["-m", "main", "mcp", "--code", code, "--signaling", signaling_url],
        "env": {
            "MCP_CONNECTION_CODE": code,
            "MCP_SIGNALING_URL": signaling_url,
        },
    }


def _config_paths(home: Optional[Path]) -> dict[str, Path]:
    home = Path(home) if home is not None else Path.home()
    return {editor: home / relative for editor, relative in MCP_CONFIG_FILES.items()}


def _load(path: Path) -> dict:
    if not path.exists():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        logger.warning(f"Could not read {path}, starting a new config: {e}")
        return {}
    if not isinstance(data, dict):
        logger.warning(f"{path} is not a JSON object, starting a new config")
        return {}
    return data


def _save(path: Path, data: dict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    tmp_path.write_text(json.dumps(data, indent=2), encoding="utf-8")
    os.replace(tmp_path, path)


def install(code: str, signaling_url: str, home: Optional[Path] = None) -> list[Path]:
    """Add or replace our entry in every editor config. Returns the files written."""
    written = []
    for editor, path in _config_paths(home).items():
        config = _load(path)
        servers = config.get("mcpServers")
        if not isinstance(servers, dict):
            servers = {}
        servers[MCP_SERVER_NAME] = server_entry(code, signaling_url)
        config["mcpServers"] = servers
        try:
            _save(path, config)
        except OSError as e:
            logger.error(f"Could not write {editor} config {path}: {e}")
            continue
        logger.info(f"{editor} configuration updated ({path})")
        written.append(path)
    return written


def uninstall(home: Optional[Path] = None) -> list[Path]:
    """Remove our entry from every editor config that has it. Returns the files changed."""
    changed = []
    for editor, path in _config_paths(home).items():
        if not path.exists():
            continue
        config = _load(path)
        servers = config.get("mcpServers")
        if not isinstance(servers, dict) or MCP_SERVER_NAME not in servers:
            continue
        del servers[MCP_SERVER_NAME]
        try:
            _save(path, config)
        except OSError as e:
            logger.error(f"Could not update {editor} config {path}: {e}")
            continue
        logger.info(f"Removed {MCP_SERVER_NAME} from {path.name}")
        changed.append(path)
    return changed
