"""Detection of coding-assistant CLIs installed on this machine."""

import asyncio
import logging
import shutil
from pathlib import Path
from typing import Optional

from protocol.models import ToolInfo

logger = logging.getLogger(__name__)

KNOWN_CLIS = [
    ("claude", "Claude Code"),
    ("gemini", "Gemini CLI"),
    ("qoder", "Qoder"),
    ("kiro", "Kiro"),
    ("aider", "Aider"),
]

VERSION_TIMEOUT = 5.0


async def probe_cli(tool_id: str, name: str, timeout: float = VERSION_TIMEOUT) -> Optional[ToolInfo]:
    """Return ToolInfo if `tool_id` is on PATH; version is best effort."""
    path = shutil.which(tool_id)
    if not path:
        return None

    version = ""
    try:
        process = await asyncio.create_subprocess_exec(
            path, "--version",
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.DEVNULL,
        )
    except OSError as e:
        logger.debug(f"Could not run {tool_id} --version: {e}")
        return ToolInfo(id=tool_id, name=name, path=path)

    try:
        stdout, _ = await asyncio.wait_for(process.communicate(), timeout=timeout)
        lines = stdout.decode("utf-8", errors="replace").strip().splitlines()
        version = lines[0] if lines else ""
    except asyncio.TimeoutError:
        logger.debug(f"{tool_id} --version timed out")
        process.kill()
        await process.wait()

    return ToolInfo(id=tool_id, name=name, version=version, path=path)


def probe_cursor(home: Optional[Path] = None) -> Optional[ToolInfo]:
    # Cursor has no CLI to ask; its MCP config marks it as set up
    config_path = (home or Path.home()) / ".cursor" / "mcp.json"
    if not config_path.exists():
        return None
    return ToolInfo(id="mcp", name="Cursor", version="App", path=str(config_path))


async def detect_tools(home: Optional[Path] = None) -> list[ToolInfo]:
    """All assistants found on this machine, in a stable order."""
    found = await asyncio.gather(*(probe_cli(tool_id, name) for tool_id, name in KNOWN_CLIS))
    tools = [t for t in found if t is not None]
    cursor = probe_cursor(home)
    if cursor:
        tools.append(cursor)
    logger.info(f"Detected assistants: {', '.join(t.name for t in tools) or 'none'}")
    return tools
