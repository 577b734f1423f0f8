"""
Mobile client: the initiator side of a pairing.

Commands go straight to the desktop while connected and into the offline
queue otherwise. The queue is flushed, oldest first, every time the session
connects.
"""

import logging
import uuid
from typing import Any, Callable, Optional

from offline.command_queue import OfflineQueue, QueuedCommand
from peer.errors import TransportError
from peer.session import PeerSession
from protocol.channel import maybe_await
from protocol.models import DirectoryEntry, MessageType, PeerMessage, ToolInfo

logger = logging.getLogger(__name__)


class MobileClient:
    """Wires a PeerSession (initiator) to the OfflineQueue."""

    def __init__(self, session: PeerSession, queue: OfflineQueue) -> None:
        self.session = session
        self.queue = queue
        self.tools: list[ToolInfo] = []
        self.on_message: Optional[Callable[[PeerMessage], Any]] = None

        session.on_connect = self._on_connect
        session.on_message = self._on_message

    async def start(self) -> None:
        await self.session.connect()

    async def stop(self) -> None:
        await self.session.disconnect()

    async def send_command(self, text: str) -> Optional[QueuedCommand]:
        """
        Send a command, or queue it if that is not possible right now.

        Returns the queued entry, or None if the command was handed to the
        transport directly.
        """
        if self.session.is_connected and len(self.queue) == 0:
            try:
                if await self._send_text(text):
                    return None
            except TransportError as e:
                logger.warning(f"Direct send failed, queueing: {e}")

        entry = self.queue.enqueue(text)
        if self.session.is_connected:
            await self.flush()
        return entry

    async def send_cli_command(self, command: str) -> bool:
        return await self.session.send(PeerMessage(type=MessageType.CLI_COMMAND, command=command))

    async def flush(self) -> int:
        return await self.queue.drain(self._send_text)

    async def list_directory(self, path: str = ".") -> list[DirectoryEntry]:
        entries = await self.session.call_tool("list_directory", {"path": path})
        return [DirectoryEntry.model_validate(e) for e in entries]

    async def read_file(self, path: str) -> str:
        return await self.session.call_tool("read_file", {"path": path})

    async def _send_text(self, text: str) -> bool:
        return await self.session.send(PeerMessage(
            type=MessageType.COMMAND,
            text=text,
            id=uuid.uuid4().hex,
        ))

    async def _on_connect(self) -> None:
        pending = len(self.queue)
        if pending:
            logger.info(f"Connected, flushing {pending} queued command(s)")
        await self.flush()

    async def _on_message(self, message: PeerMessage) -> None:
        if message.type == MessageType.TOOLS_LIST and isinstance(message.data, dict):
            self.tools = [ToolInfo.model_validate(t) for t in message.data.get("tools", [])]
            logger.info(f"Desktop offers: {', '.join(t.name for t in self.tools) or 'no assistants'}")
        if self.on_message is not None:
            await maybe_await(self.on_message(message))
