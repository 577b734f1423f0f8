"""Durable FIFO of commands composed while no peer is connected."""

import json
import logging
import os
import uuid
from enum import Enum
from pathlib import Path
from typing import Awaitable, Callable, Optional

from pydantic import BaseModel, Field, ValidationError

from config import OFFLINE_QUEUE_PATH
from protocol.models import now_ms

logger = logging.getLogger(__name__)


class CommandStatus(str, Enum):
    PENDING = "pending"
    SENDING = "sending"
    FAILED = "failed"


class QueuedCommand(BaseModel):
    """One command waiting for a connection."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    text: str
    timestamp: int = Field(default_factory=now_ms)
    status: CommandStatus = CommandStatus.PENDING


class OfflineQueue:
    """
    Insertion-ordered command queue persisted as a JSON file.

    An entry leaves the queue only once the send callable reports that the
    transport accepted it. That is a hand-off, not a peer acknowledgement:
    a command can still be lost if the channel drops right after the write.
    """

    def __init__(self, path: Path | str = OFFLINE_QUEUE_PATH) -> None:
        self._path = Path(path)
        self._entries: list[QueuedCommand] = []
        self._draining = False
        self._load()

    def __len__(self) -> int:
        return len(self._entries)

    def _load(self) -> None:
        if not self._path.exists():
            return

        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
            self._entries = [QueuedCommand(**item) for item in data]
            logger.info(f"Loaded {len(self._entries)} queued command(s)")
        except (OSError, json.JSONDecodeError, TypeError, ValidationError) as e:
            logger.error(f"Failed to load offline queue, starting empty: {e}")
            self._entries = []

    def _save(self) -> None:
        data = [entry.model_dump(mode="json") for entry in self._entries]
        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(json.dumps(data, indent=2), encoding="utf-8")
            os.replace(tmp_path, self._path)
        except OSError as e:
            logger.error(f"Failed to save offline queue: {e}")
            raise

    # --- Queue operations ---

    def enqueue(self, text: str) -> QueuedCommand:
        entry = QueuedCommand(text=text)
        self._entries.append(entry)
        self._save()
        logger.info(f"Queued command {entry.id} ({len(self._entries)} waiting)")
        return entry

    def list(self) -> list[QueuedCommand]:
        return [entry.model_copy() for entry in self._entries]

    def get(self, command_id: str) -> Optional[QueuedCommand]:
        return next((e for e in self._entries if e.id == command_id), None)

    def remove(self, command_id: str) -> bool:
        before = len(self._entries)
        self._entries = [e for e in self._entries if e.id != command_id]
        if len(self._entries) == before:
            return False
        self._save()
        return True

    def mark(self, command_id: str, status: CommandStatus) -> bool:
        entry = self.get(command_id)
        if entry is None:
            return False
        entry.status = status
        self._save()
        return True

    def clear(self) -> None:
        self._entries = []
        self._save()

    async def drain(self, send: Callable[[str], Awaitable[bool]]) -> int:
        """
        Send queued commands strictly in insertion order.

        `send` returns True once the transport accepted the text. Draining
        stops at the first entry that is refused or raises, so later entries
        never overtake it. Returns the number of entries delivered.
        """
        if self._draining:
            return 0
        self._draining = True
        delivered = 0
        try:
            while self._entries:
                entry = self._entries[0]
                self.mark(entry.id, CommandStatus.SENDING)
                try:
                    accepted = await send(entry.text)
                except Exception as e:
                    logger.warning(f"Queued command {entry.id} failed to send: {e}")
                    self.mark(entry.id, CommandStatus.FAILED)
                    break
                if not accepted:
                    self.mark(entry.id, CommandStatus.PENDING)
                    break
                self.remove(entry.id)
                delivered += 1
        finally:
            self._draining = False

        if delivered:
            logger.info(f"Flushed {delivered} queued command(s), {len(self._entries)} left")
        return delivered
