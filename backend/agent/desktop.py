"""
Desktop agent: the answerer side of a pairing.

Routes messages arriving from the phone:
- tool_call    -> ToolBridge, answered with a tool_result carrying the same id
- cli_command  -> shell execution, output streamed back as cli_output
- command      -> queued for the local assistant (next_command), acknowledged
                  with command_received

Announces installed assistants with tools_list when the phone connects.
"""

import asyncio
import logging
from collections import deque
from typing import Any, Callable, Optional

from bridge.detect import detect_tools
from bridge.tools import ToolBridge
from peer.errors import TransportError
from peer.session import PeerSession
from protocol.channel import maybe_await
from protocol.errors import ProtocolError
from protocol.models import (
    ErrorCode,
    MessageType,
    PeerMessage,
    ToolInfo,
    parse_payload,
)
from security.rate_limit import OperationClass, RateLimitExceeded
from security.validators import SecurityError

logger = logging.getLogger(__name__)


class DesktopAgent:
    """Wires a PeerSession (answerer) to the ToolBridge."""

    def __init__(self, session: PeerSession, bridge: ToolBridge, detect: bool = True) -> None:
        self.session = session
        self.bridge = bridge
        self.detect = detect
        self.tools: list[ToolInfo] = []
        self._commands: deque[str] = deque()
        self._tasks: set[asyncio.Task] = set()
        # Notified after each command is queued
        self.on_command: Optional[Callable[[str], Any]] = None

        session.on_message = self.handle_message
        session.on_connect = self._on_connect
        session.on_disconnect = self._on_disconnect

    @property
    def pending_commands(self) -> int:
        return len(self._commands)

    async def start(self) -> None:
        if self.detect:
            self.tools = await detect_tools()
        self.bridge.rate_limits.start()
        await self.session.connect()
        logger.info(f"Desktop agent waiting for phone on code {self.session.code}")

    async def stop(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        await self.session.disconnect()
        await self.bridge.rate_limits.stop()

    # --- Local assistant side ---

    def next_command(self) -> Optional[str]:
        """Pop the oldest command from the phone, or None if there is none."""
        return self._commands.popleft() if self._commands else None

    async def send_result(self, data: Any) -> bool:
        """Push an assistant message or result back to the phone."""
        return await self.session.send(PeerMessage(type=MessageType.RESULT, data=data))

    # --- Session events ---

    async def _on_connect(self) -> None:
        logger.info("Phone connected")
        await self.session.send(PeerMessage(
            type=MessageType.TOOLS_LIST,
            data={"tools": [t.model_dump() for t in self.tools]},
        ))

    def _on_disconnect(self) -> None:
        logger.info("Phone disconnected")

    async def handle_message(self, message: PeerMessage) -> None:
        # Budgets are keyed on our own pairing code; sessionId is peer-supplied
        identifier = self.session.code
        logger.debug(f"{message.type.value} from phone session {message.session_id}")
        try:
            self.bridge.rate_limits.consume(OperationClass.MESSAGE, identifier)
        except RateLimitExceeded as e:
            self.bridge.security_logger.log_rate_limit_exceeded(identifier, OperationClass.MESSAGE.value)
            await self._reply_failure(message, str(e), ErrorCode.RATE_LIMITED)
            return

        if message.type == MessageType.TOOL_CALL:
            self._spawn(self._run_tool_call(message, identifier))
        elif message.type == MessageType.CLI_COMMAND:
            self._spawn(self._run_cli_command(message, identifier))
        elif message.type == MessageType.COMMAND:
            await self._queue_command(message)
        else:
            logger.debug(f"Ignoring {message.type.value} message from phone")

    def _spawn(self, coro) -> None:
        # Long-running work must not block the channel's read loop
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _queue_command(self, message: PeerMessage) -> None:
        if not message.text:
            await self._reply_failure(message, "Command text is required", ErrorCode.VALIDATION_ERROR)
            return
        self._commands.append(message.text)
        logger.info(f"Queued command from phone ({len(self._commands)} pending)")
        await self._safe_send(PeerMessage(type=MessageType.COMMAND_RECEIVED, id=message.id))
        if self.on_command is not None:
            try:
                await maybe_await(self.on_command(message.text))
            except Exception as e:
                logger.error(f"Command callback error: {e}", exc_info=True)

    async def _run_tool_call(self, message: PeerMessage, identifier: str) -> None:
        call = parse_payload(message)
        result = await self.bridge.handle_tool_call(call.name, call.args, identifier)
        if not result.ok:
            logger.info(f"Tool call {call.name} refused: {result.error}")
        await self._safe_send(PeerMessage(
            type=MessageType.TOOL_RESULT,
            id=message.id,
            data=result.model_dump(mode="json", exclude_none=True),
        ))

    async def _run_cli_command(self, message: PeerMessage, identifier: str) -> None:
        command = message.command or message.text
        if not command:
            await self._reply_failure(message, "Command is required", ErrorCode.VALIDATION_ERROR)
            return

        async def stream(chunk: str) -> None:
            await self._safe_send(PeerMessage(type=MessageType.CLI_OUTPUT, data=chunk))

        try:
            result = await self.bridge.execute_command(command, identifier, on_output=stream)
        except RateLimitExceeded as e:
            await self._reply_failure(message, str(e), ErrorCode.RATE_LIMITED)
            return
        except SecurityError as e:
            await self._reply_failure(message, str(e), ErrorCode.VALIDATION_ERROR)
            return
        except OSError as e:
            logger.error(f"Could not start command: {e}")
            await self._reply_failure(message, "Command could not be started", ErrorCode.INTERNAL_ERROR)
            return

        await self._safe_send(PeerMessage(
            type=MessageType.RESULT,
            id=message.id,
            data={"exit_code": result.exit_code, "success": result.success, "timed_out": result.timed_out},
        ))

    async def _reply_failure(self, message: PeerMessage, reason: str, code: ErrorCode) -> None:
        if message.type == MessageType.TOOL_CALL and message.id:
            reply = PeerMessage(
                type=MessageType.TOOL_RESULT,
                id=message.id,
                data={"ok": False, "error": reason, "code": code.value},
            )
        else:
            reply = PeerMessage(type=MessageType.ERROR, id=message.id, data={"message": reason, "code": code.value})
        await self._safe_send(reply)

    async def _safe_send(self, message: PeerMessage) -> None:
        try:
            await self.session.send(message)
        except (ProtocolError, TransportError) as e:
            logger.warning(f"Could not send {message.type.value} to phone: {e}")
