"""
Message protocol layer.

The only code allowed to move messages across the trust boundary between
the two peers. Outbound messages are validated, sanitized and checksummed
before they reach the transport; inbound messages are parsed, sanitized
again and checksum-verified before any application callback sees them.

Also owns tool-call correlation: every `tool_call` gets a fresh id and a
future that is resolved by the matching `tool_result`.
"""

import asyncio
import inspect
import json
import logging
import uuid
from typing import Any, Awaitable, Callable, Optional

from pydantic import ValidationError

from config import TOOL_CALL_TIMEOUT
from protocol.errors import (
    ChecksumMismatchError,
    ProtocolError,
    ToolCallError,
    ToolCallTimeoutError,
    ToolRateLimitedError,
)
from protocol.integrity import compute_checksum, sanitize_text
from protocol.models import (
    ErrorCode,
    MessageType,
    PeerMessage,
    ToolResultData,
    now_ms,
    parse_payload,
)

logger = logging.getLogger(__name__)

_VALID_TYPES = {t.value for t in MessageType}


async def maybe_await(result) -> None:
    if inspect.isawaitable(result):
        await result


class MessageChannel:
    """Validates, sanitizes and checksums every message crossing the peer channel."""

    def __init__(
        self,
        raw_send: Callable[[str], Awaitable[None]],
        session_id: Optional[str] = None,
        tool_call_timeout: float = TOOL_CALL_TIMEOUT,
    ) -> None:
        self._raw_send = raw_send
        self.session_id = session_id or uuid.uuid4().hex
        self.tool_call_timeout = tool_call_timeout
        self.on_message: Optional[Callable[[PeerMessage], Any]] = None
        self._pending: dict[str, asyncio.Future] = {}

    @property
    def pending_calls(self) -> int:
        return len(self._pending)

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    def prepare(self, message: PeerMessage | dict) -> PeerMessage:
        """
        Turn a candidate message into a wire-ready one.

        Raises:
            ProtocolError: unknown type or payload not matching its type
        """
        if isinstance(message, dict):
            try:
                message = PeerMessage.model_validate(message)
            except ValidationError as e:
                raise ProtocolError(f"Invalid outbound message: {e.error_count()} error(s)") from e

        updates: dict = {}
        if message.text is not None:
            updates["text"] = sanitize_text(message.text)
        if message.command is not None:
            updates["command"] = sanitize_text(message.command)
        if message.timestamp is None:
            updates["timestamp"] = now_ms()
        if message.session_id is None:
            updates["session_id"] = self.session_id
        prepared = message.model_copy(update=updates)

        try:
            parse_payload(prepared)
        except ValidationError as e:
            raise ProtocolError(f"Invalid {prepared.type.value} payload") from e

        prepared.checksum = compute_checksum(
            prepared.type, prepared.text, prepared.command, prepared.timestamp
        )
        return prepared

    async def send(self, message: PeerMessage | dict) -> PeerMessage:
        """Prepare and hand a message to the transport. Returns what was sent."""
        prepared = self.prepare(message)
        await self._raw_send(prepared.to_wire())
        return prepared

    async def call_tool(
        self, name: str, args: Optional[dict] = None, timeout: Optional[float] = None
    ) -> Any:
        """
        Invoke a tool on the remote peer and wait for its result.

        Raises:
            ToolCallTimeoutError: no matching tool_result in time
            ToolRateLimitedError: remote budget exhausted
            ToolCallError: remote validation or execution failure
        """
        timeout = self.tool_call_timeout if timeout is None else timeout
        call_id = uuid.uuid4().hex
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[call_id] = future

        try:
            await self.send(PeerMessage(
                type=MessageType.TOOL_CALL,
                id=call_id,
                tool=name,
                data={"name": name, "args": args or {}},
            ))
            return await asyncio.wait_for(future, timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Tool call {name} ({call_id}) timed out after {timeout}s")
            raise ToolCallTimeoutError(f"Tool call {name} timed out") from None
        finally:
            self._pending.pop(call_id, None)

    def cancel_pending(self, reason: str = "Session closed") -> int:
        """Reject every outstanding tool call. Returns how many were rejected."""
        pending = list(self._pending.values())
        self._pending.clear()
        for future in pending:
            if not future.done():
                future.set_exception(ToolCallError(reason))
        return len(pending)

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    async def handle_raw(self, raw: str | bytes) -> Optional[PeerMessage]:
        """
        Process one inbound frame.

        Returns the message that was dispatched to on_message, or None when
        the frame was dropped, rejected or consumed by a pending tool call.
        """
        try:
            payload = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError):
            logger.warning("Dropping malformed message from peer")
            await self._reply_error("Malformed message")
            return None

        if not isinstance(payload, dict):
            await self._reply_error("Message must be an object")
            return None

        msg_type = payload.get("type")
        if msg_type not in _VALID_TYPES:
            logger.warning(f"Rejecting message with unknown type: {str(msg_type)[:40]}")
            await self._reply_error("Unknown message type")
            return None

        if "checksum" in payload:
            try:
                self._verify_checksum(payload)
            except ChecksumMismatchError:
                # Integrity failure: no reply, the sender is not trusted
                logger.warning(f"Dropping {msg_type} message with bad checksum")
                return None

        try:
            message = PeerMessage.model_validate(payload)
        except ValidationError:
            await self._reply_invalid(payload, "Invalid message fields")
            return None

        updates = {}
        if message.text is not None:
            updates["text"] = sanitize_text(message.text)
        if message.command is not None:
            updates["command"] = sanitize_text(message.command)
        if updates:
            message = message.model_copy(update=updates)

        try:
            data = parse_payload(message)
        except ValidationError:
            await self._reply_invalid(payload, f"Invalid {message.type.value} payload")
            return None

        if message.type == MessageType.TOOL_RESULT and message.id in self._pending:
            self._resolve(message.id, data)
            return None

        if self.on_message is not None:
            try:
                await maybe_await(self.on_message(message))
            except Exception as e:
                logger.error(f"Message callback error: {e}", exc_info=True)
        return message

    @staticmethod
    def _verify_checksum(payload: dict) -> None:
        expected = compute_checksum(
            payload.get("type"),
            payload.get("text"),
            payload.get("command"),
            payload.get("timestamp"),
        )
        if payload.get("checksum") != expected:
            raise ChecksumMismatchError("Checksum mismatch")

    def _resolve(self, call_id: str, data: ToolResultData) -> None:
        future = self._pending.pop(call_id)
        if future.done():
            return
        if data.ok:
            future.set_result(data.result)
            return

        code = data.code.value if data.code else None
        reason = data.error or "Tool call failed"
        if data.code == ErrorCode.RATE_LIMITED:
            future.set_exception(ToolRateLimitedError(reason, code))
        else:
            future.set_exception(ToolCallError(reason, code))

    async def _reply_invalid(self, payload: dict, reason: str) -> None:
        # Failed tool calls get a tool_result so the caller's waiter rejects
        # immediately instead of timing out.
        if payload.get("type") == MessageType.TOOL_CALL.value and isinstance(payload.get("id"), str):
            await self._safe_send(PeerMessage(
                type=MessageType.TOOL_RESULT,
                id=payload["id"],
                data={"ok": False, "error": reason, "code": ErrorCode.VALIDATION_ERROR.value},
            ))
            return
        if payload.get("type") == MessageType.ERROR.value:
            # Never answer an error with an error
            return
        await self._reply_error(reason)

    async def _reply_error(self, reason: str) -> None:
        await self._safe_send(PeerMessage(
            type=MessageType.ERROR,
            data={"message": reason, "code": ErrorCode.VALIDATION_ERROR.value},
        ))

    async def _safe_send(self, message: PeerMessage) -> None:
        try:
            await self.send(message)
        except Exception as e:
            logger.debug(f"Could not deliver protocol reply: {e}")
