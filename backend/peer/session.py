"""
Peer session: the offer/answer handshake state machine.

    idle -> handshaking -> connected -> closed
    handshaking -> closed   (failure, timeout or disconnect)

The initiator (mobile) publishes an offer and polls for the answer; the
answerer (desktop) polls for the offer, then publishes its answer. Descriptor
exchange alone never marks the session connected: only the transport's
connect event does.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

import httpx

from config import CANCEL_GRACE, HANDSHAKE_TIMEOUT, POLL_INTERVAL, TOOL_CALL_TIMEOUT
from peer.errors import HandshakeTimeoutError
from peer.models import Role, SessionState
from peer.signaling_client import SignalingClient
from peer.transport import TcpPeerTransport
from protocol.channel import MessageChannel, maybe_await
from protocol.models import PeerMessage
from signaling.models import normalize_pairing_code

logger = logging.getLogger(__name__)


class PeerSession:
    """One side of a paired connection, identified by its pairing code."""

    def __init__(
        self,
        code: str,
        role: Role,
        signaling: SignalingClient,
        transport: Optional[TcpPeerTransport] = None,
        poll_interval: float = POLL_INTERVAL,
        handshake_timeout: Optional[float] = HANDSHAKE_TIMEOUT,
        tool_call_timeout: float = TOOL_CALL_TIMEOUT,
        cancel_grace: float = CANCEL_GRACE,
    ) -> None:
        self.code = normalize_pairing_code(code)
        self.role = role
        self.signaling = signaling
        self.transport = transport or TcpPeerTransport()
        self.poll_interval = poll_interval
        self.handshake_timeout = handshake_timeout or None
        self.cancel_grace = cancel_grace
        self.state = SessionState.IDLE
        self.last_error: Optional[Exception] = None

        self.channel = MessageChannel(self.transport.send, tool_call_timeout=tool_call_timeout)
        self.channel.on_message = self._dispatch_message

        # Single subscriber per event
        self.on_message: Optional[Callable[[PeerMessage], Any]] = None
        self.on_connect: Optional[Callable[[], Any]] = None
        self.on_disconnect: Optional[Callable[[], Any]] = None

        self._handshake_task: Optional[asyncio.Task] = None
        self._connected = asyncio.Event()
        self._stopping = asyncio.Event()
        self._closed = asyncio.Event()

        self.transport.on_connect = self._on_transport_connect
        self.transport.on_data = self.channel.handle_raw
        self.transport.on_close = self._on_transport_close
        self.transport.on_error = self._on_transport_error

    @property
    def session_id(self) -> str:
        return self.channel.session_id

    @property
    def is_connected(self) -> bool:
        return self.state == SessionState.CONNECTED

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """Start the handshake in the background. Returns immediately."""
        if self.state != SessionState.IDLE:
            raise RuntimeError(f"Cannot connect a session in state {self.state.value}")
        self.state = SessionState.HANDSHAKING
        logger.info(f"Starting handshake as {self.role.value} for code {self.code}")
        self._handshake_task = asyncio.create_task(self._run_handshake())

    async def wait_connected(self, timeout: Optional[float] = None) -> bool:
        """Wait until connected or closed. Returns True if connected."""
        if self.state == SessionState.CLOSED:
            return False
        waiters = [asyncio.ensure_future(self._connected.wait())]
        if self._handshake_task is not None:
            waiters.append(self._handshake_task)
        try:
            await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiters[0].cancel()
        return self.is_connected

    async def wait_closed(self) -> None:
        await self._closed.wait()

    async def disconnect(self) -> None:
        """Stop polling, reject pending tool calls and close the transport. Idempotent."""
        if self.state == SessionState.CLOSED:
            return
        previous = self.state
        self.state = SessionState.CLOSED
        self._stopping.set()

        task = self._handshake_task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            # A cancellation swallowed inside the transport must not hang us
            done, _ = await asyncio.wait({task}, timeout=self.cancel_grace)
            if not done:
                logger.warning(f"Handshake task for {self.code} did not stop within {self.cancel_grace}s")

        rejected = self.channel.cancel_pending()
        if rejected:
            logger.info(f"Rejected {rejected} pending tool call(s) on disconnect")
        await self.transport.close()

        self._closed.set()
        logger.info(f"Session {self.code} closed (was {previous.value})")
        if previous != SessionState.IDLE:
            await self._notify(self.on_disconnect)

    # ------------------------------------------------------------------
    # Messaging
    # ------------------------------------------------------------------

    async def send(self, message: PeerMessage | dict) -> bool:
        """
        Send a message through the protocol layer.

        Returns False (and does nothing) when not connected. Protocol and
        transport failures propagate.
        """
        if not self.is_connected:
            logger.warning(f"Dropping send while {self.state.value}; session {self.code} is not connected")
            return False
        await self.channel.send(message)
        return True

    async def call_tool(self, name: str, args: Optional[dict] = None, timeout: Optional[float] = None) -> Any:
        return await self.channel.call_tool(name, args, timeout)

    # ------------------------------------------------------------------
    # Handshake
    # ------------------------------------------------------------------

    async def _run_handshake(self) -> None:
        try:
            if self.handshake_timeout:
                await asyncio.wait_for(self._negotiate(), timeout=self.handshake_timeout)
            else:
                await self._negotiate()
        except asyncio.TimeoutError:
            logger.warning(f"Handshake for {self.code} timed out after {self.handshake_timeout}s")
            await self._fail(HandshakeTimeoutError(f"No peer within {self.handshake_timeout}s"))
        except Exception as e:
            logger.error(f"Handshake for {self.code} failed: {e}")
            await self._fail(e)

    async def _negotiate(self) -> None:
        if self.role == Role.INITIATOR:
            offer = self.transport.create_offer()
            await self.signaling.store_offer(self.code, offer)
            logger.info(f"Offer published for {self.code}, waiting for answer")
            answer = await self._poll(self.signaling.read_answer, self.transport.accepts_answer)
            await self.transport.apply_answer(answer)
        else:
            offer = await self._poll(self.signaling.read_offer)
            answer = await self.transport.apply_offer(offer)
            await self.signaling.store_answer(self.code, answer)
            logger.info(f"Answer published for {self.code}, waiting for peer")
        await self._wait_connected_or_stopped()

    async def _wait_connected_or_stopped(self) -> None:
        waiters = {
            asyncio.ensure_future(self._connected.wait()),
            asyncio.ensure_future(self._stopping.wait()),
        }
        try:
            await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                waiter.cancel()

    async def _poll(
        self,
        read: Callable[[str], Awaitable[Any]],
        accept: Optional[Callable[[Any], bool]] = None,
    ) -> Any:
        """Poll the signaling service every poll_interval until a usable signal arrives."""
        while True:
            try:
                signal = await read(self.code)
            except httpx.HTTPError as e:
                logger.debug(f"Signaling poll failed, retrying: {e}")
                signal = None
            if signal is not None and (accept is None or accept(signal)):
                return signal
            await asyncio.sleep(self.poll_interval)

    async def _fail(self, error: Exception) -> None:
        self.last_error = error
        await self.disconnect()

    # ------------------------------------------------------------------
    # Transport events
    # ------------------------------------------------------------------

    async def _on_transport_connect(self) -> None:
        if self.state != SessionState.HANDSHAKING:
            return
        self.state = SessionState.CONNECTED
        self._connected.set()
        logger.info(f"Session {self.code} connected")
        await self._notify(self.on_connect)

    async def _on_transport_close(self) -> None:
        if self.state == SessionState.CLOSED:
            return
        logger.info(f"Peer went away, closing session {self.code}")
        await self.disconnect()

    def _on_transport_error(self, error: Exception) -> None:
        self.last_error = error
        logger.warning(f"Transport error on session {self.code}: {error!r}")

    async def _dispatch_message(self, message: PeerMessage) -> None:
        await self._notify(self.on_message, message)

    @staticmethod
    async def _notify(callback, *args) -> None:
        if callback is None:
            return
        try:
            await maybe_await(callback(*args))
        except Exception as e:
            logger.error(f"Session callback error: {e}", exc_info=True)
