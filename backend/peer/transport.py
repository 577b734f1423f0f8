"""
Direct TCP channel between the two peers.

The answerer listens on a random port and advertises its addresses in the
answer descriptor; the initiator connects to one of them. Every frame body
is AES-256-GCM encrypted under a key derived from the X25519 public keys in
the offer and answer. A HELLO round trip proves both ends hold that key, and
only then is the channel reported as connected.
"""

import asyncio
import base64
import binascii
import logging
import os
import random
import socket
import struct
from typing import Any, Callable, Optional

from cryptography.exceptions import InvalidTag
from pydantic import ValidationError

from config import (
    CONNECT_TIMEOUT,
    MAX_FRAME_SIZE,
    PEER_ADVERTISE_HOSTS,
    PEER_LISTEN_HOST,
    PEER_PORT_MAX,
    PEER_PORT_MIN,
)
from peer.errors import TransportError
from peer.models import AnswerDescriptor, Candidate, OfferDescriptor
from protocol.channel import maybe_await
from security.crypto import decrypt_frame, derive_session_key, encrypt_frame, generate_keypair

logger = logging.getLogger(__name__)

# --- Wire framing ---

HEADER_FORMAT = "!BI"  # 1-byte type + 4-byte length (big-endian)
HEADER_SIZE = struct.calcsize(HEADER_FORMAT)
SESSION_NONCE_SIZE = 16

_HANDSHAKE_ERRORS = (OSError, asyncio.TimeoutError, asyncio.IncompleteReadError, InvalidTag, TransportError)


class FrameType:
    HELLO = 0x01
    DATA = 0x02
    CLOSE = 0x03


async def send_frame(writer: asyncio.StreamWriter, frame_type: int, payload: bytes = b"") -> None:
    """Send a type-length-payload frame."""
    header = struct.pack(HEADER_FORMAT, frame_type, len(payload))
    writer.write(header + payload)
    await writer.drain()


async def recv_frame(
    reader: asyncio.StreamReader, max_size: int = MAX_FRAME_SIZE
) -> tuple[int, bytes]:
    """Receive a type-length-payload frame. Returns (type, payload)."""
    header = await reader.readexactly(HEADER_SIZE)
    frame_type, length = struct.unpack(HEADER_FORMAT, header)
    if length > max_size:
        raise TransportError(f"Frame of {length} bytes exceeds the {max_size} byte limit")
    payload = b""
    if length > 0:
        payload = await reader.readexactly(length)
    return frame_type, payload


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _unb64(text: str) -> bytes:
    return base64.b64decode(text, validate=True)


def local_addresses() -> list[str]:
    """Best-effort list of this host's addresses, loopback last."""
    hosts: list[str] = []
    try:
        _, _, ips = socket.gethostbyname_ex(socket.gethostname())
        hosts.extend(ip for ip in ips if not ip.startswith("127."))
    except OSError as e:
        logger.debug(f"Error resolving local IPs: {e}")
    hosts.append("127.0.0.1")
    return list(dict.fromkeys(hosts))


class TcpPeerTransport:
    """
    One encrypted TCP connection between initiator and answerer.

    Callbacks (single subscriber each, sync or async):
        on_connect()         channel confirmed by HELLO exchange
        on_data(text)        one decrypted DATA frame
        on_close()           an established channel went away
        on_error(exc)        a frame could not be authenticated or parsed
    """

    def __init__(
        self,
        listen_host: str = PEER_LISTEN_HOST,
        port_range: tuple[int, int] = (PEER_PORT_MIN, PEER_PORT_MAX),
        advertise_hosts: Optional[list[str]] = None,
        connect_timeout: float = CONNECT_TIMEOUT,
        max_frame_size: int = MAX_FRAME_SIZE,
    ) -> None:
        self.listen_host = listen_host
        self.port_range = port_range
        self.advertise_hosts = advertise_hosts if advertise_hosts is not None else PEER_ADVERTISE_HOSTS
        self.connect_timeout = connect_timeout
        self.max_frame_size = max_frame_size

        self.on_connect: Optional[Callable[[], Any]] = None
        self.on_data: Optional[Callable[[str], Any]] = None
        self.on_close: Optional[Callable[[], Any]] = None
        self.on_error: Optional[Callable[[Exception], Any]] = None

        self.port = 0
        self._private_key = None
        self._nonce: Optional[bytes] = None
        self._key: Optional[bytes] = None
        self._server: Optional[asyncio.AbstractServer] = None
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._read_task: Optional[asyncio.Task] = None
        self._connected = False
        self._closed = False

    @property
    def is_open(self) -> bool:
        return self._connected and not self._closed

    # ------------------------------------------------------------------
    # Initiator side
    # ------------------------------------------------------------------

    def create_offer(self) -> dict:
        """Generate an ephemeral keypair and session nonce; return the offer."""
        self._private_key, public_bytes = generate_keypair()
        self._nonce = os.urandom(SESSION_NONCE_SIZE)
        offer = OfferDescriptor(public_key=_b64(public_bytes), nonce=_b64(self._nonce))
        return offer.model_dump(by_alias=True)

    def accepts_answer(self, signal: Any) -> bool:
        """True if `signal` is an answer to the offer this transport created."""
        if self._nonce is None:
            return False
        try:
            answer = AnswerDescriptor.model_validate(signal)
        except ValidationError:
            return False
        return answer.nonce == _b64(self._nonce)

    async def apply_answer(self, signal: Any) -> None:
        """
        Connect to the answerer's candidates in order and confirm the key.

        Raises:
            TransportError: malformed answer or no candidate completed HELLO
        """
        if self._private_key is None or self._nonce is None:
            raise TransportError("create_offer() must be called before apply_answer()")
        try:
            answer = AnswerDescriptor.model_validate(signal)
            self._key = derive_session_key(self._private_key, _unb64(answer.public_key), self._nonce)
        except (ValidationError, ValueError, binascii.Error) as e:
            raise TransportError("Malformed answer descriptor") from e

        last_error: Optional[Exception] = None
        for candidate in answer.candidates:
            try:
                reader, writer = await asyncio.wait_for(
                    asyncio.open_connection(candidate.host, candidate.port),
                    timeout=self.connect_timeout,
                )
            except (OSError, asyncio.TimeoutError) as e:
                logger.debug(f"Candidate {candidate.host}:{candidate.port} unreachable: {e}")
                last_error = e
                continue

            try:
                await asyncio.wait_for(self._confirm_as_initiator(reader, writer), timeout=self.connect_timeout)
            except _HANDSHAKE_ERRORS as e:
                logger.debug(f"HELLO with {candidate.host}:{candidate.port} failed: {e!r}")
                writer.close()
                last_error = e
                continue

            await self._established(reader, writer)
            return

        raise TransportError(
            f"Could not reach peer on any of {len(answer.candidates)} candidate(s)"
        ) from last_error

    async def _confirm_as_initiator(self, reader, writer) -> None:
        await send_frame(writer, FrameType.HELLO, encrypt_frame(self._key, self._nonce))
        frame_type, payload = await recv_frame(reader, self.max_frame_size)
        if frame_type != FrameType.HELLO or decrypt_frame(self._key, payload) != self._nonce:
            raise TransportError("Peer failed key confirmation")

    # ------------------------------------------------------------------
    # Answerer side
    # ------------------------------------------------------------------

    async def apply_offer(self, signal: Any) -> dict:
        """
        Accept an offer, start listening and return the answer descriptor.

        Raises:
            TransportError: malformed offer or no port could be bound
        """
        try:
            offer = OfferDescriptor.model_validate(signal)
            self._nonce = _unb64(offer.nonce)
            self._private_key, public_bytes = generate_keypair()
            self._key = derive_session_key(self._private_key, _unb64(offer.public_key), self._nonce)
        except (ValidationError, ValueError, binascii.Error) as e:
            raise TransportError("Malformed offer descriptor") from e

        await self._listen()
        hosts = self.advertise_hosts or self._candidate_hosts()
        answer = AnswerDescriptor(
            public_key=_b64(public_bytes),
            nonce=offer.nonce,
            candidates=[Candidate(host=h, port=self.port) for h in hosts],
        )
        return answer.model_dump(by_alias=True)

    def _candidate_hosts(self) -> list[str]:
        if self.listen_host in ("0.0.0.0", "::", ""):
            return local_addresses()
        return [self.listen_host]

    async def _listen(self) -> None:
        """Start the listener on a random port in range (0 = let the OS pick)."""
        low, high = self.port_range
        # Try a few ports if the first one is busy
        for attempt in range(10):
            port = 0 if low == 0 else random.randint(low, high)
            try:
                self._server = await asyncio.start_server(
                    self._handle_incoming, self.listen_host, port
                )
            except OSError:
                continue
            self.port = self._server.sockets[0].getsockname()[1]
            logger.info(f"Peer listener on {self.listen_host}:{self.port}")
            return

        raise TransportError("Could not bind to any peer port")

    async def _handle_incoming(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        peer = writer.get_extra_info("peername")
        if self._connected or self._closed:
            writer.close()
            return

        try:
            frame_type, payload = await asyncio.wait_for(
                recv_frame(reader, self.max_frame_size), timeout=self.connect_timeout
            )
            if frame_type != FrameType.HELLO or decrypt_frame(self._key, payload) != self._nonce:
                raise TransportError("Key confirmation failed")
            await send_frame(writer, FrameType.HELLO, encrypt_frame(self._key, self._nonce))
        except _HANDSHAKE_ERRORS as e:
            logger.warning(f"Rejected peer connection from {peer}: {e!r}")
            writer.close()
            return

        if self._connected or self._closed:
            writer.close()
            return

        # One peer per session
        if self._server:
            self._server.close()
        await self._established(reader, writer)

    # ------------------------------------------------------------------
    # Established channel
    # ------------------------------------------------------------------

    async def _established(self, reader, writer) -> None:
        if self._closed:
            # Closed while the HELLO was in flight
            writer.close()
            return
        self._reader, self._writer = reader, writer
        self._connected = True
        self._read_task = asyncio.create_task(self._read_loop())
        logger.info(f"Peer channel established with {writer.get_extra_info('peername')}")
        await self._notify(self.on_connect)

    async def send(self, text: str) -> None:
        """
        Encrypt and send one DATA frame.

        Raises:
            TransportError: channel not open or the write failed
        """
        if not self.is_open:
            raise TransportError("Peer channel is not open")
        try:
            await send_frame(self._writer, FrameType.DATA, encrypt_frame(self._key, text.encode("utf-8")))
        except (OSError, ConnectionError) as e:
            raise TransportError(f"Send failed: {e}") from e

    async def close(self) -> None:
        """Tear the channel down. Safe to call more than once."""
        await self._shutdown(send_close=True)

    async def _read_loop(self) -> None:
        error: Optional[Exception] = None
        try:
            while True:
                frame_type, payload = await recv_frame(self._reader, self.max_frame_size)
                if frame_type == FrameType.CLOSE:
                    logger.info("Peer closed the channel")
                    break
                if frame_type != FrameType.DATA:
                    logger.debug(f"Ignoring frame type {frame_type:#x}")
                    continue
                text = decrypt_frame(self._key, payload).decode("utf-8")
                await self._notify(self.on_data, text)
        except (asyncio.IncompleteReadError, ConnectionError):
            logger.info("Peer connection lost")
        except (InvalidTag, UnicodeDecodeError, TransportError) as e:
            logger.warning(f"Closing channel after bad frame: {e!r}")
            error = e

        if error is not None:
            await self._notify(self.on_error, error)
        await self._shutdown(send_close=False)

    async def _shutdown(self, send_close: bool) -> None:
        if self._closed:
            return
        self._closed = True
        was_connected = self._connected
        self._connected = False

        if self._writer:
            if send_close:
                try:
                    await send_frame(self._writer, FrameType.CLOSE)
                except (OSError, ConnectionError) as e:
                    logger.debug(f"Could not send CLOSE: {e}")
            self._writer.close()
            try:
                await self._writer.wait_closed()
            except (OSError, ConnectionError) as e:
                logger.debug(f"Error while closing peer socket: {e}")

        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None

        if self._read_task and self._read_task is not asyncio.current_task():
            self._read_task.cancel()
            try:
                await self._read_task
            except asyncio.CancelledError:
                pass

        if was_connected:
            logger.info("Peer channel closed")
            await self._notify(self.on_close)

    @staticmethod
    async def _notify(callback, *args) -> None:
        if callback is None:
            return
        try:
            await maybe_await(callback(*args))
        except Exception as e:
            logger.error(f"Transport callback error: {e}", exc_info=True)
