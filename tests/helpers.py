"""Helpers shared by the end-to-end tests."""

import asyncio

from peer.models import Role
from peer.session import PeerSession
from peer.signaling_client import SignalingClient
from peer.transport import TcpPeerTransport


async def wait_until(predicate, timeout: float = 5.0, interval: float = 0.01) -> None:
    """Poll `predicate` until it is truthy or fail after `timeout` seconds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(interval)


def loopback_transport() -> TcpPeerTransport:
    return TcpPeerTransport(
        listen_host="127.0.0.1",
        port_range=(0, 0),
        advertise_hosts=["127.0.0.1"],
        connect_timeout=5,
    )


def make_session(http, role: Role, code: str = "ABC123", **kwargs) -> PeerSession:
    kwargs.setdefault("poll_interval", 0.05)
    return PeerSession(
        code,
        role,
        SignalingClient(client=http),
        transport=loopback_transport(),
        **kwargs,
    )
