"""Exceptions raised while establishing or using the peer channel."""


class TransportError(Exception):
    """The peer channel could not be established or has failed."""


class HandshakeTimeoutError(TransportError, TimeoutError):
    """The offer/answer exchange did not complete within the ceiling."""
