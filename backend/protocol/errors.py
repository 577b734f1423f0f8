"""Exceptions raised by the message protocol layer."""


class ProtocolError(Exception):
    """Raised when a message cannot be accepted onto or off the peer channel."""


class ChecksumMismatchError(ProtocolError):
    """Raised when a message's checksum does not match its content."""


class ToolCallError(Exception):
    """A remote tool call failed. `code` is the wire error code, if any."""

    def __init__(self, message: str, code: str | None = None):
        super().__init__(message)
        self.code = code


class ToolRateLimitedError(ToolCallError):
    """The remote side rejected the tool call because of rate limiting."""


class ToolCallTimeoutError(ToolCallError, TimeoutError):
    """No tool_result arrived before the correlation timeout."""
