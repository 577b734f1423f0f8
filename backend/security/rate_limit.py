"""
Fixed-window rate limiting for bridge operations.

Each operation class (file, command, message) has its own budget. Windows
are tracked per identifier and swept periodically once expired.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Optional

from config import (
    RATE_LIMIT_COMMANDS,
    RATE_LIMIT_FILE_OPS,
    RATE_LIMIT_MESSAGES,
    RATE_LIMIT_SWEEP_INTERVAL,
    RATE_LIMIT_WINDOW,
)

logger = logging.getLogger(__name__)


class OperationClass(str, Enum):
    FILE = "file"
    COMMAND = "command"
    MESSAGE = "message"


class RateLimitExceeded(Exception):
    """Raised when an identifier has used up its budget for the current window."""

    def __init__(self, operation: str, identifier: str, retry_after: float):
        self.operation = operation
        self.identifier = identifier
        self.retry_after = max(0.0, retry_after)
        super().__init__(
            f"Rate limit exceeded for {operation} operations. "
            f"Try again in {int(self.retry_after) + 1}s."
        )


@dataclass
class RateLimitWindow:
    identifier: str
    count: int
    window_reset_at: float


class RateLimiter:
    """Allows max_requests per identifier in each window of window_seconds."""

    def __init__(
        self,
        max_requests: int,
        window_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._windows: Dict[str, RateLimitWindow] = {}

    def is_allowed(self, identifier: str) -> bool:
        """Consume one unit for identifier. Returns False if over budget."""
        now = self._clock()
        window = self._windows.get(identifier)

        if window is None or now >= window.window_reset_at:
            self._windows[identifier] = RateLimitWindow(
                identifier=identifier,
                count=1,
                window_reset_at=now + self.window_seconds,
            )
            return True

        if window.count >= self.max_requests:
            return False

        window.count += 1
        return True

    def remaining(self, identifier: str) -> int:
        window = self._windows.get(identifier)
        if window is None or self._clock() >= window.window_reset_at:
            return self.max_requests
        return max(0, self.max_requests - window.count)

    def retry_after(self, identifier: str) -> float:
        window = self._windows.get(identifier)
        if window is None:
            return 0.0
        return max(0.0, window.window_reset_at - self._clock())

    def cleanup(self) -> int:
        """Drop expired windows. Returns the number removed."""
        now = self._clock()
        expired = [k for k, w in self._windows.items() if now >= w.window_reset_at]
        for key in expired:
            del self._windows[key]
        return len(expired)

    def __len__(self) -> int:
        return len(self._windows)


class RateLimits:
    """The set of per-class limiters used by one bridge instance."""

    def __init__(
        self,
        limiters: Optional[Dict[OperationClass, RateLimiter]] = None,
        sweep_interval: float = RATE_LIMIT_SWEEP_INTERVAL,
    ):
        if limiters is None:
            limiters = {
                OperationClass.FILE: RateLimiter(RATE_LIMIT_FILE_OPS, RATE_LIMIT_WINDOW),
                OperationClass.COMMAND: RateLimiter(RATE_LIMIT_COMMANDS, RATE_LIMIT_WINDOW),
                OperationClass.MESSAGE: RateLimiter(RATE_LIMIT_MESSAGES, RATE_LIMIT_WINDOW),
            }
        self._limiters = limiters
        self._sweep_interval = sweep_interval
        self._sweep_task: asyncio.Task | None = None

    def limiter(self, operation: OperationClass) -> RateLimiter:
        return self._limiters[operation]

    def consume(self, operation: OperationClass, identifier: str) -> None:
        """Take one unit from the operation's budget or raise RateLimitExceeded."""
        limiter = self._limiters[operation]
        if not limiter.is_allowed(identifier):
            raise RateLimitExceeded(
                OperationClass(operation).value, identifier, limiter.retry_after(identifier)
            )

    def sweep(self) -> int:
        return sum(limiter.cleanup() for limiter in self._limiters.values())

    def start(self) -> None:
        """Start the periodic sweep of expired windows."""
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.create_task(self._sweep_loop())

    async def stop(self) -> None:
        if self._sweep_task:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval)
            removed = self.sweep()
            if removed:
                logger.debug(f"Swept {removed} expired rate-limit window(s)")
