"""
Rendezvous store for pairing-code signaling.

Maps (slot, pairing code) to the most recent descriptor posted for it.
Envelopes expire after a fixed TTL; expired envelopes are never returned and
are purged by a background sweep.

All methods run on the event loop without awaiting, so each read or write
is atomic with respect to other requests and no lock is needed.
"""

import asyncio
import logging
import time
from typing import Any, Callable, Optional

from config import SIGNAL_CONSUME_ON_READ, SIGNAL_SWEEP_INTERVAL, SIGNAL_TTL
from signaling.models import SignalEnvelope, Slot

logger = logging.getLogger(__name__)


class RendezvousStore:
    """Short-lived offer/answer storage keyed by pairing code."""

    def __init__(
        self,
        ttl: float = SIGNAL_TTL,
        sweep_interval: float = SIGNAL_SWEEP_INTERVAL,
        consume_on_read: bool = SIGNAL_CONSUME_ON_READ,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl = ttl
        self.sweep_interval = sweep_interval
        self.consume_on_read = consume_on_read
        self._clock = clock
        self._envelopes: dict[tuple[Slot, str], SignalEnvelope] = {}
        self._sweep_task: asyncio.Task | None = None

    def __len__(self) -> int:
        return len(self._envelopes)

    async def start(self) -> None:
        """Start the expiry sweep."""
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.create_task(self._sweep_loop())
        logger.info(
            f"Rendezvous store started (ttl={self.ttl}s, sweep every {self.sweep_interval}s, "
            f"consume_on_read={self.consume_on_read})"
        )

    async def stop(self) -> None:
        if self._sweep_task:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None
        logger.info("Rendezvous store stopped")

    # --- Writes (last write wins) ---

    def store(self, slot: Slot, code: str, signal: Any) -> SignalEnvelope:
        envelope = SignalEnvelope(code=code, signal=signal, stored_at=self._clock())
        self._envelopes[(slot, code)] = envelope
        logger.debug(f"Stored {slot.value} for code {code}")
        return envelope

    def store_offer(self, code: str, signal: Any) -> SignalEnvelope:
        return self.store(Slot.OFFER, code, signal)

    def store_answer(self, code: str, signal: Any) -> SignalEnvelope:
        return self.store(Slot.ANSWER, code, signal)

    # --- Reads (absence is a normal result, not an error) ---

    def read(self, slot: Slot, code: str) -> Optional[Any]:
        key = (slot, code)
        envelope = self._envelopes.get(key)
        if envelope is None:
            return None

        if self._is_expired(envelope):
            del self._envelopes[key]
            return None

        if self.consume_on_read:
            del self._envelopes[key]
        return envelope.signal

    def read_offer(self, code: str) -> Optional[Any]:
        return self.read(Slot.OFFER, code)

    def read_answer(self, code: str) -> Optional[Any]:
        return self.read(Slot.ANSWER, code)

    # --- Expiry ---

    def _is_expired(self, envelope: SignalEnvelope) -> bool:
        return self._clock() - envelope.stored_at > self.ttl

    def purge_expired(self) -> int:
        """Remove expired envelopes from both slots. Returns number removed."""
        stale = [key for key, env in self._envelopes.items() if self._is_expired(env)]
        for key in stale:
            del self._envelopes[key]
        return len(stale)

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            try:
                removed = self.purge_expired()
                if removed:
                    logger.info(f"Purged {removed} expired signal(s)")
            except Exception as e:
                logger.error(f"Signal sweep failed: {e}")
