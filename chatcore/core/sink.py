from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Deque, Optional

log = logging.getLogger("chatcore.core.sink")


class OfferResult(str, Enum):
    QUEUED = "queued"
    COALESCED = "coalesced"
    DROPPED = "dropped"
    CLOSED = "closed"


@dataclass(slots=True)
class Outbound:
    frame: bytes
    essential: bool = True
    coalesce_key: Optional[str] = None


class SessionSink:
    """Ordered, bounded per-session send queue with a single writer.

    Overflow policy: drop the oldest nonessential item. Essential items are
    never dropped; they are queued past capacity and the sink records when it
    became full so the router can evict a session that stays full too long.
    """

    def __init__(self, capacity: int = 256, clock: Callable[[], float] = time.monotonic) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self._clock = clock
        self._queue: Deque[Outbound] = deque()
        self._ready = asyncio.Event()
        self._closed = asyncio.Event()
        self.close_reason: Optional[str] = None
        self.full_since: Optional[float] = None
        self.dropped = 0
        self.coalesced = 0
        self.sent = 0

    def __len__(self) -> int:
        return len(self._queue)

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------

    def offer(self, item: Outbound) -> OfferResult:
        if self.closed:
            return OfferResult.CLOSED

        if item.coalesce_key is not None:
            for index, queued in enumerate(self._queue):
                if queued.coalesce_key == item.coalesce_key:
                    self._queue[index] = item
                    self.coalesced += 1
                    return OfferResult.COALESCED

        if len(self._queue) >= self.capacity:
            victim = self._oldest_nonessential()
            if victim is not None:
                del self._queue[victim]
                self.dropped += 1
            elif not item.essential:
                self.dropped += 1
                return OfferResult.DROPPED

        self._queue.append(item)
        if len(self._queue) >= self.capacity and self.full_since is None:
            self.full_since = self._clock()
        self._ready.set()
        return OfferResult.QUEUED

    def _oldest_nonessential(self) -> Optional[int]:
        for index, queued in enumerate(self._queue):
            if not queued.essential:
                return index
        return None

    # ------------------------------------------------------------------
    # Writer side
    # ------------------------------------------------------------------

    async def get(self) -> Optional[Outbound]:
        """Next item in FIFO order, or None once the sink is closed."""

        while not self._queue:
            if self.closed:
                return None
            self._ready.clear()
            ready = asyncio.ensure_future(self._ready.wait())
            closed = asyncio.ensure_future(self._closed.wait())
            try:
                await asyncio.wait({ready, closed}, return_when=asyncio.FIRST_COMPLETED)
            finally:
                ready.cancel()
                closed.cancel()
        if self.closed:
            return None
        item = self._queue.popleft()
        if len(self._queue) < self.capacity:
            self.full_since = None
        return item

    async def pump(
        self,
        send: Callable[[bytes], Awaitable[None]],
        on_sent: Optional[Callable[[Outbound], None]] = None,
    ) -> None:
        """Drain the queue into ``send`` until the sink closes."""

        while True:
            item = await self.get()
            if item is None:
                return
            await send(item.frame)
            self.sent += 1
            if on_sent is not None:
                on_sent(item)

    # ------------------------------------------------------------------
    # Lifecycle & backpressure
    # ------------------------------------------------------------------

    def close(self, reason: str = "closed") -> bool:
        if self.closed:
            return False
        self.close_reason = reason
        pending = len(self._queue)
        self._queue.clear()
        self.full_since = None
        self._closed.set()
        self._ready.set()
        if pending:
            log.debug("Sink closed (%s) with %d queued frames discarded", reason, pending)
        return True

    async def wait_closed(self) -> Optional[str]:
        await self._closed.wait()
        return self.close_reason

    def blocked_for(self, now: Optional[float] = None) -> float:
        if self.full_since is None:
            return 0.0
        current = self._clock() if now is None else now
        return max(0.0, current - self.full_since)

    def overdue(self, grace: float, now: Optional[float] = None) -> bool:
        return self.full_since is not None and self.blocked_for(now) > grace


__all__ = ["OfferResult", "Outbound", "SessionSink"]
