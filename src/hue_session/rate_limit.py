from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable


logger = logging.getLogger(__name__)

Send = Callable[[], Awaitable[None]]


@dataclass
class _Slot:
    last_sent_at: float = float("-inf")
    pending: Send | None = None
    trailing: asyncio.Task[None] | None = field(default=None, repr=False)


class CommandThrottle:
    """
    Per-key throttle for outbound bridge commands.

    The first call for a key is sent immediately. Calls arriving inside the
    window replace a single pending send, which fires once the window ends, so
    at most one command per key goes out per interval and the last value wins.
    """

    def __init__(self, *, interval_seconds: float = 1.0, clock: Callable[[], float] = time.monotonic) -> None:
        self._interval = max(0.0, float(interval_seconds))
        self._clock = clock
        self._slots: dict[str, _Slot] = {}

    def has_pending(self, key: str) -> bool:
        slot = self._slots.get(key)
        return bool(slot and slot.pending is not None)

    async def submit(self, key: str, send: Send) -> bool:
        """Returns True when `send` ran now, False when it was deferred to the trailing edge."""
        slot = self._slots.setdefault(key, _Slot())
        now = self._clock()
        if slot.pending is None and now - slot.last_sent_at >= self._interval:
            slot.last_sent_at = now
            await send()
            return True

        slot.pending = send
        if slot.trailing is None or slot.trailing.done():
            slot.trailing = asyncio.create_task(self._drain(key, slot))
        return False

    async def _drain(self, key: str, slot: _Slot) -> None:
        while slot.pending is not None:
            wait = slot.last_sent_at + self._interval - self._clock()
            if wait > 0:
                await asyncio.sleep(wait)
            send, slot.pending = slot.pending, None
            slot.last_sent_at = self._clock()
            try:
                await send()
            except Exception:
                logger.warning("throttled command for %s failed", key, exc_info=True)

    async def close(self) -> None:
        tasks = [s.trailing for s in self._slots.values() if s.trailing and not s.trailing.done()]
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._slots.clear()
