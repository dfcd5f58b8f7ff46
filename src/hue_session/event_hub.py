from __future__ import annotations

import asyncio
import logging
from typing import Collection, Iterable

from hue_session.models import CacheChange


logger = logging.getLogger(__name__)


class Subscription:
    """
    One consumer of cache changes.

    Changes queue up until read with `next()`. A consumer that falls behind
    loses its oldest changes first; `dropped` counts them so the consumer can
    decide to re-read the full state.
    """

    def __init__(self, hub: "EventHub", *, max_size: int, rtypes: Collection[str] | None = None) -> None:
        self._hub = hub
        self._queue: asyncio.Queue[CacheChange] = asyncio.Queue(maxsize=max_size)
        self._rtypes = frozenset(rtypes) if rtypes else None
        self.dropped = 0

    def wants(self, change: CacheChange) -> bool:
        return self._rtypes is None or change.resource.rtype in self._rtypes

    def offer(self, change: CacheChange) -> None:
        if self._queue.full():
            self._queue.get_nowait()
            self.dropped += 1
            if self.dropped == 1 or self.dropped % 100 == 0:
                logger.warning("change subscriber is lagging; %d changes dropped", self.dropped)
        self._queue.put_nowait(change)

    async def next(self, timeout: float | None = None) -> CacheChange | None:
        """The next change, or None once `timeout` passes without one."""
        try:
            return await asyncio.wait_for(self._queue.get(), timeout)
        except asyncio.TimeoutError:
            return None

    def pending(self) -> list[CacheChange]:
        out: list[CacheChange] = []
        while not self._queue.empty():
            out.append(self._queue.get_nowait())
        return out

    def close(self) -> None:
        self._hub.remove(self)

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class EventHub:
    """Fans cache changes out to subscribers. Publishing never blocks the cache."""

    def __init__(self, *, max_queue_size: int = 200) -> None:
        self._subscribers: list[Subscription] = []
        self._max_queue_size = max_queue_size

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self, *, rtypes: Collection[str] | None = None) -> Subscription:
        """Only changes to resources of `rtypes` are delivered when it is given."""
        subscription = Subscription(self, max_size=self._max_queue_size, rtypes=rtypes)
        self._subscribers.append(subscription)
        return subscription

    def remove(self, subscription: Subscription) -> None:
        if subscription in self._subscribers:
            self._subscribers.remove(subscription)

    def publish(self, changes: Iterable[CacheChange]) -> None:
        for change in changes:
            for subscription in list(self._subscribers):
                if subscription.wants(change):
                    subscription.offer(change)
