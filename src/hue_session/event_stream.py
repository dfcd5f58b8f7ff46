from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterable, AsyncIterator, Awaitable, Callable

from pydantic import TypeAdapter, ValidationError

from hue_session.hue_client import EVENTSTREAM_PATH, BridgeClient, HueHTTPError, HueTransportError
from hue_session.models import StreamState, StreamStatus
from hue_session.resources import BridgeEvent, EventData


logger = logging.getLogger(__name__)

FORWARDED_TYPES = frozenset({"grouped_light", "room", "zone", "scene"})

_EVENT_LIST = TypeAdapter(list[BridgeEvent])

BatchListener = Callable[[list[EventData]], Awaitable[None]]
StateListener = Callable[[StreamStatus], None]


def parse_data_line(payload: str) -> list[EventData]:
    """Decode one `data:` payload into the forwarded resource deltas, tagged with their event type."""
    events = _EVENT_LIST.validate_json(payload)
    out: list[EventData] = []
    for event in events:
        for item in event.data:
            if item.type not in FORWARDED_TYPES:
                continue
            out.append(item.model_copy(update={"event_type": event.type}))
    return out


async def iter_event_batches(lines: AsyncIterable[str]) -> AsyncIterator[list[EventData]]:
    async for line in lines:
        if not line.startswith("data:"):
            # Blank separators, ": keepalive" comments, event: and id: fields carry nothing we need.
            continue
        payload = line[len("data:") :].strip()
        if not payload:
            continue
        try:
            batch = parse_data_line(payload)
        except (ValueError, ValidationError) as exc:
            logger.warning("skipping malformed event payload: %s (%s)", payload[:200], exc)
            continue
        if batch:
            yield batch


class EventStreamClient:
    """
    Owns the single SSE connection to a bridge.

    Batches are handed to listeners inline, in receipt order. The stream never
    reconnects on its own; watch the state and call `start()` again.
    """

    def __init__(self, client: BridgeClient, *, path: str = EVENTSTREAM_PATH) -> None:
        self._client = client
        self._path = path
        self._task: asyncio.Task[None] | None = None
        self._status = StreamStatus(StreamState.IDLE)
        self._listeners: list[BatchListener] = []
        self._state_listeners: list[StateListener] = []

    @property
    def status(self) -> StreamStatus:
        return self._status

    @property
    def state(self) -> StreamState:
        return self._status.state

    @property
    def is_connected(self) -> bool:
        return self._status.state is StreamState.CONNECTED

    def add_listener(self, listener: BatchListener) -> None:
        self._listeners.append(listener)

    def add_state_listener(self, listener: StateListener) -> None:
        self._state_listeners.append(listener)

    def _set_status(self, state: StreamState, detail: str | None = None) -> None:
        self._status = StreamStatus(state, detail)
        logger.info("event stream %s%s", state.value, f" ({detail})" if detail else "")
        for listener in list(self._state_listeners):
            try:
                listener(self._status)
            except Exception:
                logger.exception("stream state listener failed")

    async def start(self) -> None:
        await self.stop()
        self._set_status(StreamState.CONNECTING)
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        if not task.done():
            task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        if not self._status.is_terminal:
            # cancelled before the task got to run
            self._set_status(StreamState.DISCONNECTED, "cancelled")

    async def _dispatch(self, batch: list[EventData]) -> None:
        for listener in list(self._listeners):
            try:
                await listener(batch)
            except Exception:
                logger.exception("event listener failed")

    async def _run(self) -> None:
        lines = self._client.stream_lines(
            self._path,
            on_open=lambda: self._set_status(StreamState.CONNECTED),
        )
        try:
            async for batch in iter_event_batches(lines):
                await self._dispatch(batch)
        except asyncio.CancelledError:
            self._set_status(StreamState.DISCONNECTED, "cancelled")
            raise
        except HueHTTPError as exc:
            self._set_status(StreamState.ERROR, f"HTTP {exc.status_code}")
            return
        except HueTransportError as exc:
            self._set_status(StreamState.ERROR, str(exc))
            return
        except Exception as exc:
            logger.exception("event stream failed")
            self._set_status(StreamState.ERROR, str(exc) or type(exc).__name__)
            return
        self._set_status(StreamState.DISCONNECTED, "eof")
