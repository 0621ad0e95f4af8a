"""Progress events published by the orchestrator.

Callers subscribe to a :class:`ProgressChannel`; the orchestrator only
publishes and never holds a reference to caller state.
"""

from __future__ import annotations

import asyncio

from .models import Category, CategoryState, ProgressEvent

TRIGGER_BAND_END = 15
CATEGORY_BAND_END = 75

_CLOSED = object()


class Subscription:
    """Async iterator over the events published after it was created."""

    def __init__(self, channel: ProgressChannel) -> None:
        self._channel = channel
        self._queue: asyncio.Queue[object] = asyncio.Queue()

    def _put(self, item: object) -> None:
        self._queue.put_nowait(item)

    def __aiter__(self) -> Subscription:
        return self

    async def __anext__(self) -> ProgressEvent:
        item = await self._queue.get()
        if item is _CLOSED:
            self._channel._detach(self)
            raise StopAsyncIteration
        assert isinstance(item, ProgressEvent)
        return item

    def drain(self) -> list[ProgressEvent]:
        """Return every queued event without waiting."""
        events: list[ProgressEvent] = []
        while not self._queue.empty():
            item = self._queue.get_nowait()
            if isinstance(item, ProgressEvent):
                events.append(item)
        return events


class ProgressChannel:
    """Fan-out channel of :class:`ProgressEvent` with a non-decreasing percent."""

    def __init__(self) -> None:
        self._subscriptions: list[Subscription] = []
        self._percent = 0
        self._last: ProgressEvent | None = None
        self._closed = False

    @property
    def last(self) -> ProgressEvent | None:
        return self._last

    def subscribe(self) -> Subscription:
        subscription = Subscription(self)
        if self._closed:
            subscription._put(_CLOSED)
        else:
            self._subscriptions.append(subscription)
        return subscription

    def begin_run(self) -> None:
        """Reset the percent floor; called once at the start of each run."""
        self._percent = 0
        self._last = None

    def _detach(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    def publish(
        self,
        message: str,
        percent: int,
        snapshot: dict[Category, CategoryState] | None = None,
    ) -> ProgressEvent:
        self._percent = max(self._percent, min(max(percent, 0), 100))
        event = ProgressEvent(message=message, percent=self._percent, snapshot=snapshot or {})
        self._last = event
        for subscription in self._subscriptions:
            subscription._put(event)
        return event

    def close(self) -> None:
        """End every open subscription after its queued events."""
        self._closed = True
        for subscription in list(self._subscriptions):
            subscription._put(_CLOSED)


def category_percent(done: int, total: int) -> int:
    """Map finished categories onto the 15-75 band."""
    if total <= 0:
        return CATEGORY_BAND_END
    span = CATEGORY_BAND_END - TRIGGER_BAND_END
    return min(TRIGGER_BAND_END + round(done / total * span), CATEGORY_BAND_END)
