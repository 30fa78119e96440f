from __future__ import annotations

import asyncio
import inspect
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Union

from loguru import logger

from open_core.stream_events import StreamEvent


@dataclass(frozen=True)
class BusEvent:
    session_id: str
    message_id: str
    event: StreamEvent

    @property
    def type(self) -> str:
        return self.event.type


Listener = Callable[[BusEvent], Union[None, Awaitable[None]]]


@dataclass
class _Subscription:
    listener: Listener
    session_id: str | None
    is_async: bool


class EventBus:
    """Fan-out of processed stream events to observers.

    ``publish`` never blocks the producer: synchronous listeners run inline,
    coroutine listeners are queued and awaited by a background dispatcher.
    """

    def __init__(self):
        self._subscriptions: list[_Subscription] = []
        self._queue: asyncio.Queue[tuple[_Subscription, BusEvent]] = asyncio.Queue()
        self._task: asyncio.Task | None = None
        self._closed = False

    def subscribe(self, listener: Listener, *, session_id: str | None = None) -> Callable[[], None]:
        subscription = _Subscription(
            listener=listener,
            session_id=session_id,
            is_async=inspect.iscoroutinefunction(listener),
        )
        self._subscriptions.append(subscription)

        def unsubscribe() -> None:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)

        return unsubscribe

    @property
    def listener_count(self) -> int:
        return len(self._subscriptions)

    def publish(self, event: BusEvent) -> None:
        if self._closed:
            return
        for subscription in list(self._subscriptions):
            if subscription.session_id is not None and subscription.session_id != event.session_id:
                continue
            if subscription.is_async:
                self._queue.put_nowait((subscription, event))
                self._ensure_dispatcher()
                continue
            try:
                subscription.listener(event)
            except Exception as ex:
                logger.warning(f"Event listener failed on {event.type}: {ex}")

    async def drain(self) -> None:
        """Wait until every queued event has been delivered to async listeners."""
        while not self._queue.empty():
            await self._deliver(*self._queue.get_nowait())

    async def close(self) -> None:
        self._closed = True
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        await self.drain()
        self._subscriptions.clear()

    def _ensure_dispatcher(self) -> None:
        if self._task is not None and not self._task.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._task = loop.create_task(self._run())

    async def _run(self) -> None:
        while True:
            subscription, event = await self._queue.get()
            await self._deliver(subscription, event)

    @staticmethod
    async def _deliver(subscription: _Subscription, event: BusEvent) -> None:
        try:
            result: Any = subscription.listener(event)
            if inspect.isawaitable(result):
                await result
        except Exception as ex:
            logger.warning(f"Async event listener failed on {event.type}: {ex}")
