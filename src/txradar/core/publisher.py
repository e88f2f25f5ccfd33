"""
In-process publish/subscribe channel for downstream consumers.

Messages are ScoredTx, LifecycleTransition and MempoolStats instances.
Queue subscribers receive every message in publish order; a ScoredTx may
arrive more than once for the same txid (provisional, then corrected).
Listeners are plain callbacks (sync or async) invoked inline.
"""
from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Callable, Union

from .models import LifecycleTransition, MempoolStats, ScoredTx

logger = logging.getLogger(__name__)

PublishedMessage = Union[ScoredTx, LifecycleTransition, MempoolStats]
Listener = Callable[[PublishedMessage], Any]  # Returns None or Awaitable[None]


class Subscription:
    """
    Queue-backed subscription.

    With maxsize=0 the queue is unbounded. A bounded subscriber that falls
    behind loses its oldest queued message, counted in `dropped`.
    """

    def __init__(self, publisher: "EventPublisher", maxsize: int = 0) -> None:
        self._publisher = publisher
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    def _offer(self, message: PublishedMessage) -> None:
        if self._queue.full():
            try:
                self._queue.get_nowait()
                self.dropped += 1
            except asyncio.QueueEmpty:
                pass
        self._queue.put_nowait(message)

    async def get(self) -> PublishedMessage:
        return await self._queue.get()

    def get_nowait(self) -> PublishedMessage:
        return self._queue.get_nowait()

    def qsize(self) -> int:
        return self._queue.qsize()

    def close(self) -> None:
        self._publisher.unsubscribe(self)

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> PublishedMessage:
        return await self.get()


class EventPublisher:
    """
    Fan-out of pipeline output to any number of consumers.

    Usage:
        publisher = EventPublisher()
        sub = publisher.subscribe()
        publisher.add_listener(history.on_message)

        await publisher.publish(scored)
        message = await sub.get()
    """

    def __init__(self) -> None:
        self._subscriptions: list[Subscription] = []
        self._listeners: list[Listener] = []
        self.published = 0

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def subscribe(self, maxsize: int = 0) -> Subscription:
        subscription = Subscription(self, maxsize=maxsize)
        self._subscriptions.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def publish(self, message: PublishedMessage) -> None:
        self.published += 1

        for subscription in list(self._subscriptions):
            subscription._offer(message)

        for listener in list(self._listeners):
            try:
                result = listener(message)
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error in publish listener {listener!r}: {e}")
