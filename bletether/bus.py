"""Publish/subscribe channels with explicit cancellation."""
from __future__ import annotations

import asyncio
import contextlib
import logging
import threading
from typing import Any, Awaitable, Callable, Generic, List, Optional, Set, TypeVar, Union

logger = logging.getLogger(__name__)

T = TypeVar("T")

Listener = Callable[[T], Union[None, Awaitable[None]]]


class Subscription(Generic[T]):
    """Handle returned by :meth:`Channel.subscribe`.

    Once cancelled, nothing is delivered to the listener anymore, even for
    items published before cancellation whose dispatch is still queued.
    """

    def __init__(
        self,
        channel: "Channel[T]",
        listener: Listener[T],
        on_cancel: Optional[Callable[[], None]] = None,
    ) -> None:
        self._channel = channel
        self._listener = listener
        self._on_cancel = on_cancel
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def cancel(self) -> None:
        if not self._active:
            return
        self._active = False
        self._channel._detach(self)
        if self._on_cancel is not None:
            try:
                self._on_cancel()
            except Exception:  # pragma: no cover - cleanup hook failure
                logger.exception("subscription cancel hook raised")

    def _deliver(self, item: T) -> Optional[Awaitable[None]]:
        if not self._active:
            return None
        return self._listener(item)  # type: ignore[return-value]


class Channel(Generic[T]):
    """Broadcast ``publish`` to every live subscriber.

    Listeners may be plain functions or coroutine functions; coroutines are
    scheduled on the running loop and their failures are logged, never
    raised into the publisher.
    """

    def __init__(self, name: str = "channel") -> None:
        self.name = name
        self._subscriptions: List[Subscription[T]] = []
        self._lock = threading.Lock()
        self._tasks: Set["asyncio.Task[Any]"] = set()

    def __len__(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def subscribe(
        self,
        listener: Listener[T],
        *,
        on_cancel: Optional[Callable[[], None]] = None,
    ) -> Subscription[T]:
        subscription = Subscription(self, listener, on_cancel)
        with self._lock:
            self._subscriptions.append(subscription)
        return subscription

    def stream(self, maxsize: int = 0) -> "ChannelStream[T]":
        return ChannelStream(self, maxsize=maxsize)

    def publish(self, item: T) -> None:
        with self._lock:
            targets = list(self._subscriptions)
        for subscription in targets:
            try:
                outcome = subscription._deliver(item)
                if asyncio.iscoroutine(outcome):
                    self._schedule(outcome)
            except Exception:
                logger.exception("%s listener raised an exception", self.name)

    def close(self) -> None:
        with self._lock:
            targets = list(self._subscriptions)
        for subscription in targets:
            subscription.cancel()

    def _detach(self, subscription: Subscription[T]) -> None:
        with self._lock:
            with contextlib.suppress(ValueError):
                self._subscriptions.remove(subscription)

    def _schedule(self, coro: Awaitable[None]) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("%s: no running loop for coroutine listener; dropped", self.name)
            coro.close()  # type: ignore[attr-defined]
            return
        task = loop.create_task(coro)  # type: ignore[arg-type]
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: "asyncio.Task[Any]") -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("%s listener task failed: %s", self.name, exc, exc_info=exc)


class ChannelStream(Generic[T]):
    """Async iterator over a channel, backed by an :class:`asyncio.Queue`."""

    def __init__(self, channel: Channel[T], *, maxsize: int = 0) -> None:
        self._loop = asyncio.get_running_loop()
        self._queue: "asyncio.Queue[T]" = asyncio.Queue(maxsize=maxsize)
        self._subscription = channel.subscribe(self._push)

    def _push(self, item: T) -> None:
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self._loop:
            self._enqueue(item)
        else:
            self._loop.call_soon_threadsafe(self._enqueue, item)

    def _enqueue(self, item: T) -> None:
        if not self._subscription.active:
            return
        try:
            self._queue.put_nowait(item)
        except asyncio.QueueFull:
            logger.warning("stream queue full; dropping %s", type(item).__name__)

    def close(self) -> None:
        self._subscription.cancel()

    async def get(self, timeout: Optional[float] = None) -> T:
        if timeout is None:
            return await self._queue.get()
        return await asyncio.wait_for(self._queue.get(), timeout=timeout)

    def __aiter__(self) -> "ChannelStream[T]":
        return self

    async def __anext__(self) -> T:
        if not self._subscription.active and self._queue.empty():
            raise StopAsyncIteration
        return await self._queue.get()

    async def __aenter__(self) -> "ChannelStream[T]":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:  # type: ignore[override]
        self.close()


__all__ = ["Channel", "ChannelStream", "Subscription", "Listener"]
