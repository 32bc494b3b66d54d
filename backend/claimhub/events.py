from __future__ import annotations

import asyncio
from typing import Any, Callable, Generic, Optional, TypeVar

T = TypeVar("T")

_DONE = object()


class _Failure:
    def __init__(self, exc: BaseException):
        self.exc = exc


class Subscription(Generic[T]):
    """Push-based stream consumed with ``async for``.

    Producers call ``push``/``complete``/``fail``; consumers iterate and call
    ``close`` (or leave the ``async with`` block) to detach from the producer.
    """

    def __init__(
        self,
        on_close: Optional[Callable[["Subscription[T]"], None]] = None,
        accept: Optional[Callable[[T], bool]] = None,
        once: bool = False,
    ):
        self._queue: asyncio.Queue = asyncio.Queue()
        self._on_close = on_close
        self._accept = accept
        self._once = once
        self.closed = False
        self._ended = False

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def push(self, value: T) -> None:
        if self.closed or self._ended:
            return
        if self._accept is not None and not self._accept(value):
            return
        self._queue.put_nowait(value)
        if self._once:
            self.complete()

    def complete(self) -> None:
        if self.closed or self._ended:
            return
        self._ended = True
        self._queue.put_nowait(_DONE)
        self._detach()

    def fail(self, exc: BaseException) -> None:
        if self.closed or self._ended:
            return
        self._ended = True
        self._queue.put_nowait(_Failure(exc))
        self._detach()

    def close(self) -> None:
        if self.closed:
            return
        self._detach()
        self.closed = True
        # wake a consumer blocked in __anext__
        self._queue.put_nowait(_DONE)

    async def aclose(self) -> None:
        self.close()

    def _detach(self) -> None:
        on_close, self._on_close = self._on_close, None
        if on_close is not None:
            on_close(self)

    def __aiter__(self):
        return self

    async def __anext__(self) -> T:
        if self.closed:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _DONE:
            self.close()
            raise StopAsyncIteration
        if isinstance(item, _Failure):
            self.close()
            raise item.exc
        return item

    async def next(self, timeout: Optional[float] = None) -> T:
        return await asyncio.wait_for(self.__anext__(), timeout)

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        await self.aclose()


class EventRegistry(Generic[T]):
    """Explicit subscriber registry fanning one producer out to many consumers.

    With ``replay_last`` a new subscriber immediately receives the most recent
    published value, if any.
    """

    def __init__(self, replay_last: bool = False, on_empty: Optional[Callable[["EventRegistry[T]"], None]] = None):
        self._subscribers: list[Subscription[T]] = []
        self._on_empty = on_empty
        self._replay_last = replay_last
        self._has_value = False
        self._last: Any = None

    def subscribe(self, accept: Optional[Callable[[T], bool]] = None, once: bool = False) -> Subscription[T]:
        sub: Subscription[T] = Subscription(on_close=self._unsubscribe, accept=accept, once=once)
        self._subscribers.append(sub)
        if self._replay_last and self._has_value:
            sub.push(self._last)
        return sub

    def _unsubscribe(self, sub: Subscription[T]) -> None:
        try:
            self._subscribers.remove(sub)
        except ValueError:
            return
        if not self._subscribers and self._on_empty is not None:
            self._on_empty(self)

    def publish(self, value: T) -> None:
        self._has_value = True
        self._last = value
        for sub in list(self._subscribers):
            sub.push(value)

    def fail(self, exc: BaseException) -> None:
        for sub in list(self._subscribers):
            sub.fail(exc)

    def close_all(self) -> None:
        for sub in list(self._subscribers):
            sub.complete()

    def __len__(self) -> int:
        return len(self._subscribers)
