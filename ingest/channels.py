"""
In-process channels between the market feed and the strategy task.

``LatestValue`` is a single slot where each publish replaces the previous
value; readers only ever see the newest one. ``Broadcast`` fans events out to
every live subscription through a bounded per-subscription buffer. A
subscription created after a publish never sees that event, and a subscriber
that falls more than ``capacity`` events behind loses the oldest ones.
"""

import asyncio
import logging
from collections import deque
from typing import Deque, Generic, Optional, Set, TypeVar


logger = logging.getLogger(__name__)

T = TypeVar("T")


class ChannelClosed(Exception):
    pass


class LatestValue(Generic[T]):
    def __init__(self) -> None:
        self._value: Optional[T] = None
        self._version = 0
        self._waiter = asyncio.Event()

    @property
    def version(self) -> int:
        return self._version

    @property
    def value(self) -> Optional[T]:
        return self._value

    def publish(self, value: T) -> bool:
        """Replace the slot value. An identical value does not wake readers."""
        if value is None:
            return False
        if self._version and value == self._value:
            return False
        self._value = value
        self._version += 1
        waiter, self._waiter = self._waiter, asyncio.Event()
        waiter.set()
        return True

    def reader(self) -> "LatestValueReader[T]":
        return LatestValueReader(self)


class LatestValueReader(Generic[T]):
    """Per-consumer cursor over a ``LatestValue``.

    A fresh reader has seen nothing, so its first ``wait_for_change`` returns
    immediately when the slot already holds a value.
    """

    def __init__(self, slot: LatestValue[T]) -> None:
        self._slot = slot
        self._seen = 0

    def borrow(self) -> Optional[T]:
        return self._slot.value

    def has_changed(self) -> bool:
        return self._slot.version != self._seen

    async def wait_for_change(self) -> T:
        while True:
            slot = self._slot
            if slot.version != self._seen and slot.value is not None:
                self._seen = slot.version
                return slot.value
            await slot._waiter.wait()


class Broadcast(Generic[T]):
    def __init__(self, capacity: int = 32) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self._subscriptions: Set["Subscription[T]"] = set()
        self._closed = False

    @property
    def receiver_count(self) -> int:
        return len(self._subscriptions)

    @property
    def closed(self) -> bool:
        return self._closed

    def publish(self, item: T) -> int:
        """Deliver to current subscriptions; returns how many received it."""
        receivers = list(self._subscriptions)
        for sub in receivers:
            sub._push(item)
        return len(receivers)

    def subscribe(self) -> "Subscription[T]":
        sub: Subscription[T] = Subscription(self, self.capacity)
        if self._closed:
            sub._closed = True
        else:
            self._subscriptions.add(sub)
        return sub

    def close(self) -> None:
        self._closed = True
        for sub in list(self._subscriptions):
            sub.close()

    def _remove(self, sub: "Subscription[T]") -> None:
        self._subscriptions.discard(sub)


class Subscription(Generic[T]):
    def __init__(self, channel: Broadcast[T], capacity: int) -> None:
        self._channel = channel
        self._capacity = capacity
        self._buffer: Deque[T] = deque()
        self._ready = asyncio.Event()
        self._closed = False
        self.lagged = 0

    def __enter__(self) -> "Subscription[T]":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def _push(self, item: T) -> None:
        if len(self._buffer) >= self._capacity:
            self._buffer.popleft()
            self.lagged += 1
            logger.debug("Subscription lagged; dropped oldest event (%s total)", self.lagged)
        self._buffer.append(item)
        self._ready.set()

    def try_recv(self) -> Optional[T]:
        if not self._buffer:
            return None
        item = self._buffer.popleft()
        if not self._buffer:
            self._ready.clear()
        return item

    async def recv(self) -> T:
        while not self._buffer:
            if self._closed:
                raise ChannelClosed()
            self._ready.clear()
            await self._ready.wait()
        return self.try_recv()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._channel._remove(self)
        self._ready.set()
