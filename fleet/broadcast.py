import asyncio
import itertools
import logging
import threading
from typing import Dict, List, Optional

from fleet import config
from fleet.events import Connected, Event

logger = logging.getLogger(__name__)

_CLOSED = object()


class Subscription:
    """
    One viewer's ordered event stream. Owned by the channel; iterate with
    ``async for`` and call ``unsubscribe()`` when the connection goes away.
    """

    def __init__(self, channel: "BroadcastChannel", handle: int, organization_id: Optional[int], maxsize: int):
        self._channel = channel
        self.handle = handle
        self.organization_id = organization_id
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize + 1)  # +1 slot for the close marker
        self._maxsize = maxsize
        self.closed = False

    def wants(self, event: Event) -> bool:
        if self.organization_id is None:
            return True
        scope = getattr(event, "organization_id", None)
        return scope is None or scope == self.organization_id

    def offer(self, event: Event) -> bool:
        """Queue without waiting; False when this subscriber has fallen behind."""
        if self.closed or self._queue.qsize() >= self._maxsize:
            return False
        self._queue.put_nowait(event)
        return True

    def close(self):
        if self.closed:
            return
        self.closed = True
        try:
            self._queue.put_nowait(_CLOSED)
        except asyncio.QueueFull:
            pass

    def get_nowait(self) -> Optional[Event]:
        """Next pending event, or None when nothing is queued."""
        try:
            item = self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None
        return None if item is _CLOSED else item

    def drain(self) -> List[Event]:
        events = []
        while True:
            event = self.get_nowait()
            if event is None:
                return events
            events.append(event)

    async def get(self) -> Optional[Event]:
        item = await self._queue.get()
        return None if item is _CLOSED else item

    def __aiter__(self):
        return self

    async def __anext__(self) -> Event:
        event = await self.get()
        if event is None:
            raise StopAsyncIteration
        return event

    def unsubscribe(self):
        self._channel.unsubscribe(self)


class BroadcastChannel:
    """
    Fire-and-forget fan-out of simulation events. Delivery is per-subscriber FIFO;
    a subscriber whose queue is full is dropped instead of slowing the publisher.
    """

    def __init__(self, queue_size: int = config.SUBSCRIBER_QUEUE_SIZE):
        self.queue_size = queue_size
        self._subscribers: Dict[int, Subscription] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def subscribe(self, organization_id: Optional[int] = None) -> Subscription:
        sub = Subscription(self, next(self._ids), organization_id, self.queue_size)
        sub.offer(Connected())
        with self._lock:
            self._subscribers[sub.handle] = sub
        logger.info("Subscriber %s connected (total %d)", sub.handle, len(self._subscribers))
        return sub

    def unsubscribe(self, sub: Subscription):
        with self._lock:
            removed = self._subscribers.pop(sub.handle, None)
        sub.close()
        if removed is not None:
            logger.info("Subscriber %s disconnected (total %d)", sub.handle, len(self._subscribers))

    def publish(self, event: Event) -> int:
        """Deliver to every current subscriber; returns how many received it."""
        with self._lock:
            subscribers = list(self._subscribers.values())
        delivered = 0
        dropped = []
        for sub in subscribers:
            if not sub.wants(event):
                continue
            if sub.offer(event):
                delivered += 1
            else:
                dropped.append(sub)
        for sub in dropped:
            logger.warning("Dropping slow subscriber %s", sub.handle)
            self.unsubscribe(sub)
        return delivered

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)
