# app/core/events.py
"""
In-process change feed.

Services publish a payload on a topic (``attempt:{id}``, ``challenge:{id}``)
after every committed change; HTTP handlers subscribe and forward the
payloads as Server-Sent Events. Delivery is best-effort: a subscriber whose
queue is full is dropped.
"""

import asyncio
import logging
import threading
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Set, Tuple

logger = logging.getLogger(__name__)


def attempt_topic(attempt_id: int) -> str:
    return f"attempt:{attempt_id}"


def challenge_topic(challenge_id: int) -> str:
    return f"challenge:{challenge_id}"


class Subscription:
    """Async iterator over the payloads published on one topic"""

    def __init__(self, topic: str, queue: asyncio.Queue):
        self.topic = topic
        self.queue = queue

    async def get(self, timeout: float = None) -> Any:
        if timeout is None:
            return await self.queue.get()
        return await asyncio.wait_for(self.queue.get(), timeout)

    def __aiter__(self):
        return self

    async def __anext__(self) -> Any:
        return await self.queue.get()


class ChangeFeed:
    def __init__(self, maxsize: int = 100) -> None:
        self.maxsize = maxsize
        self._subscribers: Dict[str, Set[Tuple[asyncio.AbstractEventLoop, asyncio.Queue]]] = {}
        # publish() is called from request threads as well as the event loop
        self._lock = threading.Lock()

    @asynccontextmanager
    async def subscribe(self, topic: str) -> AsyncIterator[Subscription]:
        """Receive changes for a topic until the block exits"""
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.maxsize)
        entry = (asyncio.get_running_loop(), queue)
        with self._lock:
            self._subscribers.setdefault(topic, set()).add(entry)
        try:
            yield Subscription(topic, queue)
        finally:
            self._discard(topic, entry)

    def _discard(self, topic: str, entry) -> None:
        with self._lock:
            subscribers = self._subscribers.get(topic)
            if subscribers is None:
                return
            subscribers.discard(entry)
            if not subscribers:
                del self._subscribers[topic]

    def subscriber_count(self, topic: str) -> int:
        with self._lock:
            return len(self._subscribers.get(topic, ()))

    def publish(self, topic: str, payload: Any) -> None:
        with self._lock:
            subscribers = list(self._subscribers.get(topic, ()))

        for entry in subscribers:
            loop, queue = entry
            if loop.is_closed():
                self._discard(topic, entry)
                continue
            loop.call_soon_threadsafe(self._deliver, topic, entry, payload)

    def _deliver(self, topic: str, entry, payload: Any) -> None:
        try:
            entry[1].put_nowait(payload)
        except asyncio.QueueFull:
            logger.warning(f"Dropping slow subscriber on {topic}")
            self._discard(topic, entry)


change_feed = ChangeFeed()
