"""
Event bus for karafriends.

Topic-keyed publish/subscribe used to fan session changes out to every
connected client. Subscribers only see messages published after they
subscribe. Publishing never blocks: each subscription has a bounded buffer
and a subscriber whose buffer is full misses the message.
"""

import asyncio
import logging
import queue
import threading
from enum import Enum
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class Topic(str, Enum):
    CURRENT_SONG_CHANGED = "current_song_changed"
    ADHOC_LYRICS_CHANGED = "adhoc_lyrics_changed"
    PLAYBACK_STATE_CHANGED = "playback_state_changed"
    PITCH_SHIFT_CHANGED = "pitch_shift_changed"
    QUEUE_CHANGED = "queue_changed"
    QUEUE_ADDED = "queue_added"
    EMOTE = "emote"
    ACQUISITION_FAILED = "acquisition_failed"


class Subscription:
    """A single subscriber's view of one topic."""

    def __init__(self, bus: "EventBus", topic: Topic, max_pending: int):
        self.bus = bus
        self.topic = topic
        self._messages: "queue.Queue[Any]" = queue.Queue(maxsize=max_pending)
        self.dropped = 0

    def deliver(self, payload: Any) -> bool:
        """Buffer a message. Returns False if it had to be dropped."""
        try:
            self._messages.put_nowait(payload)
            return True
        except queue.Full:
            self._drop()
            return False

    def _drop(self) -> None:
        self.dropped += 1
        logger.warning(
            "Subscriber on %s is not keeping up, dropped message (%d dropped so far)",
            self.topic.value,
            self.dropped,
        )

    def get(self, timeout: Optional[float] = None, default: Any = None) -> Any:
        """
        Wait for the next message.

        Some payloads are None (no current song), so callers that need to
        tell a timeout apart pass their own default.

        Args:
            timeout: Seconds to wait, or None to wait forever
            default: Returned if nothing arrived before the timeout

        Returns:
            The payload, or default
        """
        try:
            return self._messages.get(timeout=timeout)
        except queue.Empty:
            return default

    def pending(self) -> int:
        return self._messages.qsize()

    def close(self) -> None:
        self.bus.unsubscribe(self)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()



class AsyncSubscription(Subscription):
    """
    A subscription read from an asyncio event loop.

    publish() may run on any thread; messages are handed to the loop with
    call_soon_threadsafe and buffered in an asyncio.Queue, so readers await
    them without holding a worker thread.
    """

    def __init__(
        self,
        bus: "EventBus",
        topic: Topic,
        max_pending: int,
        loop: asyncio.AbstractEventLoop,
    ):
        super().__init__(bus, topic, max_pending)
        self.loop = loop
        self._messages = asyncio.Queue(maxsize=max_pending)

    def deliver(self, payload: Any) -> bool:
        """Hand a message to the loop. Returns False if the loop is gone."""
        try:
            self.loop.call_soon_threadsafe(self._put, payload)
            return True
        except RuntimeError:
            logger.debug("Event loop for subscriber on %s is closed", self.topic.value)
            return False

    def _put(self, payload: Any) -> None:
        try:
            self._messages.put_nowait(payload)
        except asyncio.QueueFull:
            self._drop()

    async def get(self) -> Any:
        """Wait for the next message."""
        return await self._messages.get()


class EventBus:
    """Thread-safe in-memory pub/sub (single process)."""

    def __init__(self, max_pending: int = 256):
        self.max_pending = max_pending
        self._subscribers: Dict[Topic, List[Subscription]] = {topic: [] for topic in Topic}
        self._lock = threading.Lock()

    def subscribe(self, topic: Topic) -> Subscription:
        subscription = Subscription(self, Topic(topic), self.max_pending)
        return self._add(subscription)

    def subscribe_async(
        self, topic: Topic, loop: Optional[asyncio.AbstractEventLoop] = None
    ) -> AsyncSubscription:
        """
        Subscribe from async code.

        Args:
            topic: Topic to listen on
            loop: Loop the subscriber reads from; defaults to the running loop
        """
        subscription = AsyncSubscription(
            self, Topic(topic), self.max_pending, loop or asyncio.get_running_loop()
        )
        return self._add(subscription)

    def _add(self, subscription: Subscription) -> Subscription:
        with self._lock:
            self._subscribers[subscription.topic].append(subscription)
        logger.debug("New subscriber on %s", subscription.topic.value)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            listeners = self._subscribers[subscription.topic]
            if subscription in listeners:
                listeners.remove(subscription)

    def publish(self, topic: Topic, payload: Any) -> int:
        """
        Deliver payload to every current subscriber of topic.

        Returns:
            Number of subscribers the message was delivered to
        """
        with self._lock:
            listeners = list(self._subscribers[Topic(topic)])

        delivered = 0
        for subscription in listeners:
            if subscription.deliver(payload):
                delivered += 1
        return delivered

    def subscriber_count(self, topic: Topic) -> int:
        with self._lock:
            return len(self._subscribers[Topic(topic)])
