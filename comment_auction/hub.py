"""Topic-based broadcast of auction events. Topics are auction ids."""

import asyncio
import enum
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Set

from comment_auction.logger import get_logger
from comment_auction.models import new_id

logger = get_logger("hub")


class EventKind(str, enum.Enum):
    NEW_BID = "new-bid"
    AUCTION_UPDATE = "auction-update"
    AUCTION_EXTENDED = "auction-extended"
    TIME_WARNING = "time-warning"
    AUCTION_ENDED = "auction-ended"


@dataclass(frozen=True)
class Event:
    kind: EventKind
    auction_id: str
    data: dict = field(default_factory=dict)

    def to_message(self) -> dict:
        return {"event": self.kind.value, "data": {"auctionId": self.auction_id, **self.data}}


class Subscription:
    """One subscriber's view of the hub: joined topics plus a send buffer."""

    def __init__(self, maxsize: int = 100):
        self.id = new_id()
        self.topics: Set[str] = set()
        self.dropped = 0
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)

    def offer(self, message: dict):
        if self._queue.full():
            self._queue.get_nowait()
            self.dropped += 1
        self._queue.put_nowait(message)

    async def get(self) -> dict:
        return await self._queue.get()

    def get_nowait(self) -> dict:
        return self._queue.get_nowait()

    def pending(self) -> int:
        return self._queue.qsize()


class BroadcastHub:
    def __init__(self, queue_size: int = 100):
        self._queue_size = queue_size
        self._topics: Dict[str, Set[Subscription]] = {}
        self._listeners: List[Callable[[Event], None]] = []

    def subscribe(self) -> Subscription:
        return Subscription(self._queue_size)

    def join(self, subscription: Subscription, topic: str):
        self._topics.setdefault(topic, set()).add(subscription)
        subscription.topics.add(topic)
        logger.debug(f"Subscriber {subscription.id} joined {topic}")

    def leave(self, subscription: Subscription, topic: str):
        members = self._topics.get(topic)
        if members is not None:
            members.discard(subscription)
            if not members:
                del self._topics[topic]
        subscription.topics.discard(topic)
        logger.debug(f"Subscriber {subscription.id} left {topic}")

    def unsubscribe(self, subscription: Subscription):
        for topic in list(subscription.topics):
            self.leave(subscription, topic)
        if subscription.dropped:
            logger.info(f"Subscriber {subscription.id} closed after dropping {subscription.dropped} events")

    def subscriber_count(self, topic: str) -> int:
        return len(self._topics.get(topic, ()))

    def add_listener(self, listener: Callable[[Event], None]):
        """Receive every published event; listener errors are logged and swallowed."""
        self._listeners.append(listener)

    def publish(self, event: Event) -> int:
        message = event.to_message()
        members = list(self._topics.get(event.auction_id, ()))
        for subscription in members:
            subscription.offer(message)

        for listener in self._listeners:
            try:
                listener(event)
            except Exception:
                logger.exception(f"Event listener failed on {event.kind.value}")

        logger.debug(f"{event.kind.value} -> {event.auction_id} ({len(members)} subscribers)")
        return len(members)
