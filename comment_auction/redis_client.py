import asyncio
import json
from typing import Optional, Set

import redis.asyncio as redis
from redis.exceptions import RedisError

from comment_auction.hub import Event
from comment_auction.logger import get_logger

logger = get_logger("relay")

CHANNEL_PREFIX = "auction_"


def create_client(url: str) -> redis.Redis:
    return redis.from_url(url, decode_responses=True)


def channel_for(auction_id: str) -> str:
    return f"{CHANNEL_PREFIX}{auction_id}"


class RedisRelay:
    def __init__(self, client: redis.Redis):
        self._client = client
        self._pending: Set[asyncio.Task] = set()

    def __call__(self, event: Event):
        task = asyncio.get_running_loop().create_task(self.publish(event))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def publish(self, event: Event) -> Optional[int]:
        try:
            return await self._client.publish(channel_for(event.auction_id), json.dumps(event.to_message()))
        except (RedisError, OSError) as exc:
            logger.warning(f"Redis publish failed for {event.kind.value}: {exc}")
            return None

    async def close(self):
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
        await self._client.aclose()
