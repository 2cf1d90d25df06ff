"""
Change feed for analysis rows.

The job store publishes a ``ChangeEvent`` after every analysis update; the
realtime watcher subscribes to the events of one job id.

Usage:
    feed = RedisChangeFeed(settings.redis_url)   # or LocalChangeFeed()
    subscription = await feed.subscribe(job_id)
    event = await subscription.next_event()
    await subscription.close()
"""

import asyncio
import json
import logging
from dataclasses import asdict, dataclass
from typing import Any, Optional

from redis.asyncio import Redis, from_url

logger = logging.getLogger(__name__)

CHANNEL_PREFIX = "analyses"


def channel_for(job_id: str) -> str:
    return f"{CHANNEL_PREFIX}:{job_id}"


@dataclass(frozen=True)
class ChangeEvent:
    """Status snapshot of one analysis row after an update."""

    job_id: str
    status: Optional[str]
    is_ready: bool = False
    error: Optional[dict[str, Any]] = None

    def to_json(self) -> str:
        return json.dumps(asdict(self))

    @classmethod
    def from_json(cls, raw: str) -> "ChangeEvent":
        data = json.loads(raw)
        return cls(
            job_id=data["job_id"],
            status=data.get("status"),
            is_ready=bool(data.get("is_ready")),
            error=data.get("error"),
        )


class Subscription:
    """Stream of events for one job id."""

    async def next_event(self) -> ChangeEvent:
        raise NotImplementedError

    async def close(self) -> None:
        raise NotImplementedError


class ChangeFeed:
    async def publish(self, event: ChangeEvent) -> None:
        raise NotImplementedError

    async def subscribe(self, job_id: str) -> Subscription:
        raise NotImplementedError

    async def close(self) -> None:
        pass


# ==================== In-process ==================== #
class LocalSubscription(Subscription):
    def __init__(self, feed: "LocalChangeFeed", job_id: str):
        self.feed = feed
        self.job_id = job_id
        self.queue: asyncio.Queue[ChangeEvent] = asyncio.Queue()
        self.closed = False

    async def next_event(self) -> ChangeEvent:
        return await self.queue.get()

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self.feed._detach(self)


class LocalChangeFeed(ChangeFeed):
    """Single-process feed backed by asyncio queues."""

    def __init__(self):
        self._subscriptions: dict[str, set[LocalSubscription]] = {}

    async def publish(self, event: ChangeEvent) -> None:
        for subscription in list(self._subscriptions.get(event.job_id, ())):
            subscription.queue.put_nowait(event)

    async def subscribe(self, job_id: str) -> Subscription:
        subscription = LocalSubscription(self, job_id)
        self._subscriptions.setdefault(job_id, set()).add(subscription)
        return subscription

    def subscriber_count(self, job_id: str) -> int:
        return len(self._subscriptions.get(job_id, ()))

    def _detach(self, subscription: LocalSubscription) -> None:
        subscribers = self._subscriptions.get(subscription.job_id)
        if subscribers is None:
            return
        subscribers.discard(subscription)
        if not subscribers:
            del self._subscriptions[subscription.job_id]


# ==================== Redis pub/sub ==================== #
class RedisSubscription(Subscription):
    def __init__(self, pubsub, channel: str):
        self.pubsub = pubsub
        self.channel = channel

    async def next_event(self) -> ChangeEvent:
        while True:
            message = await self.pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
            if message is None or message.get("type") != "message":
                continue
            try:
                return ChangeEvent.from_json(message["data"])
            except (ValueError, KeyError) as exc:
                logger.warning(f"Ignoring malformed change event on {self.channel}: {exc}")

    async def close(self) -> None:
        try:
            await self.pubsub.unsubscribe(self.channel)
        finally:
            await self.pubsub.aclose()


class RedisChangeFeed(ChangeFeed):
    """Feed over Redis pub/sub, one channel per job id."""

    def __init__(self, redis_url: Optional[str] = None, client: Optional[Redis] = None):
        if client is None and not redis_url:
            raise ValueError("redis_url or client is required")
        self.redis = client or from_url(redis_url, encoding="utf-8", decode_responses=True)

    async def publish(self, event: ChangeEvent) -> None:
        await self.redis.publish(channel_for(event.job_id), event.to_json())

    async def subscribe(self, job_id: str) -> Subscription:
        pubsub = self.redis.pubsub()
        channel = channel_for(job_id)
        await pubsub.subscribe(channel)
        return RedisSubscription(pubsub, channel)

    async def close(self) -> None:
        await self.redis.aclose()
        logger.info("Redis change feed closed")
