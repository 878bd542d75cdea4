import asyncio
import logging
from typing import Optional

import redis.asyncio as redis
from pydantic import ValidationError
from redis.exceptions import RedisError

from chatsync.utils.change_feed import (
    ChangeFeed,
    FeedCallback,
    FeedEvent,
    FeedHealth,
    FeedScope,
    Subscription,
)


logger = logging.getLogger(__name__)


class _RedisSubscription(Subscription):

    def __init__(
        self,
        client: "redis.Redis",
        scope: FeedScope,
        callback: FeedCallback,
        poll_timeout: float,
        retry_delay: float,
    ) -> None:
        super().__init__(scope, callback)
        self._redis = client
        self._poll_timeout = poll_timeout
        self._retry_delay = retry_delay
        self._task: Optional[asyncio.Task] = None

    def start(self) -> None:
        self._task = asyncio.get_running_loop().create_task(self._run())

    async def _run(self) -> None:
        pubsub = self._redis.pubsub()
        subscribed = False
        try:
            while not self.closed:
                try:
                    if not subscribed:
                        await pubsub.subscribe(self.scope.channel)
                        subscribed = True
                    msg = await pubsub.get_message(ignore_subscribe_messages=True, timeout=self._poll_timeout)
                    self._set_health(FeedHealth.LIVE)
                    if msg and msg.get("type") == "message":
                        self._dispatch(msg.get("data"))
                except (RedisError, OSError):
                    logger.warning("Feed %s lost its connection, retrying", self.scope.channel, exc_info=True)
                    self._set_health(FeedHealth.DEGRADED)
                    await asyncio.sleep(self._retry_delay)
        finally:
            try:
                if subscribed:
                    await pubsub.unsubscribe(self.scope.channel)
                await pubsub.aclose()
            except (RedisError, OSError):
                logger.debug("Unsubscribe from %s failed", self.scope.channel, exc_info=True)

    def _dispatch(self, data) -> None:
        if isinstance(data, bytes):
            data = data.decode("utf-8")
        try:
            event = FeedEvent.model_validate_json(data)
        except ValidationError:
            logger.warning("Dropping malformed event on %s", self.scope.channel, exc_info=True)
            return
        self.deliver(event)

    def _release(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()


class RedisChangeFeed(ChangeFeed):
    """Change feed over Redis pub/sub.

    Gateways publish every durable write to ``messages:{conversation_id}`` and
    ``user:{user_id}``; subscribers listen on one channel each.
    """

    def __init__(self, client: "redis.Redis", poll_timeout: float = 1.0, retry_delay: float = 0.5) -> None:
        self._redis = client
        self._poll_timeout = poll_timeout
        self._retry_delay = retry_delay

    @classmethod
    def from_url(cls, url: str, **kwargs) -> "RedisChangeFeed":
        return cls(redis.from_url(url), **kwargs)

    def subscribe(self, scope: FeedScope, callback: FeedCallback) -> Subscription:
        sub = _RedisSubscription(self._redis, scope, callback, self._poll_timeout, self._retry_delay)
        sub.start()
        return sub

    async def publish(self, scope: FeedScope, event: FeedEvent) -> None:
        await self._redis.publish(scope.channel, event.model_dump_json())

    async def aclose(self) -> None:
        await self._redis.aclose()
