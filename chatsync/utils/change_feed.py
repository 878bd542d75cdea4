"""Change feed contract.

A feed delivers insert/update notifications for one scope: either one user's
conversations or one conversation's messages. There is no implicit snapshot,
callers read the current state first and must tolerate events for entities
they already hold. Delivery is at least once and ordered per entity only.

Each subscription tracks its own connection health so the UI can tell a live
feed from one that silently died.
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import Callable, Dict, List, Literal, Optional, Set

from pydantic import BaseModel, ConfigDict

from chatsync.models.message import DurableMessage


logger = logging.getLogger(__name__)


class FeedHealth(str, Enum):

    CONNECTING = "connecting"
    LIVE = "live"
    DEGRADED = "degraded"
    CLOSED = "closed"


class EventKind(str, Enum):

    INSERT = "insert"
    UPDATE = "update"


class EntityKind(str, Enum):

    MESSAGE = "message"
    CONVERSATION = "conversation"
    PARTICIPANT = "participant"


class FeedScope(BaseModel):

    model_config = ConfigDict(frozen=True)

    kind: Literal["conversations", "messages"]
    key: str

    @classmethod
    def conversations(cls, user_id: str) -> "FeedScope":
        return cls(kind="conversations", key=user_id)

    @classmethod
    def messages(cls, conversation_id: str) -> "FeedScope":
        return cls(kind="messages", key=conversation_id)

    @property
    def channel(self) -> str:
        if self.kind == "conversations":
            return f"user:{self.key}"
        return f"messages:{self.key}"


class FeedEvent(BaseModel):

    model_config = ConfigDict(frozen=True)

    kind: EventKind
    entity: EntityKind
    conversation_id: str
    message: Optional[DurableMessage] = None
    # participant events: the user who joined
    user_id: Optional[str] = None


FeedCallback = Callable[[FeedEvent], None]
HealthListener = Callable[[FeedHealth], None]


class Subscription:
    """One registration on a feed.

    ``cancel`` is synchronous, idempotent and never raises; once it returns no
    further callback runs, including deliveries already in flight.
    """

    def __init__(self, scope: FeedScope, callback: FeedCallback) -> None:
        self.scope = scope
        self._callback = callback
        self._health = FeedHealth.CONNECTING
        self._health_listeners: List[HealthListener] = []

    @property
    def health(self) -> FeedHealth:
        return self._health

    @property
    def closed(self) -> bool:
        return self._health is FeedHealth.CLOSED

    def watch_health(self, listener: HealthListener) -> Callable[[], None]:
        self._health_listeners.append(listener)

        def unwatch() -> None:
            if listener in self._health_listeners:
                self._health_listeners.remove(listener)

        return unwatch

    def deliver(self, event: FeedEvent) -> None:
        if self.closed:
            return
        try:
            self._callback(event)
        except Exception:
            # a faulty consumer must not take the transport down with it
            logger.exception("Feed callback for %s failed on %s event", self.scope.channel, event.kind.value)

    def cancel(self) -> None:
        if self.closed:
            return
        self._set_health(FeedHealth.CLOSED)
        try:
            self._release()
        except Exception:
            logger.warning("Releasing subscription %s failed", self.scope.channel, exc_info=True)

    def _release(self) -> None:
        """Free transport resources. Called once, from ``cancel``."""

    def _set_health(self, health: FeedHealth) -> None:
        if self._health is health or self._health is FeedHealth.CLOSED:
            return
        logger.debug("Subscription %s: %s -> %s", self.scope.channel, self._health.value, health.value)
        self._health = health
        for listener in list(self._health_listeners):
            try:
                listener(health)
            except Exception:
                logger.exception("Health listener for %s failed", self.scope.channel)


class ChangeFeed(ABC):

    @abstractmethod
    def subscribe(self, scope: FeedScope, callback: FeedCallback) -> Subscription:
        """Register ``callback`` for events in ``scope``. Never suspends."""

    @abstractmethod
    async def publish(self, scope: FeedScope, event: FeedEvent) -> None:
        """Announce a durable change. Used by gateways after each write."""

    async def aclose(self) -> None:
        return


class _LocalSubscription(Subscription):

    def __init__(self, feed: "InMemoryChangeFeed", scope: FeedScope, callback: FeedCallback) -> None:
        super().__init__(scope, callback)
        self._feed = feed

    def _release(self) -> None:
        self._feed._detach(self)


class InMemoryChangeFeed(ChangeFeed):
    """Process-local feed.

    Events are handed to subscribers on the next loop iteration, the way a
    network push would arrive, unless ``inline`` is set.
    """

    def __init__(self, inline: bool = False) -> None:
        self._inline = inline
        self._subscribers: Dict[str, Set[_LocalSubscription]] = {}
        self._connected = True

    def subscribe(self, scope: FeedScope, callback: FeedCallback) -> Subscription:
        sub = _LocalSubscription(self, scope, callback)
        self._subscribers.setdefault(scope.channel, set()).add(sub)
        sub._set_health(FeedHealth.LIVE if self._connected else FeedHealth.DEGRADED)
        return sub

    async def publish(self, scope: FeedScope, event: FeedEvent) -> None:
        self.publish_nowait(scope, event)

    def publish_nowait(self, scope: FeedScope, event: FeedEvent) -> None:
        if not self._connected:
            return
        for sub in list(self._subscribers.get(scope.channel, ())):
            if self._inline:
                sub.deliver(event)
            else:
                asyncio.get_running_loop().call_soon(sub.deliver, event)

    def subscriber_count(self, scope: Optional[FeedScope] = None) -> int:
        if scope is not None:
            return len(self._subscribers.get(scope.channel, ()))
        return sum(len(subs) for subs in self._subscribers.values())

    def disconnect(self) -> None:
        """Drop the transport; live subscriptions become degraded and miss events."""
        self._connected = False
        for subs in self._subscribers.values():
            for sub in list(subs):
                sub._set_health(FeedHealth.DEGRADED)

    def reconnect(self) -> None:
        self._connected = True
        for subs in self._subscribers.values():
            for sub in list(subs):
                sub._set_health(FeedHealth.LIVE)

    def _detach(self, sub: _LocalSubscription) -> None:
        subs = self._subscribers.get(sub.scope.channel)
        if subs is None:
            return
        subs.discard(sub)
        if not subs:
            del self._subscribers[sub.scope.channel]
