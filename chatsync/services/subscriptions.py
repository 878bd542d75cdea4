import logging
from typing import Callable, List, Optional

from chatsync.utils.change_feed import ChangeFeed, FeedCallback, FeedHealth, FeedScope, Subscription


logger = logging.getLogger(__name__)

# ("directory" | "messages", new health)
HealthCallback = Callable[[str, FeedHealth], None]


class SubscriptionLifecycleManager:
    """Owns the feed subscriptions of one session.

    At most one directory subscription and one message subscription are live
    at any time. None of the methods suspend, so a switch from one
    conversation to another has no window where both are registered.
    """

    def __init__(self, feed: ChangeFeed) -> None:
        self._feed = feed
        self._directory: Optional[Subscription] = None
        self._messages: Optional[Subscription] = None
        self._health_listeners: List[HealthCallback] = []

    @property
    def directory(self) -> Optional[Subscription]:
        return self._directory

    @property
    def messages(self) -> Optional[Subscription]:
        return self._messages

    @property
    def directory_health(self) -> FeedHealth:
        return self._directory.health if self._directory else FeedHealth.CLOSED

    @property
    def message_health(self) -> FeedHealth:
        return self._messages.health if self._messages else FeedHealth.CLOSED

    def watch_health(self, listener: HealthCallback) -> None:
        self._health_listeners.append(listener)

    def watch_directory(self, user_id: str, callback: FeedCallback) -> Subscription:
        self.cancel_directory()
        self._directory = self._feed.subscribe(FeedScope.conversations(user_id), callback)
        self._track("directory", self._directory)
        return self._directory

    def watch_messages(self, conversation_id: str, callback: FeedCallback) -> Subscription:
        # cancel-old-then-create-new, with no await in between
        self.cancel_messages()
        self._messages = self._feed.subscribe(FeedScope.messages(conversation_id), callback)
        self._track("messages", self._messages)
        logger.debug("Message subscription switched to %s", conversation_id)
        return self._messages

    def cancel_directory(self) -> None:
        sub, self._directory = self._directory, None
        _cancel_quietly(sub)

    def cancel_messages(self) -> None:
        sub, self._messages = self._messages, None
        _cancel_quietly(sub)

    def close_all(self) -> None:
        self.cancel_messages()
        self.cancel_directory()

    def _track(self, kind: str, sub: Subscription) -> None:
        def notify(health: FeedHealth) -> None:
            if health is FeedHealth.DEGRADED:
                logger.warning("%s feed %s degraded", kind, sub.scope.channel)
            for listener in list(self._health_listeners):
                listener(kind, health)

        sub.watch_health(notify)
        notify(sub.health)


def _cancel_quietly(sub: Optional[Subscription]) -> None:
    if sub is None:
        return
    try:
        sub.cancel()
    except Exception:
        # transport may already be gone; cancelling is best effort
        logger.warning("Cancelling subscription %s failed", sub.scope.channel, exc_info=True)
