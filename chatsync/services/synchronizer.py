"""Local message log of the one open conversation.

Three writers feed the log: optimistic sends, gateway confirmations and the
change feed. They interleave freely, so every path checks the log before it
writes:

* feed inserts are dropped when the durable id is already present;
* a feed insert carrying the idempotency key of a pending placeholder takes
  that placeholder's slot, and the confirmation arriving later finds nothing
  left to do (and the other way around);
* results for a conversation that is no longer open are dropped.

Durable entries are kept in (created_at, id) order. Pending placeholders hold
their slot until confirmed, so the user's own in-flight message never jumps
around because of client clock skew.
"""
import asyncio
import logging
from datetime import datetime
from enum import Enum
from typing import Callable, List, Optional, Set, Union

from chatsync.errors import AnomalousUpdate, AuthenticationRequired, ChatSyncError, PersistenceFailure
from chatsync.models.message import (
    DurableMessage,
    MediaAttachment,
    MessageType,
    PendingMessage,
    message_sort_key,
)
from chatsync.services.gateway import PersistenceGateway
from chatsync.services.subscriptions import SubscriptionLifecycleManager
from chatsync.utils.change_feed import EntityKind, EventKind, FeedEvent
from chatsync.utils.observable import ObservableList


logger = logging.getLogger(__name__)

LogEntry = Union[DurableMessage, PendingMessage]


class SyncState(str, Enum):

    IDLE = "idle"
    LOADING = "loading"
    LOAD_FAILED = "load_failed"
    LIVE = "live"


class MessageSynchronizer:

    def __init__(
        self,
        user_id: str,
        gateway: PersistenceGateway,
        subscriptions: SubscriptionLifecycleManager,
        on_read: Optional[Callable[[str], None]] = None,
    ) -> None:
        self._user_id = user_id
        self._gateway = gateway
        self._subscriptions = subscriptions
        self._on_read = on_read
        self._log: List[LogEntry] = []
        # bumped on every open/close; async results from an older generation are stale
        self._generation = 0
        # bumped on every open() call, so a later open wins over one still checking membership
        self._opening = 0
        self._background: Set[asyncio.Task] = set()
        self.state = SyncState.IDLE
        self.conversation_id: Optional[str] = None
        self.last_error: Optional[ChatSyncError] = None
        self.messages: ObservableList[LogEntry] = ObservableList()

    def _publish(self) -> None:
        self.messages.replace(self._log)

    def _is_current(self, conversation_id: str, generation: int) -> bool:
        return self._generation == generation and self.conversation_id == conversation_id

    async def open(self, conversation_id: str) -> bool:
        """Load and go live on ``conversation_id``.

        Raises ``NotParticipant`` before touching any state. Returns False when
        the history could not be loaded or another open superseded this one.
        """
        if self.conversation_id == conversation_id and self.state is SyncState.LIVE:
            return True
        self._opening += 1
        ticket, generation = self._opening, self._generation
        try:
            await self._gateway.get_conversation(conversation_id, self._user_id)
        except PersistenceFailure as exc:
            logger.warning("Could not open conversation %s: %s", conversation_id, exc)
            self.last_error = exc
            return False
        if self._opening != ticket or self._generation != generation:
            logger.debug("Open of %s superseded before it was admitted", conversation_id)
            return False

        self._generation += 1
        generation = self._generation
        self._subscriptions.cancel_messages()
        self.conversation_id = conversation_id
        self.state = SyncState.LOADING
        self.last_error = None
        self._log = []
        self._publish()

        try:
            history = await self._gateway.list_messages(conversation_id)
        except PersistenceFailure as exc:
            if self._is_current(conversation_id, generation):
                logger.warning("Loading conversation %s failed: %s", conversation_id, exc)
                self.state = SyncState.LOAD_FAILED
                self.last_error = exc
            return False
        if not self._is_current(conversation_id, generation):
            logger.debug("Dropping history of %s, another conversation was opened", conversation_id)
            return False

        self._log = sorted(history, key=message_sort_key)
        self._publish()
        self._spawn(self._mark_read(conversation_id, generation))
        self._subscriptions.watch_messages(conversation_id, self._on_event)
        self.state = SyncState.LIVE
        logger.info("Conversation %s live with %d messages", conversation_id, len(self._log))
        return True

    def close(self) -> None:
        self._generation += 1
        self._subscriptions.cancel_messages()
        if self.conversation_id is not None:
            logger.debug("Closed conversation %s", self.conversation_id)
        self.conversation_id = None
        self.state = SyncState.IDLE
        self._log = []
        self._publish()

    async def send(
        self,
        content: str,
        type: MessageType = MessageType.TEXT,
        media: Optional[MediaAttachment] = None,
    ) -> bool:
        content = (content or "").strip()
        if not content and media is None:
            raise ValueError("Message content cannot be empty")
        if self.state is not SyncState.LIVE or self.conversation_id is None:
            logger.warning("send() ignored, no live conversation")
            return False

        conversation_id, generation = self.conversation_id, self._generation
        placeholder = PendingMessage.compose(conversation_id, self._user_id, content, type, media)
        self._log.append(placeholder)
        self._publish()

        try:
            durable = await self._gateway.create_message(
                conversation_id,
                self._user_id,
                content,
                type,
                media,
                idempotency_key=placeholder.local_id,
            )
        except AuthenticationRequired:
            self._drop(placeholder, conversation_id, generation)
            raise
        except ChatSyncError as exc:
            logger.warning("Sending to %s failed: %s", conversation_id, exc)
            self._drop(placeholder, conversation_id, generation)
            self.last_error = exc
            return False

        self._confirm(placeholder, durable, generation)
        return True

    async def mark_read(self) -> bool:
        if self.state is not SyncState.LIVE or self.conversation_id is None:
            return False
        return await self._mark_read(self.conversation_id, self._generation)

    async def edit(self, message_id: str, content: str) -> bool:
        content = (content or "").strip()
        if not content:
            raise ValueError("Message content cannot be empty")
        return await self._rewrite(message_id, lambda: self._gateway.edit_message(message_id, self._user_id, content))

    async def delete(self, message_id: str) -> bool:
        return await self._rewrite(message_id, lambda: self._gateway.delete_message(message_id, self._user_id))

    async def load_earlier(self, limit: int = 50) -> int:
        """Prepend up to ``limit`` messages older than the oldest one held. Returns how many were added."""
        if self.state is not SyncState.LIVE or self.conversation_id is None:
            return 0
        conversation_id, generation = self.conversation_id, self._generation
        durable = [e for e in self._log if isinstance(e, DurableMessage)]
        before = durable[0].created_at if durable else None
        try:
            older = await self._gateway.list_messages(conversation_id, limit=limit, before=before)
        except PersistenceFailure as exc:
            logger.warning("Loading earlier messages of %s failed: %s", conversation_id, exc)
            self.last_error = exc
            return 0
        if not self._is_current(conversation_id, generation):
            return 0
        fresh = [m for m in older if self._durable_index(m.id) is None]
        if fresh:
            self._log = fresh + self._log
            self._sort_durable()
            self._publish()
        return len(fresh)

    @property
    def busy(self) -> bool:
        return bool(self._background)

    async def wait_idle(self) -> None:
        """Wait for fire-and-forget work (read receipts) to settle."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def aclose(self) -> None:
        self.close()
        await self.wait_idle()

    def _on_event(self, event: FeedEvent) -> None:
        if event.entity is not EntityKind.MESSAGE or event.message is None:
            return
        if self.state is not SyncState.LIVE or event.conversation_id != self.conversation_id:
            logger.debug("Dropping event for %s, not the open conversation", event.conversation_id)
            return
        if event.kind is EventKind.INSERT:
            self._apply_insert(event.message)
        else:
            self._apply_update(event.message)

    def _apply_insert(self, message: DurableMessage) -> None:
        if self._durable_index(message.id) is not None:
            return
        slot = None
        if message.sender_id == self._user_id and message.client_message_id:
            slot = self._pending_index(message.client_message_id)
        if slot is not None:
            self._log[slot] = message
        else:
            self._log.append(message)
            self._sort_durable()
        self._publish()
        if message.sender_id != self._user_id:
            # a new message while the conversation is open has been seen
            self._spawn(self._mark_read(message.conversation_id, self._generation))

    def _apply_update(self, message: DurableMessage) -> None:
        index = self._durable_index(message.id)
        if index is None:
            logger.warning("%s", AnomalousUpdate(message.conversation_id, message.id))
            return
        self._log[index] = _merge(self._log[index], message)
        self._publish()

    def _confirm(self, placeholder: PendingMessage, durable: DurableMessage, generation: int) -> None:
        if not self._is_current(durable.conversation_id, generation):
            return
        slot = self._pending_index(placeholder.local_id)
        if self._durable_index(durable.id) is not None:
            # the feed got here first and already took the slot
            if slot is not None:
                del self._log[slot]
        elif slot is not None:
            self._log[slot] = durable
        else:
            self._log.append(durable)
            self._sort_durable()
        self._publish()

    def _drop(self, placeholder: PendingMessage, conversation_id: str, generation: int) -> None:
        if not self._is_current(conversation_id, generation):
            return
        slot = self._pending_index(placeholder.local_id)
        if slot is not None:
            del self._log[slot]
            self._publish()

    async def _mark_read(self, conversation_id: str, generation: int) -> bool:
        # also runs as a background task, so nothing may escape from here
        try:
            read_at = await self._gateway.mark_read(conversation_id, self._user_id)
        except ChatSyncError as exc:
            logger.warning("Marking %s read failed: %s", conversation_id, exc)
            return False
        if read_at is not None and self._is_current(conversation_id, generation):
            self._apply_local_read(read_at)
        if self._on_read is not None:
            self._on_read(conversation_id)
        return True

    def _apply_local_read(self, read_at: datetime) -> None:
        # same stamp the store wrote, so the feed's update events merge without a change
        changed = False
        for index, entry in enumerate(self._log):
            if not isinstance(entry, DurableMessage) or entry.sender_id == self._user_id:
                continue
            if entry.created_at <= read_at and not entry.is_read_by(self._user_id):
                self._log[index] = entry.model_copy(update={"read_by": dict(entry.read_by, **{self._user_id: read_at})})
                changed = True
        if changed:
            self._publish()

    async def _rewrite(self, message_id: str, call) -> bool:
        if self.state is not SyncState.LIVE or self.conversation_id is None:
            return False
        conversation_id, generation = self.conversation_id, self._generation
        try:
            updated = await call()
        except PersistenceFailure as exc:
            logger.warning("Changing message %s failed: %s", message_id, exc)
            self.last_error = exc
            return False
        if self._is_current(conversation_id, generation):
            self._apply_update(updated)
        return True

    def _durable_index(self, message_id: str) -> Optional[int]:
        for index, entry in enumerate(self._log):
            if isinstance(entry, DurableMessage) and entry.id == message_id:
                return index
        return None

    def _pending_index(self, local_id: str) -> Optional[int]:
        for index, entry in enumerate(self._log):
            if isinstance(entry, PendingMessage) and entry.local_id == local_id:
                return index
        return None

    def _sort_durable(self) -> None:
        # placeholders keep their slots; durable entries are ordered among the rest
        slots = [i for i, entry in enumerate(self._log) if isinstance(entry, DurableMessage)]
        ordered = sorted((self._log[i] for i in slots), key=message_sort_key)
        for index, entry in zip(slots, ordered):
            self._log[index] = entry

    def _spawn(self, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)


def _merge(current: DurableMessage, incoming: DurableMessage) -> DurableMessage:
    receipts = {
        "read_by": {**current.read_by, **incoming.read_by},
        "delivered_to": {**current.delivered_to, **incoming.delivered_to},
    }
    stale = incoming.updated_at is not None and current.updated_at is not None and incoming.updated_at < current.updated_at
    if stale:
        return current.model_copy(update=receipts)
    return current.model_copy(
        update=dict(
            receipts,
            content=incoming.content,
            type=incoming.type,
            media=incoming.media,
            is_edited=incoming.is_edited,
            updated_at=incoming.updated_at,
        )
    )
