"""Conversation directory of the signed-in user.

The list is re-read wholesale whenever the feed reports a message insert in
one of the user's conversations or a new membership. Triggers that arrive
while a refresh is pending or running collapse into one follow-up read, so a
burst of messages costs at most two list queries.
"""
import asyncio
import logging
from enum import Enum
from typing import Dict, Iterable, Optional

from chatsync.errors import PersistenceFailure
from chatsync.models.conversation import Conversation
from chatsync.services.gateway import PersistenceGateway
from chatsync.services.subscriptions import SubscriptionLifecycleManager
from chatsync.utils.change_feed import EntityKind, EventKind, FeedEvent
from chatsync.utils.observable import ObservableList


logger = logging.getLogger(__name__)


class DirectoryState(str, Enum):

    LOADING = "loading"
    READY = "ready"


class ConversationDirectory:

    def __init__(
        self,
        user_id: str,
        gateway: PersistenceGateway,
        subscriptions: SubscriptionLifecycleManager,
        debounce: float = 0.05,
    ) -> None:
        self._user_id = user_id
        self._gateway = gateway
        self._subscriptions = subscriptions
        self._debounce = debounce
        self._unread: Dict[str, int] = {}
        self._refresh_task: Optional[asyncio.Task] = None
        self._dirty = False
        self.state = DirectoryState.LOADING
        self.conversations: ObservableList[Conversation] = ObservableList()

    async def start(self) -> None:
        """Initial read, then go live on the user's directory scope."""
        await self.refresh()
        self._subscriptions.watch_directory(self._user_id, self._on_event)

    def stop(self) -> None:
        self._subscriptions.cancel_directory()
        self._dirty = False
        if self._refresh_task is not None and not self._refresh_task.done():
            self._refresh_task.cancel()
        self._refresh_task = None

    async def refresh(self) -> bool:
        try:
            items = await self._gateway.list_conversations(self._user_id)
            counts = await asyncio.gather(*(self._gateway.count_unread(c.id, self._user_id) for c in items))
        except PersistenceFailure as exc:
            # keep showing the previous list
            logger.warning("Refreshing conversations of %s failed: %s", self._user_id, exc)
            return False
        self._unread = {c.id: n for c, n in zip(items, counts)}
        self.conversations.replace(sorted(items, key=lambda c: (c.updated_at, c.id), reverse=True))
        self.state = DirectoryState.READY
        return True

    def schedule_refresh(self, *_args) -> None:
        if self._refresh_task is not None and not self._refresh_task.done():
            self._dirty = True
            return
        self._dirty = False
        self._refresh_task = asyncio.get_running_loop().create_task(self._run_refresh())

    async def _run_refresh(self) -> None:
        while True:
            if self._debounce:
                await asyncio.sleep(self._debounce)
            self._dirty = False
            await self.refresh()
            if not self._dirty:
                return

    @property
    def busy(self) -> bool:
        return self._refresh_task is not None and not self._refresh_task.done()

    async def wait_idle(self) -> None:
        while self._refresh_task is not None and not self._refresh_task.done():
            await asyncio.gather(self._refresh_task, return_exceptions=True)

    def _on_event(self, event: FeedEvent) -> None:
        if event.kind is not EventKind.INSERT:
            return
        if event.entity is EntityKind.MESSAGE or (
            event.entity is EntityKind.PARTICIPANT and event.user_id == self._user_id
        ):
            self.schedule_refresh()

    def get(self, conversation_id: str) -> Optional[Conversation]:
        for conversation in self.conversations:
            if conversation.id == conversation_id:
                return conversation
        return None

    def unread_count(self, conversation_id: str) -> int:
        return self._unread.get(conversation_id, 0)

    @property
    def total_unread(self) -> int:
        return sum(self._unread.values())

    async def start_direct_chat(self, other_user_id: str) -> Optional[Conversation]:
        try:
            conversation = await self._gateway.get_or_create_direct_conversation(self._user_id, other_user_id)
        except PersistenceFailure as exc:
            logger.warning("Starting a chat with %s failed: %s", other_user_id, exc)
            return None
        await self.refresh()
        return conversation

    async def create_group(self, participant_ids: Iterable[str], name: Optional[str] = None) -> Optional[Conversation]:
        try:
            conversation = await self._gateway.create_group_conversation(self._user_id, list(participant_ids), name)
        except PersistenceFailure as exc:
            logger.warning("Creating group %r failed: %s", name, exc)
            return None
        await self.refresh()
        return conversation

    def unread_counts(self) -> Dict[str, int]:
        return dict(self._unread)
