import asyncio
import logging
from typing import Dict, Iterable, Optional, Union

from chatsync.config import Settings
from chatsync.errors import AuthenticationRequired
from chatsync.models.conversation import Conversation
from chatsync.models.message import DurableMessage, MediaAttachment, MessageType, PendingMessage
from chatsync.services.directory import ConversationDirectory
from chatsync.services.gateway import PersistenceGateway
from chatsync.services.profiles import ProfileCache
from chatsync.services.subscriptions import SubscriptionLifecycleManager
from chatsync.services.synchronizer import MessageSynchronizer
from chatsync.utils.change_feed import ChangeFeed, FeedHealth
from chatsync.utils.observable import ObservableList


logger = logging.getLogger(__name__)


class ChatSession:
    """Everything one signed-in user needs to chat.

    The UI drives it through ``open_conversation``, ``close_conversation``,
    ``send_message`` and ``mark_conversation_read`` and subscribes to the
    ``current_messages`` and ``conversation_list`` views.
    """

    def __init__(
        self,
        user_id: Optional[str],
        gateway: PersistenceGateway,
        feed: ChangeFeed,
        settings: Optional[Settings] = None,
    ) -> None:
        if not user_id:
            raise AuthenticationRequired()
        settings = settings or Settings()
        self.user_id = user_id
        self.subscriptions = SubscriptionLifecycleManager(feed)
        self.directory = ConversationDirectory(
            user_id,
            gateway,
            self.subscriptions,
            debounce=settings.directory_refresh_debounce,
        )
        self.synchronizer = MessageSynchronizer(
            user_id,
            gateway,
            self.subscriptions,
            on_read=self.directory.schedule_refresh,
        )
        self.profiles = ProfileCache(gateway, max_size=settings.profile_cache_size)
        self._closed = False

    @property
    def current_messages(self) -> ObservableList[Union[DurableMessage, PendingMessage]]:
        return self.synchronizer.messages

    @property
    def conversation_list(self) -> ObservableList[Conversation]:
        return self.directory.conversations

    @property
    def open_conversation_id(self) -> Optional[str]:
        return self.synchronizer.conversation_id

    @property
    def feed_health(self) -> Dict[str, FeedHealth]:
        return {
            "directory": self.subscriptions.directory_health,
            "messages": self.subscriptions.message_health,
        }

    def _require_open(self) -> None:
        if self._closed:
            raise AuthenticationRequired("Session has ended")

    async def start(self) -> None:
        self._require_open()
        await self.directory.start()
        logger.info("Session for %s started with %d conversations", self.user_id, len(self.conversation_list))

    async def open_conversation(self, conversation_id: str) -> bool:
        self._require_open()
        return await self.synchronizer.open(conversation_id)

    def close_conversation(self) -> None:
        self.synchronizer.close()

    async def send_message(
        self,
        content: str,
        type: MessageType = MessageType.TEXT,
        media: Optional[MediaAttachment] = None,
    ) -> bool:
        self._require_open()
        return await self.synchronizer.send(content, type, media)

    async def mark_conversation_read(self) -> bool:
        self._require_open()
        return await self.synchronizer.mark_read()

    async def edit_message(self, message_id: str, content: str) -> bool:
        self._require_open()
        return await self.synchronizer.edit(message_id, content)

    async def delete_message(self, message_id: str) -> bool:
        self._require_open()
        return await self.synchronizer.delete(message_id)

    async def load_earlier(self, limit: int = 50) -> int:
        self._require_open()
        return await self.synchronizer.load_earlier(limit)

    async def start_direct_chat(self, other_user_id: str) -> Optional[Conversation]:
        self._require_open()
        return await self.directory.start_direct_chat(other_user_id)

    async def create_group(self, participant_ids: Iterable[str], name: Optional[str] = None) -> Optional[Conversation]:
        self._require_open()
        return await self.directory.create_group(participant_ids, name)

    def unread_count(self, conversation_id: str) -> int:
        return self.directory.unread_count(conversation_id)

    async def settle(self) -> None:
        """Wait until background read receipts and directory refreshes are done."""
        quiet = 0
        while quiet < 2:
            await asyncio.sleep(0)
            if self.synchronizer.busy or self.directory.busy:
                quiet = 0
                await self.synchronizer.wait_idle()
                await self.directory.wait_idle()
            else:
                quiet += 1

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.synchronizer.close()
        # read receipts in flight may still schedule a directory refresh
        await self.synchronizer.wait_idle()
        self.directory.stop()
        self.subscriptions.close_all()
        self.profiles.clear()
        logger.info("Session for %s closed", self.user_id)
