"""In-process store and gateway.

Same contract as the Mongo gateway, kept in dictionaries. Failures can be
injected per operation to exercise rollback and retry paths.
"""
import logging
from collections import defaultdict, deque
from datetime import datetime
from typing import Callable, Deque, Dict, Iterable, List, Optional, Tuple

from bson import ObjectId

from chatsync.errors import NotParticipant, PersistenceFailure
from chatsync.models.conversation import Conversation, LastMessagePreview, ParticipantState
from chatsync.models.message import DELETED_CONTENT, DurableMessage, MediaAttachment, MessageType, message_sort_key, utcnow
from chatsync.models.user import User
from chatsync.services.gateway import PersistenceGateway, check_direct_pair, group_members, message_scopes
from chatsync.utils.change_feed import EntityKind, EventKind, FeedEvent, FeedScope, InMemoryChangeFeed


logger = logging.getLogger(__name__)


class InMemoryStore:

    def __init__(self, clock: Callable[[], datetime] = utcnow) -> None:
        self.clock = clock
        self.conversations: Dict[str, Conversation] = {}
        self.messages: Dict[str, DurableMessage] = {}
        self.participants: Dict[Tuple[str, str], ParticipantState] = {}
        self.users: Dict[str, User] = {}
        self.client_keys: Dict[str, str] = {}

    def add_user(self, user_id: str, display_name: str = "") -> User:
        user = User(id=user_id, display_name=display_name or user_id)
        self.users[user_id] = user
        return user

    def conversation_messages(self, conversation_id: str) -> List[DurableMessage]:
        items = [m for m in self.messages.values() if m.conversation_id == conversation_id]
        return sorted(items, key=message_sort_key)

    def participant(self, conversation_id: str, user_id: str) -> Optional[ParticipantState]:
        return self.participants.get((conversation_id, user_id))

    def new_id(self) -> str:
        return str(ObjectId())


class InMemoryGateway(PersistenceGateway):

    def __init__(self, store: InMemoryStore, feed: InMemoryChangeFeed) -> None:
        self.store = store
        self._feed = feed
        self._failures: Dict[str, Deque[PersistenceFailure]] = defaultdict(deque)
        self.calls: List[str] = []

    def fail_next(self, operation: str, transient: bool = False, times: int = 1) -> None:
        for _ in range(times):
            self._failures[operation].append(PersistenceFailure(operation, "injected failure", transient=transient))

    def _enter(self, operation: str) -> None:
        self.calls.append(operation)
        if self._failures[operation]:
            raise self._failures[operation].popleft()

    async def list_conversations(self, user_id: str) -> List[Conversation]:
        self._enter("list_conversations")
        items = [c for c in self.store.conversations.values() if c.has_participant(user_id)]
        return sorted(items, key=lambda c: (c.updated_at, c.id), reverse=True)

    async def get_conversation(self, conversation_id: str, user_id: str) -> Conversation:
        self._enter("get_conversation")
        return self._member_of(conversation_id, user_id)

    async def get_or_create_direct_conversation(self, user_id: str, other_user_id: str) -> Conversation:
        self._enter("get_or_create_direct_conversation")
        check_direct_pair(user_id, other_user_id)
        pair = frozenset((user_id, other_user_id))
        for conversation in self.store.conversations.values():
            if not conversation.is_group and conversation.participant_ids == pair:
                return conversation
        return self._create(pair, created_by=user_id, is_group=False)

    async def create_group_conversation(self, creator_id: str, participant_ids: Iterable[str], name: Optional[str] = None) -> Conversation:
        self._enter("create_group_conversation")
        members = group_members(creator_id, participant_ids)
        return self._create(frozenset(members), created_by=creator_id, is_group=True, name=name)

    async def list_messages(
        self,
        conversation_id: str,
        *,
        limit: Optional[int] = None,
        before: Optional[datetime] = None,
    ) -> List[DurableMessage]:
        self._enter("list_messages")
        items = self.store.conversation_messages(conversation_id)
        if before is not None:
            items = [m for m in items if m.created_at < before]
        if limit:
            items = items[-limit:]
        return items

    async def create_message(
        self,
        conversation_id: str,
        sender_id: str,
        content: str,
        type: MessageType = MessageType.TEXT,
        media: Optional[MediaAttachment] = None,
        *,
        idempotency_key: Optional[str] = None,
    ) -> DurableMessage:
        self._enter("create_message")
        conversation = self._member_of(conversation_id, sender_id)
        if idempotency_key and idempotency_key in self.store.client_keys:
            return self.store.messages[self.store.client_keys[idempotency_key]]
        now = self.store.clock()
        message = DurableMessage(
            id=self.store.new_id(),
            conversation_id=conversation_id,
            sender_id=sender_id,
            content=content,
            type=type,
            media=media,
            created_at=now,
            updated_at=now,
            client_message_id=idempotency_key,
        )
        self.store.messages[message.id] = message
        if idempotency_key:
            self.store.client_keys[idempotency_key] = message.id
        previous = conversation.last_message
        if previous is None or previous.created_at <= now:
            self.store.conversations[conversation_id] = conversation.model_copy(
                update={
                    "last_message": LastMessagePreview.from_message(message),
                    "updated_at": max(conversation.updated_at, now),
                }
            )
        self._announce(
            message_scopes(conversation),
            FeedEvent(kind=EventKind.INSERT, entity=EntityKind.MESSAGE, conversation_id=conversation_id, message=message),
        )
        return message

    async def mark_read(self, conversation_id: str, user_id: str) -> Optional[datetime]:
        self._enter("mark_read")
        self._member_of(conversation_id, user_id)
        now = self.store.clock()
        stamped = None
        latest: Optional[DurableMessage] = None
        for message in self.store.conversation_messages(conversation_id):
            if message.sender_id == user_id:
                continue
            latest = message
            if message.is_read_by(user_id):
                continue
            updated = message.model_copy(update={"read_by": dict(message.read_by, **{user_id: now})})
            self.store.messages[message.id] = updated
            stamped = now
            self._announce(
                [FeedScope.messages(conversation_id)],
                FeedEvent(kind=EventKind.UPDATE, entity=EntityKind.MESSAGE, conversation_id=conversation_id, message=updated),
            )
        if latest is not None:
            state = self.store.participant(conversation_id, user_id) or ParticipantState(
                conversation_id=conversation_id, user_id=user_id, joined_at=now, last_read_at=latest.created_at
            )
            self.store.participants[(conversation_id, user_id)] = state.advance_read_cursor(latest.created_at)
        return stamped

    async def count_unread(self, conversation_id: str, user_id: str) -> int:
        self._enter("count_unread")
        state = self.store.participant(conversation_id, user_id)
        return sum(
            1
            for m in self.store.conversation_messages(conversation_id)
            if m.sender_id != user_id and (state is None or m.created_at > state.last_read_at)
        )

    async def edit_message(self, message_id: str, editor_id: str, content: str) -> DurableMessage:
        self._enter("edit_message")
        return self._rewrite("edit_message", message_id, editor_id, {"content": content, "is_edited": True})

    async def delete_message(self, message_id: str, user_id: str) -> DurableMessage:
        self._enter("delete_message")
        return self._rewrite(
            "delete_message",
            message_id,
            user_id,
            {"content": DELETED_CONTENT, "type": MessageType.SYSTEM, "media": None},
        )

    async def get_users(self, user_ids: Iterable[str]) -> List[User]:
        self._enter("get_users")
        return [self.store.users[u] for u in user_ids if u in self.store.users]

    def _member_of(self, conversation_id: str, user_id: str) -> Conversation:
        conversation = self.store.conversations.get(conversation_id)
        if conversation is None or not conversation.has_participant(user_id):
            raise NotParticipant(conversation_id, user_id)
        return conversation

    def _create(self, members: frozenset, created_by: str, is_group: bool, name: Optional[str] = None) -> Conversation:
        now = self.store.clock()
        conversation = Conversation(
            id=self.store.new_id(),
            is_group=is_group,
            participant_ids=members,
            name=name if is_group else None,
            created_by=created_by,
            created_at=now,
            updated_at=now,
        )
        self.store.conversations[conversation.id] = conversation
        for user_id in sorted(members):
            self.store.participants[(conversation.id, user_id)] = ParticipantState(
                conversation_id=conversation.id, user_id=user_id, joined_at=now, last_read_at=now
            )
            self._announce(
                [FeedScope.conversations(user_id)],
                FeedEvent(kind=EventKind.INSERT, entity=EntityKind.PARTICIPANT, conversation_id=conversation.id, user_id=user_id),
            )
        return conversation

    def _rewrite(self, operation: str, message_id: str, user_id: str, fields: dict) -> DurableMessage:
        message = self.store.messages.get(message_id)
        if message is None:
            raise PersistenceFailure(operation, f"message {message_id} not found")
        if message.sender_id != user_id:
            raise PersistenceFailure(operation, "only the sender may change a message")
        conversation = self._member_of(message.conversation_id, user_id)
        updated = message.model_copy(update=dict(fields, updated_at=self.store.clock()))
        self.store.messages[message_id] = updated
        if conversation.last_message and conversation.last_message.id == message_id:
            self.store.conversations[conversation.id] = conversation.model_copy(
                update={"last_message": LastMessagePreview.from_message(updated)}
            )
        self._announce(
            message_scopes(conversation),
            FeedEvent(kind=EventKind.UPDATE, entity=EntityKind.MESSAGE, conversation_id=conversation.id, message=updated),
        )
        return updated

    def _announce(self, scopes: List[FeedScope], event: FeedEvent) -> None:
        for scope in scopes:
            self._feed.publish_nowait(scope, event)
