"""Persistence gateway: the remote store as plain async operations.

Every implementation reports failures as ``PersistenceFailure`` or
``NotParticipant`` and announces each durable write on the change feed.
"""
import asyncio
import functools
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Awaitable, Callable, Iterable, List, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo.errors import ConnectionFailure, PyMongoError

from chatsync.errors import NotParticipant, PersistenceFailure
from chatsync.models.conversation import Conversation, LastMessagePreview, ParticipantState
from chatsync.models.message import DELETED_CONTENT, DurableMessage, MediaAttachment, MessageType, utcnow
from chatsync.models.user import User
from chatsync.repositories.conversation_repository import ConversationRepository
from chatsync.repositories.message_repository import MessageRepository
from chatsync.repositories.participant_repository import ParticipantRepository
from chatsync.repositories.user_repository import UserRepository
from chatsync.utils.change_feed import ChangeFeed, EntityKind, EventKind, FeedEvent, FeedScope


logger = logging.getLogger(__name__)


class PersistenceGateway(ABC):

    @abstractmethod
    async def list_conversations(self, user_id: str) -> List[Conversation]:
        """All conversations of ``user_id``, most recently updated first."""

    @abstractmethod
    async def get_conversation(self, conversation_id: str, user_id: str) -> Conversation:
        """Fetch one conversation, raising ``NotParticipant`` unless ``user_id`` belongs to it."""

    @abstractmethod
    async def get_or_create_direct_conversation(self, user_id: str, other_user_id: str) -> Conversation:
        """Idempotent: at most one direct conversation exists per unordered pair."""

    @abstractmethod
    async def create_group_conversation(self, creator_id: str, participant_ids: Iterable[str], name: Optional[str] = None) -> Conversation:
        ...

    @abstractmethod
    async def list_messages(
        self,
        conversation_id: str,
        *,
        limit: Optional[int] = None,
        before: Optional[datetime] = None,
    ) -> List[DurableMessage]:
        """History in created_at ascending order.

        Without ``limit`` the full history is returned; with it, the newest
        ``limit`` messages older than ``before``.
        """

    @abstractmethod
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
        """Durable insert. Also bumps the conversation's last_message and updated_at.

        Repeating a call with the same ``idempotency_key`` returns the message
        stored by the first call.
        """

    @abstractmethod
    async def mark_read(self, conversation_id: str, user_id: str) -> Optional[datetime]:
        """Set read_by[user_id] on unread messages from others and advance the read cursor.

        Returns the timestamp written into read_by, or None when nothing was unread.
        """

    @abstractmethod
    async def count_unread(self, conversation_id: str, user_id: str) -> int:
        ...

    @abstractmethod
    async def edit_message(self, message_id: str, editor_id: str, content: str) -> DurableMessage:
        ...

    @abstractmethod
    async def delete_message(self, message_id: str, user_id: str) -> DurableMessage:
        ...

    @abstractmethod
    async def get_users(self, user_ids: Iterable[str]) -> List[User]:
        ...


def check_direct_pair(user_id: str, other_user_id: str) -> None:
    if not other_user_id:
        raise ValueError("Invalid user id")
    if user_id == other_user_id:
        raise ValueError("Cannot start a conversation with yourself")


def group_members(creator_id: str, participant_ids: Iterable[str]) -> List[str]:
    members = sorted(set(participant_ids) | {creator_id})
    if len(members) < 3:
        raise ValueError("A group conversation needs at least three participants")
    return members


def message_scopes(conversation: Conversation) -> List[FeedScope]:
    """Where a message write is announced: its conversation and every member's directory."""
    scopes = [FeedScope.messages(conversation.id)]
    scopes.extend(FeedScope.conversations(p) for p in sorted(conversation.participant_ids))
    return scopes


def _translate_errors(operation: str):
    def decorator(fn):
        @functools.wraps(fn)
        async def wrapper(*args, **kwargs):
            try:
                return await fn(*args, **kwargs)
            except PyMongoError as exc:
                raise PersistenceFailure(
                    operation,
                    str(exc),
                    transient=isinstance(exc, ConnectionFailure),
                    cause=exc,
                ) from exc
        return wrapper
    return decorator


class MongoPersistenceGateway(PersistenceGateway):

    def __init__(self, db: AsyncIOMotorDatabase, feed: ChangeFeed, clock: Callable[[], datetime] = utcnow) -> None:
        self._conversations = ConversationRepository(db)
        self._messages = MessageRepository(db)
        self._participants = ParticipantRepository(db)
        self._users = UserRepository(db)
        self._feed = feed
        self._clock = clock

    async def ensure_indexes(self) -> None:
        await self._conversations.ensure_indexes()
        await self._messages.ensure_indexes()
        await self._participants.ensure_indexes()

    @_translate_errors("list_conversations")
    async def list_conversations(self, user_id: str) -> List[Conversation]:
        docs = await self._conversations.list_for_user(user_id)
        return [Conversation.from_document(d) for d in docs]

    @_translate_errors("get_conversation")
    async def get_conversation(self, conversation_id: str, user_id: str) -> Conversation:
        doc = await self._conversations.get(conversation_id)
        if not doc:
            raise NotParticipant(conversation_id, user_id)
        conversation = Conversation.from_document(doc)
        if not conversation.has_participant(user_id):
            raise NotParticipant(conversation_id, user_id)
        return conversation

    @_translate_errors("get_or_create_direct_conversation")
    async def get_or_create_direct_conversation(self, user_id: str, other_user_id: str) -> Conversation:
        check_direct_pair(user_id, other_user_id)
        now = self._clock()
        doc, created = await self._conversations.get_or_create_one_to_one(user_id, other_user_id, now)
        conversation = Conversation.from_document(doc)
        # idempotent, and it repairs a pair whose participant rows were never written
        await self._participants.add(conversation.id, doc["participants"], now)
        if created:
            logger.info("Created direct conversation %s", conversation.id)
            await self._announce_members(conversation)
        return conversation

    @_translate_errors("create_group_conversation")
    async def create_group_conversation(self, creator_id: str, participant_ids: Iterable[str], name: Optional[str] = None) -> Conversation:
        members = group_members(creator_id, participant_ids)
        now = self._clock()
        doc = await self._conversations.create(members, created_by=creator_id, now=now, is_group=True, name=name)
        conversation = Conversation.from_document(doc)
        logger.info("Created group conversation %s with %d members", conversation.id, len(members))
        await self._participants.add(conversation.id, members, now)
        await self._announce_members(conversation)
        return conversation

    @_translate_errors("list_messages")
    async def list_messages(
        self,
        conversation_id: str,
        *,
        limit: Optional[int] = None,
        before: Optional[datetime] = None,
    ) -> List[DurableMessage]:
        docs = await self._messages.get_messages_by_conversation(conversation_id, limit=limit, before=before)
        return [DurableMessage.from_document(d) for d in docs]

    @_translate_errors("create_message")
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
        conversation = await self.get_conversation(conversation_id, sender_id)
        saved = await self._messages.save_message(
            conversation_id=conversation_id,
            sender_id=sender_id,
            content=content,
            type=MessageType(type).value,
            now=self._clock(),
            media=media.model_dump() if media else None,
            client_message_id=idempotency_key,
        )
        message = DurableMessage.from_document(saved)
        preview = LastMessagePreview.from_message(message)
        await self._conversations.update_on_new_message(conversation_id, preview.to_document(), message.created_at)
        await self._announce(
            message_scopes(conversation),
            FeedEvent(kind=EventKind.INSERT, entity=EntityKind.MESSAGE, conversation_id=conversation_id, message=message),
        )
        return message

    @_translate_errors("mark_read")
    async def mark_read(self, conversation_id: str, user_id: str) -> Optional[datetime]:
        await self.get_conversation(conversation_id, user_id)
        unread = await self._messages.get_unread(conversation_id, user_id)
        now = None
        if unread:
            now = self._clock()
            await self._messages.mark_read([d["_id"] for d in unread], user_id, now)
            scope = FeedScope.messages(conversation_id)
            for doc in unread:
                doc["read_by"] = dict(doc.get("read_by") or {}, **{user_id: now})
                await self._announce(
                    [scope],
                    FeedEvent(
                        kind=EventKind.UPDATE,
                        entity=EntityKind.MESSAGE,
                        conversation_id=conversation_id,
                        message=DurableMessage.from_document(doc),
                    ),
                )
        # the cursor sits on the newest message read, so repeating the call changes nothing
        latest = await self._messages.latest_from_others(conversation_id, user_id)
        if latest:
            await self._participants.advance_read_cursor(
                conversation_id, user_id, latest["created_at"], joined_at=now or self._clock()
            )
        return now

    @_translate_errors("count_unread")
    async def count_unread(self, conversation_id: str, user_id: str) -> int:
        doc = await self._participants.get(conversation_id, user_id)
        since = ParticipantState.from_document(doc).last_read_at if doc else None
        return await self._messages.count_unread(conversation_id, user_id, since)

    @_translate_errors("edit_message")
    async def edit_message(self, message_id: str, editor_id: str, content: str) -> DurableMessage:
        return await self._rewrite(
            "edit_message",
            message_id,
            editor_id,
            lambda now: {"content": content, "is_edited": True, "updated_at": now},
        )

    @_translate_errors("delete_message")
    async def delete_message(self, message_id: str, user_id: str) -> DurableMessage:
        return await self._rewrite(
            "delete_message",
            message_id,
            user_id,
            lambda now: {"content": DELETED_CONTENT, "type": MessageType.SYSTEM.value, "media": None, "updated_at": now},
        )

    @_translate_errors("get_users")
    async def get_users(self, user_ids: Iterable[str]) -> List[User]:
        docs = await self._users.get_users_by_ids(user_ids)
        return [User.from_document(d) for d in docs]

    async def _rewrite(self, operation: str, message_id: str, user_id: str, fields: Callable[[datetime], dict]) -> DurableMessage:
        doc = await self._messages.get(message_id)
        if not doc:
            raise PersistenceFailure(operation, f"message {message_id} not found")
        if doc["sender_id"] != user_id:
            raise PersistenceFailure(operation, "only the sender may change a message")
        conversation = await self.get_conversation(str(doc["conversation_id"]), user_id)
        updated = await self._messages.update_content(message_id, fields(self._clock()))
        if not updated:
            raise PersistenceFailure(operation, f"message {message_id} not found")
        message = DurableMessage.from_document(updated)
        await self._conversations.refresh_last_message(conversation.id, LastMessagePreview.from_message(message).to_document())
        await self._announce(
            message_scopes(conversation),
            FeedEvent(kind=EventKind.UPDATE, entity=EntityKind.MESSAGE, conversation_id=conversation.id, message=message),
        )
        return message

    async def _announce_members(self, conversation: Conversation) -> None:
        for user_id in sorted(conversation.participant_ids):
            await self._announce(
                [FeedScope.conversations(user_id)],
                FeedEvent(
                    kind=EventKind.INSERT,
                    entity=EntityKind.PARTICIPANT,
                    conversation_id=conversation.id,
                    user_id=user_id,
                ),
            )

    async def _announce(self, scopes: List[FeedScope], event: FeedEvent) -> None:
        # the write is already durable; a lost announcement is caught up on the next read
        for scope in scopes:
            try:
                await self._feed.publish(scope, event)
            except Exception:
                logger.warning("Publishing %s event to %s failed", event.kind.value, scope.channel, exc_info=True)


class RetryingGateway(PersistenceGateway):
    """Bounded exponential backoff for transient failures.

    ``create_message`` is only retried when the caller supplied an idempotency
    key, so a retry can never store a message twice.
    """

    def __init__(
        self,
        inner: PersistenceGateway,
        attempts: int = 3,
        base_delay: float = 0.2,
        max_delay: float = 2.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._inner = inner
        self._attempts = max(1, attempts)
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._sleep = sleep

    async def _call(self, operation: str, fn: Callable[[], Awaitable[Any]], retryable: bool = True) -> Any:
        attempt = 1
        while True:
            try:
                return await fn()
            except PersistenceFailure as exc:
                if not exc.transient or not retryable or attempt >= self._attempts:
                    raise
                delay = min(self._max_delay, self._base_delay * 2 ** (attempt - 1))
                logger.info("%s failed (attempt %d/%d), retrying in %.2fs: %s", operation, attempt, self._attempts, delay, exc)
                await self._sleep(delay)
                attempt += 1

    async def list_conversations(self, user_id: str) -> List[Conversation]:
        return await self._call("list_conversations", lambda: self._inner.list_conversations(user_id))

    async def get_conversation(self, conversation_id: str, user_id: str) -> Conversation:
        return await self._call("get_conversation", lambda: self._inner.get_conversation(conversation_id, user_id))

    async def get_or_create_direct_conversation(self, user_id: str, other_user_id: str) -> Conversation:
        return await self._call(
            "get_or_create_direct_conversation",
            lambda: self._inner.get_or_create_direct_conversation(user_id, other_user_id),
        )

    async def create_group_conversation(self, creator_id: str, participant_ids: Iterable[str], name: Optional[str] = None) -> Conversation:
        members = list(participant_ids)
        return await self._call(
            "create_group_conversation",
            lambda: self._inner.create_group_conversation(creator_id, members, name),
            retryable=False,
        )

    async def list_messages(
        self,
        conversation_id: str,
        *,
        limit: Optional[int] = None,
        before: Optional[datetime] = None,
    ) -> List[DurableMessage]:
        return await self._call(
            "list_messages",
            lambda: self._inner.list_messages(conversation_id, limit=limit, before=before),
        )

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
        return await self._call(
            "create_message",
            lambda: self._inner.create_message(
                conversation_id, sender_id, content, type, media, idempotency_key=idempotency_key
            ),
            retryable=idempotency_key is not None,
        )

    async def mark_read(self, conversation_id: str, user_id: str) -> Optional[datetime]:
        return await self._call("mark_read", lambda: self._inner.mark_read(conversation_id, user_id))

    async def count_unread(self, conversation_id: str, user_id: str) -> int:
        return await self._call("count_unread", lambda: self._inner.count_unread(conversation_id, user_id))

    async def edit_message(self, message_id: str, editor_id: str, content: str) -> DurableMessage:
        return await self._call("edit_message", lambda: self._inner.edit_message(message_id, editor_id, content))

    async def delete_message(self, message_id: str, user_id: str) -> DurableMessage:
        return await self._call("delete_message", lambda: self._inner.delete_message(message_id, user_id))

    async def get_users(self, user_ids: Iterable[str]) -> List[User]:
        ids = list(user_ids)
        return await self._call("get_users", lambda: self._inner.get_users(ids))
