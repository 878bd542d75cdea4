"""Message entities.

A message in a local log is either durable (stored remotely, carries the store's
id) or pending (an optimistic placeholder that only lives in this process).
The two are separate types so "is this confirmed yet" never depends on the
shape of an id string.
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, Literal, Optional, Tuple, TypedDict, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, model_validator


PREVIEW_LENGTH = 200
DELETED_CONTENT = "This message was deleted"


class MessageType(str, Enum):

    TEXT = "text"
    IMAGE = "image"
    VIDEO = "video"
    VOICE = "voice"
    SYSTEM = "system"


class MediaAttachment(BaseModel):

    model_config = ConfigDict(frozen=True)

    url: str
    mime_type: Optional[str] = None
    size: Optional[int] = None
    duration: Optional[float] = None


class MessageDocument(TypedDict, total=False):
    _id: str
    conversation_id: str
    sender_id: str
    content: str
    type: str
    media: Optional[Dict[str, Any]]
    created_at: datetime
    updated_at: datetime
    is_edited: bool
    # user_id -> timestamp
    read_by: Dict[str, datetime]
    delivered_to: Dict[str, datetime]
    # idempotency key supplied by the sending client
    client_message_id: Optional[str]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MessageBase(BaseModel):

    model_config = ConfigDict(frozen=True)

    conversation_id: str
    sender_id: str
    content: str
    type: MessageType = MessageType.TEXT
    media: Optional[MediaAttachment] = None
    created_at: datetime
    updated_at: Optional[datetime] = None
    is_edited: bool = False
    read_by: Dict[str, datetime] = Field(default_factory=dict)
    delivered_to: Dict[str, datetime] = Field(default_factory=dict)
    client_message_id: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _sender_reads_own_message(cls, data: Any) -> Any:
        # the sender has always delivered and read what they sent
        if isinstance(data, dict) and data.get("sender_id") and data.get("created_at"):
            data = dict(data)
            for field in ("read_by", "delivered_to"):
                receipts = dict(data.get(field) or {})
                receipts.setdefault(data["sender_id"], data["created_at"])
                data[field] = receipts
        return data

    def is_read_by(self, user_id: str) -> bool:
        return user_id in self.read_by


class DurableMessage(MessageBase):

    kind: Literal["durable"] = "durable"
    id: str

    @property
    def key(self) -> str:
        return self.id

    @property
    def is_pending(self) -> bool:
        return False

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "DurableMessage":
        return cls(
            id=str(doc["_id"]),
            conversation_id=str(doc["conversation_id"]),
            sender_id=doc["sender_id"],
            content=doc.get("content", ""),
            type=doc.get("type") or MessageType.TEXT,
            media=doc.get("media"),
            created_at=as_utc(doc["created_at"]),
            updated_at=as_utc(doc.get("updated_at")),
            is_edited=doc.get("is_edited", False),
            read_by={k: as_utc(v) for k, v in (doc.get("read_by") or {}).items()},
            delivered_to={k: as_utc(v) for k, v in (doc.get("delivered_to") or {}).items()},
            client_message_id=doc.get("client_message_id"),
        )


class PendingMessage(MessageBase):

    kind: Literal["pending"] = "pending"
    local_id: str = Field(default_factory=lambda: uuid4().hex)

    @property
    def key(self) -> str:
        return self.local_id

    @property
    def is_pending(self) -> bool:
        return True

    @classmethod
    def compose(
        cls,
        conversation_id: str,
        sender_id: str,
        content: str,
        type: MessageType = MessageType.TEXT,
        media: Optional[MediaAttachment] = None,
    ) -> "PendingMessage":
        """Build a placeholder stamped with the client clock.

        The local id doubles as the idempotency key of the create call, which
        lets a feed insert for the same send be matched back to this entry.
        """
        local_id = uuid4().hex
        return cls(
            local_id=local_id,
            conversation_id=conversation_id,
            sender_id=sender_id,
            content=content,
            type=type,
            media=media,
            created_at=utcnow(),
            client_message_id=local_id,
        )


Message = Annotated[Union[DurableMessage, PendingMessage], Field(discriminator="kind")]


def message_sort_key(message: Union[DurableMessage, PendingMessage]) -> Tuple[datetime, str]:
    """Total order over messages: created_at ascending, ties broken by id."""
    return (message.created_at, message.key)


def same_message(a: Union[DurableMessage, PendingMessage], b: Union[DurableMessage, PendingMessage]) -> bool:
    if isinstance(a, DurableMessage) and isinstance(b, DurableMessage):
        return a.id == b.id
    return a is b


def preview_text(content: str, type: MessageType) -> str:
    text = (content or "").strip()
    if type == MessageType.TEXT or type == MessageType.SYSTEM:
        return text[:PREVIEW_LENGTH]
    label = f"[{type.value}]"
    return f"{label} {text}"[:PREVIEW_LENGTH] if text else label


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # mongo hands back naive UTC datetimes unless tz_aware is set on the client
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
