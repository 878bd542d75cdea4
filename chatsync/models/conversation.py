from datetime import datetime
from typing import Any, Dict, FrozenSet, List, Optional, TypedDict

from pydantic import BaseModel, ConfigDict, model_validator

from chatsync.models.message import DurableMessage, MessageType, as_utc, preview_text


class ConversationDocument(TypedDict, total=False):
    _id: str
    is_group: bool
    # sorted, so a direct pair always stores the same list
    participants: List[str]
    name: Optional[str]
    last_message: Optional[Dict[str, Any]]
    created_by: str
    created_at: datetime
    updated_at: datetime


class ParticipantDocument(TypedDict, total=False):
    _id: str
    conversation_id: str
    user_id: str
    joined_at: datetime
    last_read_at: datetime


class LastMessagePreview(BaseModel):

    model_config = ConfigDict(frozen=True)

    id: str
    sender_id: str
    preview_text: str
    type: MessageType = MessageType.TEXT
    created_at: datetime

    def to_document(self) -> Dict[str, Any]:
        doc = self.model_dump()
        doc["type"] = self.type.value
        return doc

    @classmethod
    def from_message(cls, message: DurableMessage) -> "LastMessagePreview":
        return cls(
            id=message.id,
            sender_id=message.sender_id,
            preview_text=preview_text(message.content, message.type),
            type=message.type,
            created_at=message.created_at,
        )


class Conversation(BaseModel):

    model_config = ConfigDict(frozen=True)

    id: str
    is_group: bool = False
    participant_ids: FrozenSet[str]
    name: Optional[str] = None
    last_message: Optional[LastMessagePreview] = None
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: datetime

    @model_validator(mode="after")
    def _check_participants(self) -> "Conversation":
        if not self.participant_ids:
            raise ValueError("a conversation needs at least one participant")
        if not self.is_group and len(self.participant_ids) != 2:
            raise ValueError("a direct conversation has exactly two participants")
        return self

    def has_participant(self, user_id: str) -> bool:
        return user_id in self.participant_ids

    def other_participants(self, user_id: str) -> List[str]:
        return sorted(p for p in self.participant_ids if p != user_id)

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "Conversation":
        last = doc.get("last_message")
        if last:
            last = dict(last, created_at=as_utc(last.get("created_at")))
        return cls(
            id=str(doc["_id"]),
            is_group=doc.get("is_group", False),
            participant_ids=frozenset(doc.get("participants") or []),
            name=doc.get("name"),
            last_message=last,
            created_by=doc.get("created_by"),
            created_at=as_utc(doc.get("created_at")),
            updated_at=as_utc(doc["updated_at"]),
        )


class ParticipantState(BaseModel):
    """Read cursor of one user in one conversation."""

    model_config = ConfigDict(frozen=True)

    conversation_id: str
    user_id: str
    joined_at: datetime
    last_read_at: datetime

    def advance_read_cursor(self, read_at: datetime) -> "ParticipantState":
        # last_read_at never moves backwards
        if read_at <= self.last_read_at:
            return self
        return self.model_copy(update={"last_read_at": read_at})

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "ParticipantState":
        return cls(
            conversation_id=str(doc["conversation_id"]),
            user_id=doc["user_id"],
            joined_at=as_utc(doc["joined_at"]),
            last_read_at=as_utc(doc["last_read_at"]),
        )
