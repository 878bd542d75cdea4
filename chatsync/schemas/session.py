from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from chatsync.models.message import MediaAttachment, MessageType


ClientFrameType = Literal[
    "open",
    "close",
    "send",
    "mark_read",
    "start_direct",
    "create_group",
    "edit",
    "delete",
    "load_earlier",
]


class ClientFrame(BaseModel):
    """UI -> session."""

    type: ClientFrameType
    conversation_id: Optional[str] = None
    message_id: Optional[str] = None
    content: Optional[str] = None
    message_type: MessageType = MessageType.TEXT
    media: Optional[MediaAttachment] = None
    user_id: Optional[str] = None
    participant_ids: List[str] = Field(default_factory=list)
    name: Optional[str] = None
    limit: int = Field(50, ge=1, le=200)
    # echoed back on the matching result frame
    request_id: Optional[str] = None


class ServerFrame(BaseModel):
    """Session -> UI.

    type is one of: messages | conversations | health | result | error
    """

    type: str
    data: Dict[str, Any] = Field(default_factory=dict)
