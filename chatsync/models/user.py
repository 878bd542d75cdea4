from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, TypedDict

from pydantic import BaseModel, ConfigDict


class OnlineStatus(str, Enum):

    ONLINE = "online"
    OFFLINE = "offline"
    AWAY = "away"
    BUSY = "busy"


class UserDocument(TypedDict, total=False):

    _id: str
    display_name: str
    status: str
    last_seen: Optional[datetime]


class User(BaseModel):
    """Profile owned by the identity collaborator; read here, never written."""

    model_config = ConfigDict(frozen=True)

    id: str
    display_name: str = ""
    status: OnlineStatus = OnlineStatus.OFFLINE
    last_seen: Optional[datetime] = None

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "User":
        return cls(
            id=str(doc["_id"]),
            display_name=doc.get("display_name") or doc.get("full_name") or "",
            status=doc.get("status") or OnlineStatus.OFFLINE,
            last_seen=doc.get("last_seen"),
        )
