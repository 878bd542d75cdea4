from datetime import datetime
from typing import Any, Dict, Iterable, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING


class ParticipantRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @property
    def collection(self):
        return self._db["conversation_participants"]

    async def ensure_indexes(self) -> None:
        await self.collection.create_index([("conversation_id", ASCENDING), ("user_id", ASCENDING)], unique=True)
        await self.collection.create_index([("user_id", ASCENDING)])

    async def add(self, conversation_id: str, user_ids: Iterable[str], now: datetime) -> None:
        for user_id in user_ids:
            await self.collection.update_one(
                {"conversation_id": conversation_id, "user_id": user_id},
                {"$setOnInsert": {"joined_at": now, "last_read_at": now}},
                upsert=True,
            )

    async def get(self, conversation_id: str, user_id: str) -> Optional[Dict[str, Any]]:
        doc = await self.collection.find_one({"conversation_id": conversation_id, "user_id": user_id})
        if doc:
            doc["_id"] = str(doc["_id"])
        return doc

    async def advance_read_cursor(self, conversation_id: str, user_id: str, read_at: datetime, joined_at: datetime) -> None:
        # $max keeps last_read_at monotonic under concurrent writers; a missing row is created
        await self.collection.update_one(
            {"conversation_id": conversation_id, "user_id": user_id},
            {"$max": {"last_read_at": read_at}, "$setOnInsert": {"joined_at": joined_at}},
            upsert=True,
        )
