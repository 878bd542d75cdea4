from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from bson import ObjectId
from bson.errors import InvalidId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING, ReturnDocument


class ConversationRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @property
    def collection(self):
        return self._db["conversations"]

    async def ensure_indexes(self) -> None:
        await self.collection.create_index([("participants", ASCENDING)])
        await self.collection.create_index([("updated_at", DESCENDING)])

    async def get(self, conversation_id: str) -> Optional[Dict[str, Any]]:
        oid = self._to_object_id(conversation_id)
        if oid is None:
            return None
        doc = await self.collection.find_one({"_id": oid})
        if doc:
            doc["_id"] = str(doc["_id"])
        return doc

    async def get_or_create_one_to_one(self, user_a: str, user_b: str, now: datetime) -> Tuple[Dict[str, Any], bool]:
        # dedup check at creation time; there is no unique constraint on the pair
        participants = sorted([user_a, user_b])
        existing = await self.collection.find_one({"participants": participants, "is_group": False})
        if existing:
            existing["_id"] = str(existing.get("_id"))
            return existing, False
        doc = await self.create(participants, created_by=user_a, now=now, is_group=False)
        return doc, True

    async def create(
        self,
        participants: Iterable[str],
        created_by: str,
        now: datetime,
        is_group: bool = False,
        name: Optional[str] = None,
    ) -> Dict[str, Any]:
        doc: Dict[str, Any] = {
            "is_group": is_group,
            "participants": sorted(set(participants)),
            "name": name if is_group else None,
            "last_message": None,
            "created_by": created_by,
            "created_at": now,
            "updated_at": now,
        }
        result = await self.collection.insert_one(doc)
        doc["_id"] = str(result.inserted_id)
        return doc

    async def update_on_new_message(self, conversation_id: str, last_message: Dict[str, Any], at: datetime) -> Optional[Dict[str, Any]]:
        # a replayed or slower insert must not put an older preview back
        doc = await self.collection.find_one_and_update(
            {
                "_id": self._to_object_id(conversation_id),
                "$or": [{"last_message": None}, {"last_message.created_at": {"$lte": at}}],
            },
            {
                "$set": {"last_message": last_message},
                "$max": {"updated_at": at},
            },
            return_document=ReturnDocument.AFTER,
        )
        if doc:
            doc["_id"] = str(doc["_id"])
        return doc

    async def refresh_last_message(self, conversation_id: str, last_message: Dict[str, Any]) -> None:
        # only rewrite the preview when it still points at this message
        await self.collection.update_one(
            {"_id": self._to_object_id(conversation_id), "last_message.id": last_message["id"]},
            {"$set": {"last_message": last_message}},
        )

    async def list_for_user(self, user_id: str, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        query = {"participants": {"$in": [user_id]}}
        sort = [("updated_at", DESCENDING), ("_id", DESCENDING)]
        cursor_db = self.collection.find(query).sort(sort)
        if limit:
            cursor_db = cursor_db.limit(limit)
        items = await cursor_db.to_list(length=limit)
        for it in items:
            it["_id"] = str(it.get("_id"))
        return items

    def _to_object_id(self, oid_hex: str) -> Optional[ObjectId]:
        try:
            return ObjectId(oid_hex)
        except (InvalidId, TypeError):
            return None
