from datetime import datetime
from typing import Any, Dict, List, Optional

from bson import ObjectId
from bson.errors import InvalidId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError


class MessageRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @property
    def collection(self):
        return self._db["messages"]

    async def ensure_indexes(self) -> None:
        await self.collection.create_index([("conversation_id", ASCENDING), ("created_at", ASCENDING), ("_id", ASCENDING)])
        await self.collection.create_index(
            [("client_message_id", ASCENDING)],
            unique=True,
            partialFilterExpression={"client_message_id": {"$type": "string"}},
        )

    async def save_message(
        self,
        conversation_id: str,
        sender_id: str,
        content: str,
        type: str,
        now: datetime,
        media: Optional[Dict[str, Any]] = None,
        client_message_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        doc: Dict[str, Any] = {
            "conversation_id": conversation_id,
            "sender_id": sender_id,
            "content": content,
            "type": type,
            "media": media,
            "created_at": now,
            "updated_at": now,
            "is_edited": False,
            "read_by": {sender_id: now},
            "delivered_to": {sender_id: now},
        }
        if client_message_id:
            existing = await self.find_by_client_message_id(client_message_id)
            if existing is not None:
                return existing
            doc["client_message_id"] = client_message_id
        try:
            result = await self.collection.insert_one(doc)
        except DuplicateKeyError:
            # a retried create with the same key; hand back the first insert
            existing = await self.find_by_client_message_id(client_message_id)
            if existing is None:
                raise
            return existing
        doc["_id"] = str(result.inserted_id)
        return doc

    async def get(self, message_id: str) -> Optional[Dict[str, Any]]:
        oid = self._to_object_id(message_id)
        if oid is None:
            return None
        doc = await self.collection.find_one({"_id": oid})
        if doc:
            doc["_id"] = str(doc["_id"])
        return doc

    async def find_by_client_message_id(self, client_message_id: Optional[str]) -> Optional[Dict[str, Any]]:
        if not client_message_id:
            return None
        doc = await self.collection.find_one({"client_message_id": client_message_id})
        if doc:
            doc["_id"] = str(doc["_id"])
        return doc

    async def get_messages_by_conversation(
        self,
        conversation_id: str,
        limit: Optional[int] = None,
        before: Optional[datetime] = None,
    ) -> List[Dict[str, Any]]:
        query: Dict[str, Any] = {"conversation_id": conversation_id}
        if before is not None:
            query["created_at"] = {"$lt": before}
        if limit:
            # newest page first, flipped back to chronological order below
            cur = self.collection.find(query).sort([("created_at", DESCENDING), ("_id", DESCENDING)]).limit(limit)
            items = list(reversed(await cur.to_list(length=limit)))
        else:
            cur = self.collection.find(query).sort([("created_at", ASCENDING), ("_id", ASCENDING)])
            items = await cur.to_list(length=None)
        for it in items:
            it["_id"] = str(it.get("_id"))
        return items

    async def get_unread(self, conversation_id: str, user_id: str) -> List[Dict[str, Any]]:
        query = {
            "conversation_id": conversation_id,
            "sender_id": {"$ne": user_id},
            f"read_by.{user_id}": {"$exists": False},
        }
        items = await self.collection.find(query).sort("created_at", ASCENDING).to_list(length=None)
        for it in items:
            it["_id"] = str(it.get("_id"))
        return items

    async def mark_read(self, message_ids: List[str], user_id: str, at: datetime) -> int:
        if not message_ids:
            return 0
        result = await self.collection.update_many(
            {"_id": {"$in": [ObjectId(m) for m in message_ids]}, f"read_by.{user_id}": {"$exists": False}},
            {"$set": {f"read_by.{user_id}": at}},
        )
        return result.modified_count or 0

    async def latest_from_others(self, conversation_id: str, user_id: str) -> Optional[Dict[str, Any]]:
        doc = await self.collection.find_one(
            {"conversation_id": conversation_id, "sender_id": {"$ne": user_id}},
            sort=[("created_at", DESCENDING), ("_id", DESCENDING)],
        )
        if doc:
            doc["_id"] = str(doc["_id"])
        return doc

    async def count_unread(self, conversation_id: str, user_id: str, since: Optional[datetime]) -> int:
        query: Dict[str, Any] = {"conversation_id": conversation_id, "sender_id": {"$ne": user_id}}
        if since is not None:
            query["created_at"] = {"$gt": since}
        return await self.collection.count_documents(query)

    async def update_content(self, message_id: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        doc = await self.collection.find_one_and_update(
            {"_id": self._to_object_id(message_id)},
            {"$set": fields},
            return_document=ReturnDocument.AFTER,
        )
        if doc:
            doc["_id"] = str(doc["_id"])
        return doc

    def _to_object_id(self, oid_hex: str) -> Optional[ObjectId]:
        try:
            return ObjectId(oid_hex)
        except (InvalidId, TypeError):
            return None
