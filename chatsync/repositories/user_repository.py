from typing import Iterable, List

from bson import ObjectId
from bson.errors import InvalidId
from motor.motor_asyncio import AsyncIOMotorDatabase


class UserRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._collection = db.get_collection("users")

    async def get_users_by_ids(self, user_ids: Iterable[str]) -> List[dict]:
        oids = []
        for user_id in user_ids:
            try:
                oids.append(ObjectId(user_id))
            except (InvalidId, TypeError):
                continue
        if not oids:
            return []
        users = await self._collection.find({"_id": {"$in": oids}}).to_list(length=len(oids))
        for user in users:
            user["_id"] = str(user["_id"])  # normalize to string for the session layer
        return users
