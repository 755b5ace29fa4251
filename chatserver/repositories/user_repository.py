from typing import Any, Dict, Iterable, List

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorDatabase


PUBLIC_FIELDS = {"full_name": 1, "user_name": 1, "avatar": 1}


class UserRepository:
    """Read-only view of the user store; registration lives elsewhere."""

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._collection = db.get_collection("users")

    async def get_public_profiles(self, user_ids: Iterable[str]) -> Dict[str, Dict[str, Any]]:
        ids = list(dict.fromkeys(user_ids))
        if not ids:
            return {}
        # users may be keyed by ObjectId or by the plain string id
        keys: List[Any] = list(ids)
        keys.extend(ObjectId(i) for i in ids if ObjectId.is_valid(i))
        cursor = self._collection.find({"_id": {"$in": keys}}, PUBLIC_FIELDS)
        profiles: Dict[str, Dict[str, Any]] = {}
        async for doc in cursor:
            doc["_id"] = str(doc["_id"])  # normalize to string for API layer
            profiles[doc["_id"]] = doc
        return profiles
