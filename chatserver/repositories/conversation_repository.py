from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError

from chatserver.repositories.message_repository import decode_cursor, encode_cursor


def direct_key(user_a: str, user_b: str) -> str:
    return ":".join(sorted([user_a, user_b]))


class ConversationRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @property
    def collection(self):
        return self._db["chats"]

    async def ensure_indexes(self) -> None:
        await self.collection.create_index([("users", ASCENDING)])
        await self.collection.create_index([("updated_at", DESCENDING)])
        # one direct chat per pair; group chats carry no direct_key
        await self.collection.create_index("direct_key", unique=True, sparse=True)

    async def get_by_id(self, chat_id: ObjectId) -> Optional[Dict[str, Any]]:
        return await self.collection.find_one({"_id": chat_id})

    async def get_or_create_direct(self, user_a: str, user_b: str) -> Tuple[Dict[str, Any], bool]:
        key = direct_key(user_a, user_b)
        now = datetime.now(timezone.utc)
        created = False
        try:
            result = await self.collection.update_one(
                {"direct_key": key},
                {
                    "$setOnInsert": {
                        "chat_name": None,
                        "is_group_chat": False,
                        "users": sorted([user_a, user_b]),
                        "group_admin": None,
                        "latest_message": None,
                        "created_at": now,
                        "updated_at": now,
                    }
                },
                upsert=True,
            )
            created = result.upserted_id is not None
        except DuplicateKeyError:
            # a concurrent accesschat for the same pair inserted first
            pass
        doc = await self.collection.find_one({"direct_key": key})
        return doc, created

    async def create_group(self, chat_name: str, users: List[str], admin_id: str) -> Dict[str, Any]:
        now = datetime.now(timezone.utc)
        doc: Dict[str, Any] = {
            "chat_name": chat_name,
            "is_group_chat": True,
            "users": users,
            "group_admin": admin_id,
            "latest_message": None,
            "created_at": now,
            "updated_at": now,
        }
        result = await self.collection.insert_one(doc)
        doc["_id"] = result.inserted_id
        return doc

    async def list_for_user(
        self,
        user_id: str,
        limit: int = 50,
        cursor: Optional[str] = None,
    ) -> Tuple[List[Dict[str, Any]], Optional[str]]:
        """Newest-active chats first; raises ValueError for a malformed cursor."""
        query: Dict[str, Any] = {"users": user_id}
        if cursor:
            ts, oid = decode_cursor(cursor)
            query["$or"] = [
                {"updated_at": {"$lt": ts}},
                {"updated_at": ts, "_id": {"$lt": oid}},
            ]
        cur = self.collection.find(query).sort([("updated_at", DESCENDING), ("_id", DESCENDING)]).limit(limit)
        items = await cur.to_list(length=limit)
        next_cursor = encode_cursor(items[-1], "updated_at") if len(items) == limit else None
        return items, next_cursor

    async def _update_group(self, chat_id: ObjectId, admin_id: str, update: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        # the admin filter makes the permission check and the write one atomic step
        update.setdefault("$set", {})["updated_at"] = datetime.now(timezone.utc)
        return await self.collection.find_one_and_update(
            {"_id": chat_id, "is_group_chat": True, "group_admin": admin_id},
            update,
            return_document=ReturnDocument.AFTER,
        )

    async def rename(self, chat_id: ObjectId, admin_id: str, chat_name: str) -> Optional[Dict[str, Any]]:
        return await self._update_group(chat_id, admin_id, {"$set": {"chat_name": chat_name}})

    async def add_member(self, chat_id: ObjectId, admin_id: str, user_id: str) -> Optional[Dict[str, Any]]:
        return await self._update_group(chat_id, admin_id, {"$addToSet": {"users": user_id}})

    async def remove_member(self, chat_id: ObjectId, admin_id: str, user_id: str) -> Optional[Dict[str, Any]]:
        return await self._update_group(chat_id, admin_id, {"$pull": {"users": user_id}})

    async def set_latest_message(self, chat_id: ObjectId, message_id: Optional[ObjectId]) -> None:
        await self.collection.update_one(
            {"_id": chat_id},
            {"$set": {"latest_message": message_id, "updated_at": datetime.now(timezone.utc)}},
        )

    async def delete(self, chat_id: ObjectId) -> bool:
        result = await self.collection.delete_one({"_id": chat_id})
        return result.deleted_count > 0
