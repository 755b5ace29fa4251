from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING, ReturnDocument

from chatserver.utils.object_ids import as_utc


def encode_cursor(doc: Dict[str, Any], field: str = "created_at") -> str:
    ts = int(as_utc(doc[field]).timestamp() * 1000)
    return f"{ts}:{doc['_id']}"


def decode_cursor(cursor: str) -> Tuple[datetime, ObjectId]:
    """Cursor format: <timestamp ms>:<object id hex>. Raises ValueError when malformed."""
    ts_str, oid_hex = cursor.split(":", 1)
    if not ObjectId.is_valid(oid_hex):
        raise ValueError(f"invalid cursor id: {oid_hex!r}")
    ts = datetime.fromtimestamp(int(ts_str) / 1000.0, tz=timezone.utc)
    return ts, ObjectId(oid_hex)


class MessageRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @property
    def collection(self):
        return self._db["messages"]

    async def ensure_indexes(self) -> None:
        await self.collection.create_index([("chat", ASCENDING), ("created_at", ASCENDING), ("_id", ASCENDING)])

    async def create(self, chat_id: ObjectId, sender_id: str, content: str) -> Dict[str, Any]:
        doc: Dict[str, Any] = {
            "chat": chat_id,
            "sender": sender_id,
            "content": content,
            "created_at": datetime.now(timezone.utc),
            "edited_at": None,
        }
        result = await self.collection.insert_one(doc)
        doc["_id"] = result.inserted_id
        return doc

    async def get_by_id(self, message_id: ObjectId) -> Optional[Dict[str, Any]]:
        return await self.collection.find_one({"_id": message_id})

    async def get_many(self, message_ids: Iterable[ObjectId]) -> Dict[ObjectId, Dict[str, Any]]:
        ids = list(message_ids)
        if not ids:
            return {}
        cur = self.collection.find({"_id": {"$in": ids}})
        return {doc["_id"]: doc async for doc in cur}

    async def get_history(
        self,
        chat_id: ObjectId,
        limit: int = 50,
        cursor: Optional[str] = None,
    ) -> Tuple[List[Dict[str, Any]], Optional[str]]:
        """
        Return one page of a chat's messages in chronological order.

        Pages are taken newest-first; `cursor` points at the oldest message of
        the previous page and the returned cursor is None once history runs out.
        """
        query: Dict[str, Any] = {"chat": chat_id}
        if cursor:
            ts, oid = decode_cursor(cursor)
            query["$or"] = [
                {"created_at": {"$lt": ts}},
                {"created_at": ts, "_id": {"$lt": oid}},
            ]
        cur = self.collection.find(query).sort([("created_at", DESCENDING), ("_id", DESCENDING)]).limit(limit)
        items = await cur.to_list(length=limit)
        next_cursor = encode_cursor(items[-1]) if len(items) == limit else None
        return list(reversed(items)), next_cursor

    async def latest_for_chat(self, chat_id: ObjectId) -> Optional[Dict[str, Any]]:
        cur = self.collection.find({"chat": chat_id}).sort([("created_at", DESCENDING), ("_id", DESCENDING)]).limit(1)
        items = await cur.to_list(length=1)
        return items[0] if items else None

    async def count_for_chat(self, chat_id: ObjectId) -> int:
        return await self.collection.count_documents({"chat": chat_id})

    async def update_content(self, message_id: ObjectId, content: str) -> Optional[Dict[str, Any]]:
        return await self.collection.find_one_and_update(
            {"_id": message_id},
            {"$set": {"content": content, "edited_at": datetime.now(timezone.utc)}},
            return_document=ReturnDocument.AFTER,
        )

    async def delete(self, message_id: ObjectId) -> bool:
        result = await self.collection.delete_one({"_id": message_id})
        return result.deleted_count > 0

    async def delete_for_chat(self, chat_id: ObjectId) -> int:
        result = await self.collection.delete_many({"chat": chat_id})
        return result.deleted_count or 0
