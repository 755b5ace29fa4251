from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from chatserver.schemas.user import SenderPublic
from chatserver.utils.object_ids import as_utc


class SendMessageRequest(BaseModel):

    model_config = ConfigDict(populate_by_name=True)

    chat_id: str = Field(alias="chatId")
    content: str


class UpdateMessageRequest(BaseModel):

    model_config = ConfigDict(populate_by_name=True)

    new_content: str = Field(alias="newContent")


class MessagePublic(BaseModel):

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(alias="_id")
    sender: SenderPublic
    chat: str
    content: str
    created_at: datetime = Field(alias="createdAt")
    edited_at: Optional[datetime] = Field(default=None, alias="editedAt")

    @classmethod
    def from_document(cls, doc: Dict[str, Any], sender_profile: Optional[Dict[str, Any]] = None) -> "MessagePublic":
        profile = sender_profile or {}
        return cls(
            id=str(doc["_id"]),
            sender=SenderPublic(
                id=doc["sender"],
                full_name=profile.get("full_name"),
                user_name=profile.get("user_name"),
                avatar=profile.get("avatar"),
            ),
            chat=str(doc["chat"]),
            content=doc["content"],
            created_at=as_utc(doc["created_at"]),
            edited_at=as_utc(doc.get("edited_at")),
        )

    def to_payload(self) -> Dict[str, Any]:
        """JSON-ready dict with the wire field names, as pushed over the socket."""
        return self.model_dump(by_alias=True, mode="json")


class MessagePage(BaseModel):

    items: List[MessagePublic]
    next_cursor: Optional[str] = None
