import json
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from chatserver.schemas.message import MessagePublic
from chatserver.utils.object_ids import as_utc


class AccessChatRequest(BaseModel):

    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(alias="userId")


class CreateGroupRequest(BaseModel):

    model_config = ConfigDict(populate_by_name=True)

    chat_name: str = Field(alias="chatName")
    users: List[str]

    @field_validator("users", mode="before")
    @classmethod
    def parse_users(cls, value: Any) -> Any:
        # older web clients send users as a JSON-encoded string
        if isinstance(value, str):
            try:
                return json.loads(value)
            except json.JSONDecodeError as exc:
                raise ValueError("users must be a list of user ids") from exc
        return value


class RenameGroupRequest(BaseModel):

    model_config = ConfigDict(populate_by_name=True)

    chat_id: str = Field(alias="chatId")
    chat_name: str = Field(alias="chatName")


class GroupMemberRequest(BaseModel):

    model_config = ConfigDict(populate_by_name=True)

    chat_id: str = Field(alias="chatId")
    user_id: str = Field(alias="userId")


class ChatPublic(BaseModel):

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(alias="_id")
    chat_name: Optional[str] = Field(default=None, alias="chatName")
    is_group_chat: bool = Field(alias="isGroupChat")
    users: List[str]
    group_admin: Optional[str] = Field(default=None, alias="groupAdmin")
    latest_message: Optional[MessagePublic] = Field(default=None, alias="latestMessage")
    created_at: Optional[datetime] = Field(default=None, alias="createdAt")
    updated_at: Optional[datetime] = Field(default=None, alias="updatedAt")

    @classmethod
    def from_document(cls, doc: Dict[str, Any], latest_message: Optional[MessagePublic] = None) -> "ChatPublic":
        return cls(
            id=str(doc["_id"]),
            chat_name=doc.get("chat_name"),
            is_group_chat=bool(doc.get("is_group_chat")),
            users=list(doc.get("users", [])),
            group_admin=doc.get("group_admin"),
            latest_message=latest_message,
            created_at=as_utc(doc.get("created_at")),
            updated_at=as_utc(doc.get("updated_at")),
        )
