from datetime import datetime
from typing import List, Optional, TypedDict

from bson import ObjectId


class ChatDocument(TypedDict, total=False):
    _id: ObjectId
    chat_name: Optional[str]
    is_group_chat: bool
    # member user ids
    users: List[str]
    group_admin: Optional[str]
    latest_message: Optional[ObjectId]
    # "a:b" with sorted ids, direct chats only
    direct_key: str
    created_at: datetime
    updated_at: datetime
