from datetime import datetime
from typing import Optional, TypedDict

from bson import ObjectId


class MessageDocument(TypedDict, total=False):
    _id: ObjectId
    chat: ObjectId
    sender: str
    content: str
    created_at: datetime
    edited_at: Optional[datetime]
