from datetime import datetime, timezone
from typing import Any, Optional

from bson import ObjectId
from bson.errors import InvalidId


def to_object_id(value: Any) -> Optional[ObjectId]:
    """Parse a client-supplied id; None when it is not a valid ObjectId."""
    if isinstance(value, ObjectId):
        return value
    if not isinstance(value, str):
        return None
    try:
        return ObjectId(value)
    except InvalidId:
        return None


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # pymongo hands back naive datetimes unless the client is tz_aware
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)
