"""Room names used for fan-out addressing. Rooms are never stored."""

PERSONAL_PREFIX = "user:"
CONVERSATION_PREFIX = "chat:"


def personal_room(user_id: str) -> str:
    return f"{PERSONAL_PREFIX}{user_id}"


def conversation_room(chat_id: str) -> str:
    return f"{CONVERSATION_PREFIX}{chat_id}"


def is_personal_room(room: str) -> bool:
    return room.startswith(PERSONAL_PREFIX)


def event(event_type: str, data=None) -> dict:
    """Build one wire frame."""
    return {"type": event_type, "data": data}
