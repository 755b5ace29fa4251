import logging

from bson import ObjectId

from chatserver.repositories.message_repository import MessageRepository
from chatserver.utils.websocket_manager import ConnectionRegistry


logger = logging.getLogger(__name__)


class MembershipPropagator:
    """
    Realtime-side follow-up to a committed membership change.

    Delivery correctness never depends on this class: the fan-out engine
    re-reads membership on every message. What it does is drop stale
    conversation-room joins (so typing relays stop reaching removed users)
    and cascade a chat deletion to its messages.
    """

    def __init__(self, message_repo: MessageRepository, registry: ConnectionRegistry) -> None:
        self._message_repo = message_repo
        self._registry = registry

    async def on_member_added(self, chat_id: ObjectId, user_id: str) -> None:
        # the new member's personal room already exists; the next durable check lets them in
        logger.info("User %s added to chat %s", user_id, chat_id)

    async def on_member_removed(self, chat_id: ObjectId, user_id: str) -> None:
        evicted = self._registry.evict_user_from_room(user_id, str(chat_id))
        logger.info("User %s removed from chat %s (%d live joins dropped)", user_id, chat_id, evicted)

    async def on_conversation_deleted(self, chat_id: ObjectId) -> None:
        deleted = await self._message_repo.delete_for_chat(chat_id)
        self._registry.discard_room(str(chat_id))
        logger.info("Chat %s deleted with %d messages", chat_id, deleted)
