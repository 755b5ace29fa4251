import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

from bson import ObjectId
from pymongo.errors import PyMongoError

from chatserver.core.exceptions import (
    ForbiddenException,
    NotFoundException,
    TransientStoreFailure,
    ValidationException,
)
from chatserver.repositories.conversation_repository import ConversationRepository
from chatserver.repositories.message_repository import MessageRepository
from chatserver.repositories.user_repository import UserRepository
from chatserver.schemas.message import MessagePage, MessagePublic
from chatserver.utils.object_ids import to_object_id
from chatserver.utils.realtime_bus import RoomBroadcaster
from chatserver.utils.rooms import event, personal_room


logger = logging.getLogger(__name__)


class DeliveryStatus(str, Enum):
    DELIVERED = "delivered"
    FORBIDDEN = "forbidden"
    NOT_FOUND = "not_found"
    INVALID_CONTENT = "invalid_content"
    STORE_UNAVAILABLE = "store_unavailable"


_STATUS_ERRORS = {
    DeliveryStatus.FORBIDDEN: ForbiddenException,
    DeliveryStatus.NOT_FOUND: NotFoundException,
    DeliveryStatus.INVALID_CONTENT: ValidationException,
    DeliveryStatus.STORE_UNAVAILABLE: TransientStoreFailure,
}


@dataclass(frozen=True)
class DeliveryOutcome:
    """Result of one submit_message call. Only `delivered` has side effects."""

    status: DeliveryStatus
    message: Optional[MessagePublic] = None
    detail: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status is DeliveryStatus.DELIVERED

    @classmethod
    def delivered(cls, message: MessagePublic) -> "DeliveryOutcome":
        return cls(DeliveryStatus.DELIVERED, message=message)

    @classmethod
    def failed(cls, status: DeliveryStatus, detail: str) -> "DeliveryOutcome":
        return cls(status, detail=detail)

    def raise_for_status(self) -> MessagePublic:
        if self.ok:
            return self.message
        raise _STATUS_ERRORS[self.status](self.detail or self.status.value, code=self.status.value.upper())


class MessageService:
    """
    The single path by which a new message becomes durable and is pushed live.

    Authorization is always the member list read from the chat store at call
    time; which rooms a socket has joined plays no part in it.
    """

    def __init__(
        self,
        message_repo: MessageRepository,
        conversation_repo: ConversationRepository,
        user_repo: UserRepository,
        broadcaster: RoomBroadcaster,
        max_message_length: int = 4000,
        echo_to_sender_devices: bool = False,
    ) -> None:
        self._message_repo = message_repo
        self._conversation_repo = conversation_repo
        self._user_repo = user_repo
        self._broadcaster = broadcaster
        self._max_message_length = max_message_length
        self._echo_to_sender_devices = echo_to_sender_devices

    async def submit_message(
        self,
        sender_id: str,
        chat_id: Any,
        content: Any,
        origin_connection_id: Optional[str] = None,
    ) -> DeliveryOutcome:
        # blank-only content is rejected, but the text is stored exactly as sent
        text = content.strip() if isinstance(content, str) else ""
        if not text:
            return DeliveryOutcome.failed(DeliveryStatus.INVALID_CONTENT, "Message content cannot be empty")
        if len(content) > self._max_message_length:
            return DeliveryOutcome.failed(
                DeliveryStatus.INVALID_CONTENT,
                f"Message content exceeds {self._max_message_length} characters",
            )
        chat_oid = to_object_id(chat_id)
        if chat_oid is None:
            return DeliveryOutcome.failed(DeliveryStatus.NOT_FOUND, "Chat not found")

        try:
            chat = await self._conversation_repo.get_by_id(chat_oid)
            if chat is None:
                return DeliveryOutcome.failed(DeliveryStatus.NOT_FOUND, "Chat not found")
            members: List[str] = list(chat.get("users", []))
            if sender_id not in members:
                logger.info("User %s is not a member of chat %s; message rejected", sender_id, chat_oid)
                return DeliveryOutcome.failed(DeliveryStatus.FORBIDDEN, "You are not a member of this chat")
            saved = await self._message_repo.create(chat_oid, sender_id, content)
            # a concurrent delete_chat may have cascaded between the membership check and the insert
            if await self._conversation_repo.get_by_id(chat_oid) is None:
                await self._message_repo.delete(saved["_id"])
                return DeliveryOutcome.failed(DeliveryStatus.NOT_FOUND, "Chat not found")
        except PyMongoError:
            logger.error("Store failure while submitting to chat %s", chat_oid, exc_info=True)
            return DeliveryOutcome.failed(DeliveryStatus.STORE_UNAVAILABLE, "Message store is temporarily unavailable")

        try:
            # preview pointer only; concurrent senders may overwrite each other
            await self._conversation_repo.set_latest_message(chat_oid, saved["_id"])
        except PyMongoError:
            logger.warning("Could not advance latest message of chat %s", chat_oid, exc_info=True)

        message = await self._enrich(saved)
        await self._broadcast(members, sender_id, message, origin_connection_id)
        return DeliveryOutcome.delivered(message)

    async def get_history(
        self,
        user_id: str,
        chat_id: str,
        limit: int = 50,
        cursor: Optional[str] = None,
    ) -> MessagePage:
        chat_oid = await self._require_member(user_id, chat_id)
        try:
            items, next_cursor = await self._message_repo.get_history(chat_oid, limit=limit, cursor=cursor)
        except ValueError as exc:
            raise ValidationException("Invalid history cursor", code="INVALID_CURSOR") from exc
        profiles = await self._profiles({m["sender"] for m in items})
        messages = [MessagePublic.from_document(m, profiles.get(m["sender"])) for m in items]
        return MessagePage(items=messages, next_cursor=next_cursor)

    async def update_message(self, user_id: str, message_id: str, new_content: Any) -> MessagePublic:
        text = new_content.strip() if isinstance(new_content, str) else ""
        if not text or len(new_content) > self._max_message_length:
            raise ValidationException("Message content must be 1-%d characters" % self._max_message_length)
        message_oid, _ = await self._require_own_message(user_id, message_id)
        updated = await self._message_repo.update_content(message_oid, new_content)
        if updated is None:
            raise NotFoundException("Message not found")
        return await self._enrich(updated)

    async def delete_message(self, user_id: str, message_id: str) -> None:
        message_oid, message = await self._require_own_message(user_id, message_id)
        await self._message_repo.delete(message_oid)
        chat = await self._conversation_repo.get_by_id(message["chat"])
        if chat is not None and chat.get("latest_message") == message_oid:
            previous = await self._message_repo.latest_for_chat(message["chat"])
            await self._conversation_repo.set_latest_message(message["chat"], previous["_id"] if previous else None)

    async def _require_member(self, user_id: str, chat_id: str) -> ObjectId:
        chat_oid = to_object_id(chat_id)
        chat = await self._conversation_repo.get_by_id(chat_oid) if chat_oid else None
        if chat is None:
            raise NotFoundException("Chat not found")
        if user_id not in chat.get("users", []):
            raise ForbiddenException("You are not a member of this chat")
        return chat_oid

    async def _require_own_message(self, user_id: str, message_id: str):
        message_oid = to_object_id(message_id)
        message = await self._message_repo.get_by_id(message_oid) if message_oid else None
        if message is None:
            raise NotFoundException("Message not found")
        if message["sender"] != user_id:
            raise ForbiddenException("You can only change your own messages")
        return message_oid, message

    async def _profiles(self, user_ids) -> Dict[str, Dict[str, Any]]:
        try:
            return await self._user_repo.get_public_profiles(user_ids)
        except PyMongoError:
            logger.warning("Profile lookup failed; sending messages without sender details", exc_info=True)
            return {}

    async def _enrich(self, doc: Dict[str, Any]) -> MessagePublic:
        profiles = await self._profiles([doc["sender"]])
        return MessagePublic.from_document(doc, profiles.get(doc["sender"]))

    async def _broadcast(
        self,
        members: List[str],
        sender_id: str,
        message: MessagePublic,
        origin_connection_id: Optional[str],
    ) -> None:
        frame = event("message_received", message.to_payload())
        for member in members:
            if member == sender_id:
                continue
            await self._broadcaster.emit(personal_room(member), frame)
        if self._echo_to_sender_devices:
            await self._broadcaster.emit(personal_room(sender_id), frame, exclude_connection_id=origin_connection_id)
        logger.debug("Message %s fanned out to %d members", message.id, len(members) - 1)


def outcome_error_payload(outcome: DeliveryOutcome, chat_id: Any) -> Dict[str, Any]:
    return {"status": outcome.status.value, "detail": outcome.detail, "chatId": chat_id}