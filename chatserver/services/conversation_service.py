from typing import Any, Dict, List, Optional, Tuple

from bson import ObjectId

from chatserver.core.exceptions import ForbiddenException, NotFoundException, ValidationException
from chatserver.repositories.conversation_repository import ConversationRepository
from chatserver.repositories.message_repository import MessageRepository
from chatserver.repositories.user_repository import UserRepository
from chatserver.schemas.chat import ChatPublic
from chatserver.schemas.message import MessagePublic
from chatserver.services.membership import MembershipPropagator
from chatserver.utils.object_ids import to_object_id


MIN_GROUP_INVITEES = 2


class ConversationService:
    """Chat lifecycle: direct lookup-or-create, groups, admin-gated membership changes, delete."""

    def __init__(
        self,
        conversation_repo: ConversationRepository,
        message_repo: MessageRepository,
        user_repo: UserRepository,
        propagator: MembershipPropagator,
    ) -> None:
        self._conversation_repo = conversation_repo
        self._message_repo = message_repo
        self._user_repo = user_repo
        self._propagator = propagator

    async def access_chat(self, caller_id: str, user_id: str) -> Tuple[ChatPublic, bool]:
        if not user_id or not user_id.strip():
            raise ValidationException("User id is required to open a chat")
        if user_id == caller_id:
            raise ValidationException("Cannot open a chat with yourself")
        doc, created = await self._conversation_repo.get_or_create_direct(caller_id, user_id)
        latest = await self._latest_messages([doc])
        return ChatPublic.from_document(doc, latest.get(doc.get("latest_message"))), created

    async def fetch_chats(
        self,
        caller_id: str,
        limit: int = 50,
        cursor: Optional[str] = None,
    ) -> Tuple[List[ChatPublic], Optional[str]]:
        try:
            docs, next_cursor = await self._conversation_repo.list_for_user(caller_id, limit=limit, cursor=cursor)
        except ValueError as exc:
            raise ValidationException("Invalid chat list cursor", code="INVALID_CURSOR") from exc
        latest = await self._latest_messages(docs)
        return [ChatPublic.from_document(d, latest.get(d.get("latest_message"))) for d in docs], next_cursor

    async def create_group(self, caller_id: str, chat_name: str, users: List[str]) -> ChatPublic:
        name = (chat_name or "").strip()
        if not name:
            raise ValidationException("Group chat name is required")
        invitees = [u for u in dict.fromkeys(users) if u and u != caller_id]
        if len(invitees) < MIN_GROUP_INVITEES:
            raise ValidationException("Group chat must have at least %d other users" % MIN_GROUP_INVITEES)
        doc = await self._conversation_repo.create_group(name, [caller_id, *invitees], caller_id)
        return ChatPublic.from_document(doc)

    async def rename_group(self, caller_id: str, chat_id: str, chat_name: str) -> ChatPublic:
        name = (chat_name or "").strip()
        if not name:
            raise ValidationException("Group chat name is required")
        chat_oid, _ = await self._load_group_for_admin(caller_id, chat_id)
        updated = await self._conversation_repo.rename(chat_oid, caller_id, name)
        return await self._present(updated)

    async def add_to_group(self, caller_id: str, chat_id: str, user_id: str) -> ChatPublic:
        if not user_id:
            raise ValidationException("User id is required")
        chat_oid, chat = await self._load_group_for_admin(caller_id, chat_id)
        if user_id in chat.get("users", []):
            return await self._present(chat)
        updated = await self._conversation_repo.add_member(chat_oid, caller_id, user_id)
        result = await self._present(updated)
        await self._propagator.on_member_added(chat_oid, user_id)
        return result

    async def remove_from_group(self, caller_id: str, chat_id: str, user_id: str) -> ChatPublic:
        chat_oid, chat = await self._load_group_for_admin(caller_id, chat_id)
        if user_id == chat.get("group_admin"):
            # no admin hand-over rule exists, so the admin stays until the group is deleted
            raise ForbiddenException("The group admin cannot be removed", code="ADMIN_REMOVAL_FORBIDDEN")
        if user_id not in chat.get("users", []):
            raise NotFoundException("User is not a member of this group")
        updated = await self._conversation_repo.remove_member(chat_oid, caller_id, user_id)
        result = await self._present(updated)
        await self._propagator.on_member_removed(chat_oid, user_id)
        return result

    async def delete_chat(self, caller_id: str, chat_id: str) -> None:
        chat_oid = self._parse_chat_id(chat_id)
        chat = await self._conversation_repo.get_by_id(chat_oid)
        if chat is None:
            raise NotFoundException("Chat not found")
        if chat.get("is_group_chat"):
            if chat.get("group_admin") != caller_id:
                raise ForbiddenException("Only the group admin can delete the group")
        elif caller_id not in chat.get("users", []):
            raise ForbiddenException("You are not a member of this chat")
        if not await self._conversation_repo.delete(chat_oid):
            raise NotFoundException("Chat not found")
        await self._propagator.on_conversation_deleted(chat_oid)

    def _parse_chat_id(self, chat_id: str) -> ObjectId:
        chat_oid = to_object_id(chat_id)
        if chat_oid is None:
            raise NotFoundException("Chat not found")
        return chat_oid

    async def _load_group_for_admin(self, caller_id: str, chat_id: str) -> Tuple[ObjectId, Dict[str, Any]]:
        chat_oid = self._parse_chat_id(chat_id)
        chat = await self._conversation_repo.get_by_id(chat_oid)
        if chat is None:
            raise NotFoundException("Chat not found")
        if not chat.get("is_group_chat"):
            raise ValidationException("This action requires a group chat")
        if chat.get("group_admin") != caller_id:
            raise ForbiddenException("Only the group admin can perform this action")
        return chat_oid, chat

    async def _present(self, doc: Optional[Dict[str, Any]]) -> ChatPublic:
        if doc is None:
            # the admin-filtered update matched nothing: chat deleted or changed hands meanwhile
            raise ForbiddenException("Only the group admin can perform this action")
        latest = await self._latest_messages([doc])
        return ChatPublic.from_document(doc, latest.get(doc.get("latest_message")))

    async def _latest_messages(self, docs: List[Dict[str, Any]]) -> Dict[ObjectId, MessagePublic]:
        ids = [d["latest_message"] for d in docs if d.get("latest_message")]
        messages = await self._message_repo.get_many(ids)
        profiles = await self._user_repo.get_public_profiles(m["sender"] for m in messages.values())
        return {oid: MessagePublic.from_document(m, profiles.get(m["sender"])) for oid, m in messages.items()}
