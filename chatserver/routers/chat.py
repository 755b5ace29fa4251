from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Response, status

from chatserver.schemas.chat import (
    AccessChatRequest,
    ChatPublic,
    CreateGroupRequest,
    GroupMemberRequest,
    RenameGroupRequest,
)
from chatserver.services.conversation_service import ConversationService
from chatserver.utils.dependencies import get_conversation_service, get_current_user


router = APIRouter(prefix="/chat", tags=["chat"])


@router.post("/accesschat", response_model=ChatPublic)
async def access_chat(body: AccessChatRequest, response: Response, current_user: dict = Depends(get_current_user), service: ConversationService = Depends(get_conversation_service)):
    chat, created = await service.access_chat(current_user["_id"], body.user_id)
    response.status_code = status.HTTP_201_CREATED if created else status.HTTP_200_OK
    return chat


@router.get("/fetchchat", response_model=List[ChatPublic])
async def fetch_chats(response: Response, limit: int = Query(50, ge=1, le=200), cursor: Optional[str] = None, current_user: dict = Depends(get_current_user), service: ConversationService = Depends(get_conversation_service)):
    chats, next_cursor = await service.fetch_chats(current_user["_id"], limit=limit, cursor=cursor)
    # the body stays a plain list; further pages are announced in a header
    if next_cursor:
        response.headers["X-Next-Cursor"] = next_cursor
    return chats


@router.post("/create-groupchat", response_model=ChatPublic, status_code=status.HTTP_201_CREATED)
async def create_group_chat(body: CreateGroupRequest, current_user: dict = Depends(get_current_user), service: ConversationService = Depends(get_conversation_service)):
    return await service.create_group(current_user["_id"], body.chat_name, body.users)


@router.patch("/renamegroup", response_model=ChatPublic)
async def rename_group(body: RenameGroupRequest, current_user: dict = Depends(get_current_user), service: ConversationService = Depends(get_conversation_service)):
    return await service.rename_group(current_user["_id"], body.chat_id, body.chat_name)


@router.patch("/add-to-groupchat", response_model=ChatPublic)
async def add_to_group(body: GroupMemberRequest, current_user: dict = Depends(get_current_user), service: ConversationService = Depends(get_conversation_service)):
    return await service.add_to_group(current_user["_id"], body.chat_id, body.user_id)


@router.patch("/remove-from-groupchat", response_model=ChatPublic)
async def remove_from_group(body: GroupMemberRequest, current_user: dict = Depends(get_current_user), service: ConversationService = Depends(get_conversation_service)):
    return await service.remove_from_group(current_user["_id"], body.chat_id, body.user_id)


@router.delete("/{chat_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_chat(chat_id: str, current_user: dict = Depends(get_current_user), service: ConversationService = Depends(get_conversation_service)):
    await service.delete_chat(current_user["_id"], chat_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
