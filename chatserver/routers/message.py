from typing import Optional

from fastapi import APIRouter, Depends, Query, Response, status

from chatserver.schemas.message import MessagePage, MessagePublic, SendMessageRequest, UpdateMessageRequest
from chatserver.services.message_service import MessageService
from chatserver.utils.dependencies import get_current_user, get_message_service


router = APIRouter(prefix="/message", tags=["message"])


@router.post("/send", response_model=MessagePublic, status_code=status.HTTP_201_CREATED)
async def send_message(body: SendMessageRequest, current_user: dict = Depends(get_current_user), service: MessageService = Depends(get_message_service)):
    # same path as the socket's new_message, so online members get it live too
    outcome = await service.submit_message(current_user["_id"], body.chat_id, body.content)
    return outcome.raise_for_status()


@router.get("/get/{chat_id}", response_model=MessagePage)
async def get_messages(chat_id: str, limit: int = Query(50, ge=1, le=200), cursor: Optional[str] = None, current_user: dict = Depends(get_current_user), service: MessageService = Depends(get_message_service)):
    return await service.get_history(current_user["_id"], chat_id, limit=limit, cursor=cursor)


@router.patch("/update/{message_id}", response_model=MessagePublic)
async def update_message(message_id: str, body: UpdateMessageRequest, current_user: dict = Depends(get_current_user), service: MessageService = Depends(get_message_service)):
    return await service.update_message(current_user["_id"], message_id, body.new_content)


@router.delete("/delete/{message_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_message(message_id: str, current_user: dict = Depends(get_current_user), service: MessageService = Depends(get_message_service)):
    await service.delete_message(current_user["_id"], message_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
