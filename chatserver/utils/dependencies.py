from fastapi import Depends, Request
from starlette.requests import HTTPConnection

from chatserver.database.connection import mongo_db_dependency
from chatserver.repositories.conversation_repository import ConversationRepository
from chatserver.repositories.message_repository import MessageRepository
from chatserver.repositories.user_repository import UserRepository
from chatserver.services.conversation_service import ConversationService
from chatserver.services.membership import MembershipPropagator
from chatserver.services.message_service import MessageService
from chatserver.utils.security import TokenVerifier, extract_bearer


async def get_current_user(request: Request) -> dict:
    verifier: TokenVerifier = request.app.state.verifier
    token = extract_bearer(request.headers.get("authorization"))
    user_id = await verifier.verify(token)
    return {"_id": user_id}


def get_message_service(connection: HTTPConnection, db=Depends(mongo_db_dependency)) -> MessageService:
    settings = connection.app.state.settings
    return MessageService(
        MessageRepository(db),
        ConversationRepository(db),
        UserRepository(db),
        connection.app.state.broadcaster,
        max_message_length=settings.max_message_length,
        echo_to_sender_devices=settings.echo_to_sender_devices,
    )


def get_conversation_service(connection: HTTPConnection, db=Depends(mongo_db_dependency)) -> ConversationService:
    message_repo = MessageRepository(db)
    return ConversationService(
        ConversationRepository(db),
        message_repo,
        UserRepository(db),
        MembershipPropagator(message_repo, connection.app.state.registry),
    )
