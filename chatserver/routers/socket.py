import json
import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect

from chatserver.core.exceptions import AuthenticationFailure
from chatserver.services.message_service import MessageService, outcome_error_payload
from chatserver.utils.dependencies import get_message_service
from chatserver.utils.realtime_bus import RoomBroadcaster
from chatserver.utils.rooms import conversation_room, event
from chatserver.utils.security import extract_bearer
from chatserver.utils.websocket_manager import Connection, ConnectionRegistry


logger = logging.getLogger(__name__)

router = APIRouter(tags=["realtime"])

WS_UNAUTHORIZED = 4401


def _chat_id(data: Any) -> Optional[str]:
    if isinstance(data, dict):
        data = data.get("chatId")
    return data if isinstance(data, str) and data else None


class SocketSession:
    """Handles the client events of one authenticated connection, one frame at a time."""

    def __init__(self, connection: Connection, registry: ConnectionRegistry, broadcaster: RoomBroadcaster, service: MessageService) -> None:
        self.connection = connection
        self.registry = registry
        self.broadcaster = broadcaster
        self.service = service

    async def handle(self, raw: str) -> None:
        try:
            frame = json.loads(raw)
        except ValueError:
            logger.warning("Ignoring non-JSON frame from connection %s", self.connection.id)
            return
        if not isinstance(frame, dict):
            logger.warning("Ignoring malformed frame from connection %s", self.connection.id)
            return
        kind, data = frame.get("type"), frame.get("data")
        if kind == "new_message":
            await self.on_new_message(data)
        elif kind == "join_chat":
            chat_id = _chat_id(data)
            if chat_id:
                self.registry.join_room(self.connection, chat_id)
        elif kind == "leave_chat":
            chat_id = _chat_id(data)
            if chat_id:
                self.registry.leave_room(self.connection, chat_id)
        elif kind in ("typing", "stop_typing"):
            await self.on_typing(kind, _chat_id(data))
        elif kind == "ping":
            self.registry.send(self.connection, event("pong"))
        else:
            logger.debug("Ignoring unknown event %r from connection %s", kind, self.connection.id)

    async def on_new_message(self, data: Any) -> None:
        payload = data if isinstance(data, dict) else {}
        chat_id = payload.get("chatId")
        outcome = await self.service.submit_message(
            self.connection.user_id,
            chat_id,
            payload.get("content"),
            origin_connection_id=self.connection.id,
        )
        if outcome.ok:
            self.registry.send(self.connection, event("message_sent", outcome.message.to_payload()))
        else:
            self.registry.send(self.connection, event("message_error", outcome_error_payload(outcome, chat_id)))

    async def on_typing(self, kind: str, chat_id: Optional[str]) -> None:
        # only relay from sockets that have the chat open
        if not chat_id or not self.registry.has_joined(self.connection, chat_id):
            return
        await self.broadcaster.emit(
            conversation_room(chat_id),
            event(kind, self.connection.user_id),
            exclude_connection_id=self.connection.id,
        )


@router.websocket("/ws")
async def chat_socket(websocket: WebSocket, service: MessageService = Depends(get_message_service)):
    registry: ConnectionRegistry = websocket.app.state.registry
    # JWT via "Authorization: Bearer" header, or ?token=... for browser clients
    token = extract_bearer(websocket.headers.get("authorization")) or websocket.query_params.get("token")
    connection = registry.register(websocket)
    try:
        await registry.authenticate(connection, token)
    except AuthenticationFailure:
        await websocket.close(code=WS_UNAUTHORIZED)
        return

    session = SocketSession(connection, registry, websocket.app.state.broadcaster, service)
    try:
        # accept may fail if the client is already gone; the finally releases the entry
        await websocket.accept()
        registry.start(connection)
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
            raw = message.get("text")
            if raw is None:
                logger.warning("Ignoring binary frame from connection %s", connection.id)
                continue
            try:
                await session.handle(raw)
            except Exception:
                logger.exception("Failed to handle event from connection %s", connection.id)
    except WebSocketDisconnect:
        pass
    finally:
        registry.disconnect(connection)
