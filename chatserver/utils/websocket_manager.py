import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, List, Optional, Set

from chatserver.core.exceptions import AuthenticationFailure
from chatserver.utils.rooms import conversation_room, personal_room
from chatserver.utils.security import TokenVerifier


logger = logging.getLogger(__name__)


@dataclass(eq=False)
class Connection:
    """One live socket. Lives only in this process and only while the socket is open."""

    websocket: Any
    queue_size: int = 256
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    user_id: Optional[str] = None
    rooms: Set[str] = field(default_factory=set)
    writer: Optional[asyncio.Task] = None
    closed: bool = False

    def __post_init__(self) -> None:
        self.outbox: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)

    @property
    def authenticated(self) -> bool:
        return self.user_id is not None


class ConnectionRegistry:
    """
    Tracks live connections and the rooms each of them is bound to.

    A personal room (one per user id) is joined on authentication and is the
    only delivery target the fan-out engine trusts. Conversation rooms are
    joined on request while a chat is open in the client and are used for
    typing relays only.

    Every outbound frame goes through a per-connection bounded queue drained
    by that connection's writer task, so a slow socket never blocks the
    sender and frames to one socket keep their order.
    """

    def __init__(self, verifier: TokenVerifier, auth_timeout: float = 5.0, send_queue_size: int = 256) -> None:
        self._verifier = verifier
        self._auth_timeout = auth_timeout
        self._send_queue_size = send_queue_size
        self._connections: Dict[str, Connection] = {}
        self._rooms: Dict[str, Set[str]] = {}

    def register(self, websocket: Any) -> Connection:
        connection = Connection(websocket=websocket, queue_size=self._send_queue_size)
        self._connections[connection.id] = connection
        return connection

    async def authenticate(self, connection: Connection, credential: Optional[str]) -> str:
        if connection.authenticated:
            return connection.user_id
        try:
            user_id = await asyncio.wait_for(self._verifier.verify(credential), timeout=self._auth_timeout)
        except AuthenticationFailure as exc:
            logger.info("Rejected connection %s: %s", connection.id, exc.code)
            self.disconnect(connection)
            raise
        except asyncio.TimeoutError as exc:
            logger.warning("Authentication timed out for connection %s", connection.id)
            self.disconnect(connection)
            raise AuthenticationFailure("Authentication timed out", code="AUTH_TIMEOUT") from exc
        if connection.closed:
            raise AuthenticationFailure("Connection closed during authentication", code="CONNECTION_CLOSED")
        connection.user_id = user_id
        self._join(connection, personal_room(user_id))
        logger.info("Connection %s authenticated as user %s", connection.id, user_id)
        return user_id

    def start(self, connection: Connection) -> None:
        if connection.writer is None and not connection.closed:
            connection.writer = asyncio.create_task(self._drain(connection))

    def join_room(self, connection: Connection, chat_id: str) -> bool:
        if not self._is_live(connection, "join"):
            return False
        self._join(connection, conversation_room(chat_id))
        logger.debug("User %s joined chat room %s", connection.user_id, chat_id)
        return True

    def leave_room(self, connection: Connection, chat_id: str) -> bool:
        if not self._is_live(connection, "leave"):
            return False
        self._leave(connection, conversation_room(chat_id))
        return True

    def has_joined(self, connection: Connection, chat_id: str) -> bool:
        return conversation_room(chat_id) in connection.rooms

    def disconnect(self, connection: Connection) -> None:
        if connection.closed:
            return
        connection.closed = True
        self._connections.pop(connection.id, None)
        for room in list(connection.rooms):
            self._leave(connection, room)
        writer = connection.writer
        if writer is not None and writer is not asyncio.current_task():
            writer.cancel()
        if connection.authenticated:
            logger.info("Connection %s of user %s disconnected", connection.id, connection.user_id)

    def send(self, connection: Connection, frame: Dict[str, Any]) -> bool:
        if connection.closed:
            return False
        try:
            connection.outbox.put_nowait(frame)
        except asyncio.QueueFull:
            logger.warning("Outbound queue full for connection %s; dropping %s", connection.id, frame.get("type"))
            return False
        return True

    def emit_to_room(self, room: str, frame: Dict[str, Any], exclude_connection_id: Optional[str] = None) -> int:
        delivered = 0
        for connection_id in list(self._rooms.get(room, ())):
            if connection_id == exclude_connection_id:
                continue
            connection = self._connections.get(connection_id)
            if connection is not None and self.send(connection, frame):
                delivered += 1
        return delivered

    def connections_for_user(self, user_id: str) -> List[Connection]:
        ids = self._rooms.get(personal_room(user_id), ())
        return [self._connections[i] for i in ids if i in self._connections]

    def rooms_of(self, connection: Connection) -> FrozenSet[str]:
        return frozenset(connection.rooms)

    def evict_user_from_room(self, user_id: str, chat_id: str) -> int:
        evicted = 0
        for connection in self.connections_for_user(user_id):
            if self.has_joined(connection, chat_id):
                self._leave(connection, conversation_room(chat_id))
                evicted += 1
        return evicted

    def discard_room(self, chat_id: str) -> None:
        room = conversation_room(chat_id)
        for connection_id in self._rooms.pop(room, set()):
            connection = self._connections.get(connection_id)
            if connection is not None:
                connection.rooms.discard(room)

    async def close(self) -> None:
        writers = [c.writer for c in self._connections.values() if c.writer is not None]
        for connection in list(self._connections.values()):
            self.disconnect(connection)
        if writers:
            await asyncio.gather(*writers, return_exceptions=True)

    def _is_live(self, connection: Connection, action: str) -> bool:
        if connection.closed or not connection.authenticated:
            logger.warning("Ignoring %s on unauthenticated connection %s", action, connection.id)
            return False
        return True

    def _join(self, connection: Connection, room: str) -> None:
        connection.rooms.add(room)
        self._rooms.setdefault(room, set()).add(connection.id)

    def _leave(self, connection: Connection, room: str) -> None:
        connection.rooms.discard(room)
        members = self._rooms.get(room)
        if members is not None:
            members.discard(connection.id)
            if not members:
                del self._rooms[room]

    async def _drain(self, connection: Connection) -> None:
        while True:
            frame = await connection.outbox.get()
            try:
                await connection.websocket.send_json(frame)
            except Exception:
                # one dead recipient must not affect anyone else
                logger.warning("Send to connection %s failed; closing it", connection.id, exc_info=True)
                self.disconnect(connection)
                return
