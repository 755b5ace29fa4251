import pytest
from starlette.websockets import WebSocketDisconnect

from chatserver.main import create_app
from chatserver.routers.socket import WS_UNAUTHORIZED, SocketSession, chat_socket


def open_direct_chat(client, auth_headers, caller, other):
    return client.post("/chat/accesschat", json={"userId": other}, headers=auth_headers(caller)).json()["_id"]


def roundtrip(ws):
    """Send a ping and return the next frame; everything queued before it arrives first."""
    ws.send_json({"type": "ping"})
    return ws.receive_json()


@pytest.mark.parametrize("query", ["", "?token=not-a-jwt"])
def test_unauthenticated_socket_is_closed(client, query):
    with pytest.raises(WebSocketDisconnect) as exc_info:
        with client.websocket_connect(f"/ws{query}"):
            pass

    assert exc_info.value.code == WS_UNAUTHORIZED


def test_message_reaches_recipient_and_sender_gets_ack(client, token, auth_headers):
    chat_id = open_direct_chat(client, auth_headers, "u1", "u2")

    with client.websocket_connect(f"/ws?token={token('u1')}") as alice, client.websocket_connect(f"/ws?token={token('u2')}") as bob:
        alice.send_json({"type": "new_message", "data": {"chatId": chat_id, "content": "hello"}})

        received = bob.receive_json()
        ack = alice.receive_json()

        assert received["type"] == "message_received"
        assert received["data"]["content"] == "hello"
        assert received["data"]["sender"]["_id"] == "u1"
        assert received["data"]["chat"] == chat_id
        assert ack["type"] == "message_sent"
        assert ack["data"]["_id"] == received["data"]["_id"]
        assert roundtrip(alice) == {"type": "pong", "data": None}

    history = client.get(f"/message/get/{chat_id}", headers=auth_headers("u2")).json()
    assert [m["content"] for m in history["items"]] == ["hello"]


def test_header_credentials_are_accepted(client, auth_headers):
    with client.websocket_connect("/ws", headers=auth_headers("u1")) as ws:
        assert roundtrip(ws)["type"] == "pong"


def test_rest_send_is_pushed_live(client, token, auth_headers):
    chat_id = open_direct_chat(client, auth_headers, "u1", "u2")

    with client.websocket_connect(f"/ws?token={token('u2')}") as bob:
        client.post("/message/send", json={"chatId": chat_id, "content": "from the api"}, headers=auth_headers("u1"))

        frame = bob.receive_json()

    assert frame["type"] == "message_received"
    assert frame["data"]["content"] == "from the api"


def test_non_member_gets_message_error(client, token, auth_headers):
    chat_id = open_direct_chat(client, auth_headers, "u1", "u2")

    with client.websocket_connect(f"/ws?token={token('u3')}") as mallory, client.websocket_connect(f"/ws?token={token('u2')}") as bob:
        # joining the room does not make mallory a member
        mallory.send_json({"type": "join_chat", "data": chat_id})
        mallory.send_json({"type": "new_message", "data": {"chatId": chat_id, "content": "sneaky"}})

        error = mallory.receive_json()

        assert error["type"] == "message_error"
        assert error["data"]["status"] == "forbidden"
        assert error["data"]["chatId"] == chat_id
        assert roundtrip(bob)["type"] == "pong"


def test_invalid_content_gets_message_error(client, token, auth_headers):
    chat_id = open_direct_chat(client, auth_headers, "u1", "u2")

    with client.websocket_connect(f"/ws?token={token('u1')}") as alice:
        alice.send_json({"type": "new_message", "data": {"chatId": chat_id, "content": "  "}})

        assert alice.receive_json()["data"]["status"] == "invalid_content"


def test_typing_is_relayed_to_joined_sockets_only(client, token, auth_headers):
    chat_id = open_direct_chat(client, auth_headers, "u1", "u2")

    with client.websocket_connect(f"/ws?token={token('u1')}") as alice, client.websocket_connect(f"/ws?token={token('u2')}") as bob:
        alice.send_json({"type": "join_chat", "data": chat_id})
        bob.send_json({"type": "join_chat", "data": {"chatId": chat_id}})
        roundtrip(alice)
        roundtrip(bob)

        alice.send_json({"type": "typing", "data": chat_id})
        assert bob.receive_json() == {"type": "typing", "data": "u1"}
        alice.send_json({"type": "stop_typing", "data": chat_id})
        assert bob.receive_json() == {"type": "stop_typing", "data": "u1"}
        assert roundtrip(alice)["type"] == "pong"

        bob.send_json({"type": "leave_chat", "data": chat_id})
        roundtrip(bob)
        alice.send_json({"type": "typing", "data": chat_id})
        roundtrip(alice)
        assert roundtrip(bob)["type"] == "pong"


def test_malformed_frames_are_ignored(client, token):
    with client.websocket_connect(f"/ws?token={token('u1')}") as ws:
        ws.send_text("not json")
        ws.send_json(["a", "list"])
        ws.send_json({"type": "teleport"})

        assert roundtrip(ws)["type"] == "pong"


def test_closed_socket_is_removed_from_registry(app, client, token):
    registry = app.state.registry

    with client.websocket_connect(f"/ws?token={token('u1')}") as ws:
        roundtrip(ws)
        assert len(registry.connections_for_user("u1")) == 1

    assert registry.connections_for_user("u1") == []


def test_binary_frame_does_not_end_session(client, token):
    with client.websocket_connect(f"/ws?token={token('u1')}") as ws:
        ws.send_bytes(b"\x00\x01")

        assert roundtrip(ws)["type"] == "pong"


def test_failing_event_handler_keeps_socket_open(client, token, monkeypatch):
    async def broken(self, data):
        raise RuntimeError("handler bug")

    monkeypatch.setattr(SocketSession, "on_new_message", broken)

    with client.websocket_connect(f"/ws?token={token('u1')}") as ws:
        ws.send_json({"type": "new_message", "data": {"chatId": "x", "content": "hi"}})

        assert roundtrip(ws)["type"] == "pong"


class DroppedHandshakeSocket:
    def __init__(self, app, token):
        self.app = app
        self.headers = {}
        self.query_params = {"token": token}

    async def accept(self):
        raise WebSocketDisconnect(code=1006)

    async def close(self, code=1000):
        return


@pytest.mark.asyncio
async def test_failed_accept_releases_registry_entry(settings, db, token):
    app = create_app(settings, database=db)
    registry = app.state.registry

    await chat_socket(DroppedHandshakeSocket(app, token("u9")), service=None)

    assert registry.connections_for_user("u9") == []
