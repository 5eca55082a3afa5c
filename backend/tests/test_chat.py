"""Tests for the WebSocket chat channel and its HTTP side channel.

Protocol recap:
1. Client sends {type: "join", identity}; server replies joined, presenceSnapshot
2. {type: "subscribe", roomId, lastSeenSequence} -> backlog, then subscribed
3. {type: "send", roomId, body, requestId} -> messageAppended to subscribers, sendAck
"""
import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from app.chat.manager import set_manager
from app.main import app


def join(ws, identity_id, display_name="Guest"):
    """Helper to join and consume the joined/presenceSnapshot pair."""
    ws.send_json({"type": "join", "identity": {"id": identity_id, "displayName": display_name}})
    joined = ws.receive_json()
    assert joined["type"] == "joined"
    assert joined["identity"]["id"] == identity_id
    snapshot = ws.receive_json()
    assert snapshot["type"] == "presenceSnapshot"
    return joined, snapshot


def subscribe(ws, room_id, last_seen=None):
    """Helper to subscribe and collect everything up to the subscribed event."""
    request = {"type": "subscribe", "roomId": room_id}
    if last_seen is not None:
        request["lastSeenSequence"] = last_seen
    ws.send_json(request)
    events = []
    while True:
        event = ws.receive_json()
        events.append(event)
        if event["type"] == "subscribed":
            return events


def send(ws, room_id, text, request_id="r"):
    ws.send_json({"type": "send", "roomId": room_id, "body": {"text": text}, "requestId": request_id})


class TestWebSocketProtocol:
    """End-to-end protocol tests over the /ws endpoint."""

    def test_join_subscribe_send(self, api_client):
        with api_client.websocket_connect("/ws") as ws:
            join(ws, "u1", "Alice")
            events = subscribe(ws, "global")
            assert events == [{"type": "subscribed", "roomId": "global", "headSequence": 0}]

            send(ws, "global", "hi", "req-1")
            appended = ws.receive_json()
            ack = ws.receive_json()

        assert appended["type"] == "messageAppended"
        assert appended["message"]["sequence"] == 1
        assert appended["message"]["authorId"] == "u1"
        assert appended["message"]["body"]["text"] == "hi"
        assert ack["type"] == "sendAck"
        assert ack["ok"] is True
        assert ack["requestId"] == "req-1"

    def test_two_clients_same_room(self, api_client):
        with api_client.websocket_connect("/ws") as ws1, \
             api_client.websocket_connect("/ws") as ws2:
            join(ws1, "u1")
            subscribe(ws1, "global")
            _, snapshot = join(ws2, "u2")
            subscribe(ws2, "global")

            assert {p["identity"]["id"] for p in snapshot["presence"]} == {"u1", "u2"}
            online = ws1.receive_json()
            assert online["type"] == "presenceChanged"
            assert online["identity"]["id"] == "u2"
            assert online["state"] == "online"

            send(ws2, "global", "hello from u2")
            received = ws1.receive_json()
            assert received["type"] == "messageAppended"
            assert received["message"]["authorId"] == "u2"

    def test_reconnect_catches_up(self, api_client):
        with api_client.websocket_connect("/ws") as ws:
            join(ws, "u1")
            subscribe(ws, "global")
            for i in range(3):
                send(ws, "global", f"m{i}", f"r{i}")
                ws.receive_json()
                ws.receive_json()

        with api_client.websocket_connect("/ws") as ws:
            join(ws, "u1")
            events = subscribe(ws, "global", last_seen=1)

        assert [e["message"]["sequence"] for e in events if e["type"] == "messageAppended"] == [2, 3]
        assert events[-1]["headSequence"] == 3

    def test_message_before_join_rejected(self, api_client):
        with api_client.websocket_connect("/ws") as ws:
            ws.send_json({"type": "subscribe", "roomId": "global"})
            error = ws.receive_json()

        assert error["type"] == "error"
        assert error["code"] == "NotJoined"
        assert error["remediation"] == "join"

    def test_unknown_message_type(self, api_client):
        with api_client.websocket_connect("/ws") as ws:
            join(ws, "u1")
            ws.send_json({"type": "dance"})
            error = ws.receive_json()

        assert error["code"] == "InvalidMessage"

    def test_invalid_json(self, api_client):
        with api_client.websocket_connect("/ws") as ws:
            ws.send_text("not json")
            error = ws.receive_json()

        assert error["code"] == "InvalidMessage"

    def test_binary_frame_rejected(self, api_client):
        with api_client.websocket_connect("/ws") as ws:
            join(ws, "u1")
            ws.send_bytes(b"\x00")
            error = ws.receive_json()
            # The connection stays usable.
            ws.send_json({"type": "heartbeat"})
            ack = ws.receive_json()

        assert error["code"] == "InvalidMessage"
        assert ack == {"type": "heartbeatAck"}

    def test_invalid_identity(self, api_client):
        with api_client.websocket_connect("/ws") as ws:
            ws.send_json({"type": "join", "identity": {"id": "no spaces allowed"}})
            error = ws.receive_json()

        assert error["code"] == "InvalidMessage"

    def test_second_join_rejected(self, api_client):
        with api_client.websocket_connect("/ws") as ws:
            join(ws, "u1")
            ws.send_json({"type": "join", "identity": {"id": "u1"}})
            error = ws.receive_json()

        assert error["code"] == "DuplicateHandshake"

    def test_unopened_direct_room(self, api_client):
        with api_client.websocket_connect("/ws") as ws:
            join(ws, "u1")
            ws.send_json({"type": "subscribe", "roomId": "dm:u1:u2"})
            error = ws.receive_json()

        assert error["code"] == "RoomNotFound"
        assert error["remediation"] == "openDirect"

    def test_direct_room_members_only(self, api_client):
        with api_client.websocket_connect("/ws") as ws:
            join(ws, "u1")
            ws.send_json({"type": "openDirect", "peerId": "u2"})
            opened = ws.receive_json()
            assert opened["type"] == "directOpened"
            assert opened["room"]["roomId"] == "dm:u1:u2"

        with api_client.websocket_connect("/ws") as ws:
            join(ws, "u3")
            ws.send_json({"type": "subscribe", "roomId": "dm:u1:u2"})
            error = ws.receive_json()

        assert error["code"] == "Forbidden"

    def test_heartbeat(self, api_client):
        with api_client.websocket_connect("/ws") as ws:
            join(ws, "u1")
            ws.send_json({"type": "heartbeat"})
            assert ws.receive_json() == {"type": "heartbeatAck"}

    def test_typing_relayed(self, api_client):
        with api_client.websocket_connect("/ws") as ws1, \
             api_client.websocket_connect("/ws") as ws2:
            join(ws1, "u1")
            subscribe(ws1, "global")
            join(ws2, "u2")
            subscribe(ws2, "global")
            assert ws1.receive_json()["type"] == "presenceChanged"

            ws2.send_json({"type": "typing", "roomId": "global", "isTyping": True})
            typing = ws1.receive_json()

        assert typing == {
            "type": "typing",
            "identity": {"id": "u2", "displayName": "Guest", "profileRef": None},
            "roomId": "global",
            "isTyping": True,
        }

    def test_profile_update(self, api_client):
        with api_client.websocket_connect("/ws") as ws:
            join(ws, "u1", "Alice")
            ws.send_json({"type": "profile", "displayName": "<b>Alicia</b>"})
            updated = ws.receive_json()

        assert updated["type"] == "identityUpdated"
        assert updated["identity"]["displayName"] == "bAlicia/b"

    def test_unavailable_without_manager(self):
        set_manager(None)
        client = TestClient(app)
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with client.websocket_connect("/ws"):
                pass
        assert exc_info.value.code == 1013


class TestHttpSideChannel:
    """Tests for the HTTP endpoints."""

    def test_health(self, api_client):
        assert api_client.get("/health").json() == {"status": "ok"}

    def test_room_messages(self, api_client):
        with api_client.websocket_connect("/ws") as ws:
            join(ws, "u1")
            subscribe(ws, "global")
            for i in range(3):
                send(ws, "global", f"m{i}", f"r{i}")
                ws.receive_json()
                ws.receive_json()

        since = api_client.get("/rooms/global/messages", params={"since": 1}).json()
        assert [m["sequence"] for m in since["messages"]] == [2, 3]
        assert since["headSequence"] == 3

        snapshot = api_client.get("/rooms/global/messages", params={"limit": 2}).json()
        assert [m["body"]["text"] for m in snapshot["messages"]] == ["m1", "m2"]

        rooms = api_client.get("/rooms").json()["rooms"]
        assert rooms[0]["roomId"] == "global"
        assert rooms[0]["headSequence"] == 3

    def test_unknown_room(self, api_client):
        response = api_client.get("/rooms/nowhere/messages", params={"since": 0})

        assert response.status_code == 404
        assert response.json()["error"] == "RoomNotFound"

    def test_open_direct(self, api_client):
        response = api_client.post("/rooms/direct", json={"a": "zed", "b": "amy"})

        assert response.status_code == 200
        assert response.json()["roomId"] == "dm:amy:zed"
        assert response.json()["members"] == ["amy", "zed"]

    def test_open_direct_with_self(self, api_client):
        response = api_client.post("/rooms/direct", json={"a": "amy", "b": "amy"})

        assert response.status_code == 400

    def test_presence(self, api_client):
        with api_client.websocket_connect("/ws") as ws:
            join(ws, "u1", "Alice")
            presence = api_client.get("/presence").json()["presence"]

        assert presence[0]["identity"]["displayName"] == "Alice"
        assert presence[0]["state"] == "online"

    def test_unavailable_without_manager(self):
        set_manager(None)
        client = TestClient(app)

        assert client.get("/rooms").status_code == 503
