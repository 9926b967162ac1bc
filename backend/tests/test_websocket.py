"""Tests for the /ws/chat live session endpoint.

Every connection first receives ``connected`` once its rooms are joined,
so broadcasts sent after that frame are guaranteed to reach it.
"""
import duckdb
import pytest
from starlette.websockets import WebSocketDisconnect

from conftest import ALICE, BOB, CAROL, auth_headers, make_token, open_envelope


def ws_url(user_id: str) -> str:
    return f"/ws/chat?token={make_token(user_id)}"


def receive_connected(ws):
    frame = ws.receive_json()
    assert frame["event"] == "connected"
    return frame["data"]


def create_room(client, cipher, user, payload) -> dict:
    resp = client.post("/rooms", json={"data": cipher.encrypt(payload)}, headers=auth_headers(user))
    assert resp.status_code == 201
    return open_envelope(resp, cipher)["data"]


class TestHandshake:

    def test_no_credential_is_rejected(self, api_client):
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with api_client.websocket_connect("/ws/chat"):
                pass
        assert exc_info.value.code == 1008

    def test_bad_token_is_rejected(self, api_client):
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with api_client.websocket_connect("/ws/chat?token=forged"):
                pass
        assert exc_info.value.code == 1008

    def test_unknown_subject_is_rejected(self, api_client):
        with pytest.raises(WebSocketDisconnect):
            with api_client.websocket_connect(ws_url("ghost")):
                pass

    def test_authorization_header_is_accepted(self, api_client):
        with api_client.websocket_connect("/ws/chat", headers=auth_headers(ALICE)) as ws:
            assert receive_connected(ws)["userId"] == ALICE

    def test_joins_existing_rooms_and_goes_online(self, api_client, cipher, app):
        room = create_room(api_client, cipher, ALICE, {"participantId": BOB})
        with api_client.websocket_connect(ws_url(ALICE)) as ws:
            assert receive_connected(ws)["rooms"] == [room["id"]]
            assert app.state.directory.get(ALICE).isOnline is True

    def test_store_failure_while_joining_closes_1011(self, api_client, app, monkeypatch):
        async def broken_lookup(ctx):
            raise duckdb.Error("database unavailable")

        monkeypatch.setattr(app.state.orchestrator, "room_ids_for_user", broken_lookup)
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with api_client.websocket_connect(ws_url(ALICE)) as ws:
                ws.receive_json()
        assert exc_info.value.code == 1011
        assert app.state.sessions.connections_by_user == {}
        assert app.state.directory.get(ALICE).isOnline is False


class TestMessaging:

    def test_send_message_reaches_room_once_per_connection(self, api_client, cipher):
        room = create_room(api_client, cipher, ALICE, {"participantId": BOB})
        with api_client.websocket_connect(ws_url(ALICE)) as alice, \
             api_client.websocket_connect(ws_url(BOB)) as bob:
            receive_connected(alice)
            receive_connected(bob)

            alice.send_json({"event": "send-message", "data": {"chatId": room["id"], "content": "hi bob"}})

            to_alice = alice.receive_json()
            to_bob = bob.receive_json()
            assert to_alice["event"] == "new-message"
            assert to_alice == to_bob
            assert to_bob["data"]["senderId"] == ALICE
            assert to_bob["data"]["content"] == "hi bob"

            # Next frame on alice is the following message, not a duplicate.
            bob.send_json({"event": "send-message", "data": {"chatId": room["id"], "content": "hey"}})
            assert alice.receive_json()["data"]["content"] == "hey"

    def test_http_send_is_broadcast(self, api_client, cipher):
        room = create_room(api_client, cipher, ALICE, {"participantId": BOB})
        with api_client.websocket_connect(ws_url(BOB)) as bob:
            receive_connected(bob)
            api_client.post(
                f"/rooms/{room['id']}/message",
                json={"data": cipher.encrypt({"content": "over http"})},
                headers=auth_headers(ALICE),
            )
            frame = bob.receive_json()
            assert frame["event"] == "new-message"
            assert frame["data"]["content"] == "over http"

    def test_multi_device_delivery(self, api_client, cipher):
        room = create_room(api_client, cipher, ALICE, {"participantId": BOB})
        with api_client.websocket_connect(ws_url(BOB)) as phone, \
             api_client.websocket_connect(ws_url(BOB)) as laptop, \
             api_client.websocket_connect(ws_url(ALICE)) as alice:
            for ws in (phone, laptop, alice):
                receive_connected(ws)
            alice.send_json({"event": "send-message", "data": {"chatId": room["id"], "content": "both?"}})
            assert phone.receive_json()["data"]["content"] == "both?"
            assert laptop.receive_json()["data"]["content"] == "both?"

    def test_non_participant_gets_error_and_stays_open(self, api_client, cipher):
        room = create_room(api_client, cipher, ALICE, {"participantId": BOB})
        with api_client.websocket_connect(ws_url(CAROL)) as carol:
            receive_connected(carol)
            carol.send_json({"event": "send-message", "data": {"chatId": room["id"], "content": "hi"}})
            frame = carol.receive_json()
            assert frame == {"event": "error", "data": {"message": "You are not a participant of this chat"}}

            carol.send_json({"event": "dance", "data": {}})
            assert carol.receive_json()["data"]["message"] == "Unknown event: dance"

    def test_invalid_payload(self, api_client):
        with api_client.websocket_connect(ws_url(ALICE)) as ws:
            receive_connected(ws)
            ws.send_json({"event": "send-message", "data": {"content": "no chat id"}})
            frame = ws.receive_json()
            assert frame["event"] == "error"
            assert "chatId" in frame["data"]["message"]

            ws.send_text("{not json")
            assert ws.receive_json()["data"]["message"] == "Invalid frame: expected JSON"


class TestTyping:

    def test_typing_skips_all_sender_connections(self, api_client, cipher):
        room = create_room(api_client, cipher, ALICE, {"participantId": BOB})
        with api_client.websocket_connect(ws_url(ALICE)) as alice, \
             api_client.websocket_connect(ws_url(ALICE)) as alice_tab, \
             api_client.websocket_connect(ws_url(BOB)) as bob:
            for ws in (alice, alice_tab, bob):
                receive_connected(ws)

            alice.send_json({"event": "typing", "data": {"chatId": room["id"]}})
            frame = bob.receive_json()
            assert frame == {
                "event": "typing",
                "data": {"chatId": room["id"], "userId": ALICE, "userName": "Alice Archer"},
            }

            # alice's other tab sees the next message, never the typing frame.
            bob.send_json({"event": "send-message", "data": {"chatId": room["id"], "content": "ok"}})
            assert alice_tab.receive_json()["event"] == "new-message"

    def test_typing_outside_subscribed_rooms(self, api_client, cipher):
        room = create_room(api_client, cipher, ALICE, {"participantId": BOB})
        with api_client.websocket_connect(ws_url(CAROL)) as carol:
            receive_connected(carol)
            carol.send_json({"event": "typing", "data": {"chatId": room["id"]}})
            assert carol.receive_json()["event"] == "error"


class TestRooms:

    def test_add_participants_joins_live_connections(self, api_client, cipher):
        room = create_room(api_client, cipher, ALICE, {
            "isGroup": True, "groupName": "Night Shift", "participants": [BOB],
        })
        with api_client.websocket_connect(ws_url(ALICE)) as alice, \
             api_client.websocket_connect(ws_url(CAROL)) as carol:
            receive_connected(alice)
            assert receive_connected(carol)["rooms"] == []

            alice.send_json({"event": "add-participants", "data": {"roomId": room["id"], "userIds": [CAROL]}})
            for ws in (alice, carol):
                frame = ws.receive_json()
                assert frame["event"] == "participants-added"
                assert frame["data"]["roomId"] == room["id"]
                assert frame["data"]["addedUserIds"] == [CAROL]
                assert frame["data"]["addedBy"] == ALICE
                assert [p["userId"] for p in frame["data"]["participants"]] == [ALICE, BOB, CAROL]

            alice.send_json({"event": "send-message", "data": {"chatId": room["id"], "content": "welcome"}})
            assert carol.receive_json()["data"]["content"] == "welcome"

    def test_new_room_is_live_without_reconnect(self, api_client, cipher):
        with api_client.websocket_connect(ws_url(BOB)) as bob:
            receive_connected(bob)
            room = create_room(api_client, cipher, ALICE, {"participantId": BOB})
            api_client.post(
                f"/rooms/{room['id']}/message",
                json={"data": cipher.encrypt({"content": "surprise"})},
                headers=auth_headers(ALICE),
            )
            assert bob.receive_json()["data"]["content"] == "surprise"
