"""HTTP tests for /rooms through the encrypted envelope."""
import pytest

from conftest import ALICE, BOB, CAROL, auth_headers, open_envelope


def post(client, cipher, path, user, payload):
    """POST *payload* encrypted under the ``data`` field."""
    return client.post(path, json={"data": cipher.encrypt(payload)}, headers=auth_headers(user))


@pytest.fixture
def direct_room(api_client, cipher):
    resp = post(api_client, cipher, "/rooms", ALICE, {"participantId": BOB})
    assert resp.status_code == 201
    return open_envelope(resp, cipher)["data"]


class TestEnvelope:

    def test_health_is_sealed(self, api_client, cipher):
        resp = api_client.get("/health")
        assert resp.status_code == 200
        body = open_envelope(resp, cipher)
        assert body["status_code"] == 200
        assert body["data"] == {"status": "ok"}
        assert "time_stamp" in body

    def test_missing_token_gives_sealed_401(self, api_client, cipher):
        resp = api_client.get("/rooms")
        assert resp.status_code == 401
        body = open_envelope(resp, cipher)
        assert body["statusCode"] == 401
        assert body["path"] == "/rooms"
        assert body["method"] == "GET"
        assert body["errors"] == ["Missing bearer token"]

    def test_invalid_token(self, api_client, cipher):
        resp = api_client.get("/rooms", headers={"Authorization": "Bearer not-a-jwt"})
        assert resp.status_code == 401

    def test_unknown_route_is_sealed(self, api_client, cipher):
        resp = api_client.get("/nowhere")
        assert resp.status_code == 404
        assert open_envelope(resp, cipher)["statusCode"] == 404

    def test_undecryptable_body(self, api_client, cipher):
        resp = api_client.post("/rooms", json={"data": "garbage"}, headers=auth_headers(ALICE))
        assert resp.status_code == 400
        assert open_envelope(resp, cipher)["errors"] == ["Invalid encrypted payload"]

    def test_plain_body_is_accepted(self, api_client, cipher):
        resp = api_client.post("/rooms", json={"participantId": CAROL}, headers=auth_headers(ALICE))
        assert resp.status_code == 201
        assert open_envelope(resp, cipher)["data"]["isGroup"] is False


class TestCreateRoom:

    def test_direct_room_is_idempotent(self, api_client, cipher, direct_room):
        resp = post(api_client, cipher, "/rooms", BOB, {"participantId": ALICE})
        assert open_envelope(resp, cipher)["data"]["id"] == direct_room["id"]

    def test_group_room(self, api_client, cipher):
        resp = post(api_client, cipher, "/rooms", ALICE, {
            "isGroup": True, "groupName": "Release", "participants": [BOB, CAROL],
        })
        assert resp.status_code == 201
        data = open_envelope(resp, cipher)["data"]
        assert data["groupName"] == "Release"
        assert [p["userId"] for p in data["participants"]] == [ALICE, BOB, CAROL]

    def test_duplicate_group_name(self, api_client, cipher):
        payload = {"isGroup": True, "groupName": "Release", "participants": [BOB]}
        post(api_client, cipher, "/rooms", ALICE, payload)
        resp = post(api_client, cipher, "/rooms", CAROL, {**payload, "groupName": "release"})
        assert resp.status_code == 400
        assert "already exists" in open_envelope(resp, cipher)["errors"][0]

    def test_group_name_too_short(self, api_client, cipher):
        resp = post(api_client, cipher, "/rooms", ALICE, {
            "isGroup": True, "groupName": "ab", "participants": [BOB],
        })
        assert resp.status_code == 400
        assert open_envelope(resp, cipher)["statusCode"] == 400


class TestMessages:

    def test_send_and_list(self, api_client, cipher, direct_room):
        room_id = direct_room["id"]
        resp = post(api_client, cipher, f"/rooms/{room_id}/message", ALICE, {"content": "hello"})
        assert resp.status_code == 201
        message = open_envelope(resp, cipher)["data"]
        assert message["senderId"] == ALICE

        rooms = open_envelope(api_client.get("/rooms", headers=auth_headers(BOB)), cipher)["data"]
        assert rooms[0]["lastMessage"]["id"] == message["id"]

        room = open_envelope(
            api_client.get(f"/rooms/{room_id}", headers=auth_headers(BOB)), cipher
        )["data"]
        assert [m["content"] for m in room["messages"]] == ["hello"]

    def test_non_participant_cannot_send(self, api_client, cipher, direct_room):
        resp = post(api_client, cipher, f"/rooms/{direct_room['id']}/message", CAROL, {"content": "hi"})
        assert resp.status_code == 401

    def test_non_participant_cannot_read(self, api_client, cipher, direct_room):
        resp = api_client.get(f"/rooms/{direct_room['id']}", headers=auth_headers(CAROL))
        assert resp.status_code == 401

    def test_pagination_with_plain_and_encrypted_query(self, api_client, cipher, direct_room):
        room_id = direct_room["id"]
        for i in range(25):
            post(api_client, cipher, f"/rooms/{room_id}/message", BOB, {"content": f"m{i}"})

        resp = api_client.get(
            f"/rooms/{room_id}/messages", params={"limit": 10, "offset": 0},
            headers=auth_headers(ALICE),
        )
        page = open_envelope(resp, cipher)["data"]
        assert (page["currentPage"], page["lastPage"], page["totalPages"]) == (3, False, 3)
        assert page["messages"][-1]["content"] == "m24"

        resp = api_client.get(
            f"/rooms/{room_id}/messages",
            params={"data": cipher.encrypt({"limit": 10, "offset": 20})},
            headers=auth_headers(ALICE),
        )
        page = open_envelope(resp, cipher)["data"]
        assert (page["currentPage"], page["lastPage"]) == (1, True)
        assert [m["content"] for m in page["messages"]] == [f"m{i}" for i in range(5)]

    def test_undecryptable_query_is_ignored(self, api_client, cipher, direct_room):
        resp = api_client.get(
            f"/rooms/{direct_room['id']}/messages",
            params={"data": "garbage"},
            headers=auth_headers(ALICE),
        )
        assert resp.status_code == 200
        assert open_envelope(resp, cipher)["data"]["currentPage"] == 0

    def test_limit_above_max(self, api_client, cipher, direct_room):
        resp = api_client.get(
            f"/rooms/{direct_room['id']}/messages", params={"limit": 500},
            headers=auth_headers(ALICE),
        )
        assert resp.status_code == 400


class TestParticipants:

    def test_add_participants(self, api_client, cipher):
        resp = post(api_client, cipher, "/rooms", ALICE, {
            "isGroup": True, "groupName": "Guild", "participants": [BOB],
        })
        room_id = open_envelope(resp, cipher)["data"]["id"]

        resp = post(api_client, cipher, f"/rooms/{room_id}/add-participants", ALICE,
                    {"userIds": [CAROL]})
        body = open_envelope(resp, cipher)
        assert resp.status_code == 200
        assert body["metadata"] == {"addedUserIds": [CAROL]}
        assert [p["userId"] for p in body["data"]["participants"]] == [ALICE, BOB, CAROL]

        resp = post(api_client, cipher, f"/rooms/{room_id}/add-participants", ALICE,
                    {"userIds": [CAROL]})
        body = open_envelope(resp, cipher)
        assert body["message"] == "No new participants"
        assert len(body["data"]["participants"]) == 3

    def test_malformed_user_id_is_rejected(self, api_client, cipher):
        resp = post(api_client, cipher, "/rooms", ALICE, {
            "isGroup": True, "groupName": "Guild", "participants": [BOB],
        })
        room_id = open_envelope(resp, cipher)["data"]["id"]

        resp = post(api_client, cipher, f"/rooms/{room_id}/add-participants", ALICE,
                    {"userIds": [CAROL, "not-a-uuid"]})
        assert resp.status_code == 400
        assert open_envelope(resp, cipher)["statusCode"] == 400

        room = open_envelope(api_client.get(f"/rooms/{room_id}", headers=auth_headers(ALICE)), cipher)
        assert len(room["data"]["participants"]) == 2

    def test_user_list(self, api_client, cipher):
        resp = api_client.get("/rooms/user/list", headers=auth_headers(BOB))
        users = open_envelope(resp, cipher)["data"]
        assert [u["id"] for u in users] == [ALICE, CAROL]
