"""
API tests through FastAPI's TestClient: accounts, friends, chats, file
shares and the WebSocket relay.
"""
import sqlite3

import pytest
from starlette.websockets import WebSocketDisconnect

from config import settings

ZIP_BYTES = b"PK\x03\x04" + b"\x00" * 64


def _register(client, name: str, email: str) -> dict:
    response = client.post("/users", json={"name": name, "email": email})
    assert response.status_code == 201
    return response.json()


def _auth(user: dict) -> dict:
    return {"Authorization": f"Bearer {user['api_token']}"}


def _upload(client, user, content=ZIP_BYTES, name="photos.zip", content_type="application/zip", **form):
    return client.post(
        "/files/upload",
        headers=_auth(user),
        files={"file": (name, content, content_type)},
        data={k: str(v) for k, v in form.items()},
    )


@pytest.fixture
def alice(client):
    return _register(client, "Alice", "alice@example.com")


@pytest.fixture
def bob(client):
    return _register(client, "Bob", "bob@example.com")


class TestUsers:

    def test_register_returns_code_and_token(self, client, alice):
        assert alice["user_code"].startswith("CHL")
        assert alice["api_token"]
        assert alice["online"] is False

    def test_duplicate_email_rejected(self, client, alice):
        response = client.post("/users", json={"name": "Other", "email": "ALICE@example.com"})
        assert response.status_code == 400
        assert response.json()["code"] == "validation_error"

    def test_me_requires_token(self, client, alice):
        assert client.get("/users/me").status_code == 401
        assert client.get("/users/me", headers={"Authorization": "Bearer nope"}).status_code == 401
        me = client.get("/users/me", headers=_auth(alice))
        assert me.json()["email"] == "alice@example.com"

    def test_online_comes_from_live_connections(self, client, alice):
        raw = sqlite3.connect(settings.DATABASE_PATH)
        raw.execute("UPDATE users SET online = 1 WHERE id = ?", (alice["id"],))
        raw.commit()
        raw.close()

        assert client.get("/users/me", headers=_auth(alice)).json()["online"] is False
        with client.websocket_connect(f"/ws/chat?token={alice['api_token']}") as ws:
            ws.send_json({"type": "ping"})
            assert ws.receive_json() == {"type": "pong"}
            assert client.get("/users/me", headers=_auth(alice)).json()["online"] is True

    def test_lookup_by_code(self, client, alice, bob):
        found = client.get(f"/users/{bob['user_code'].lower()}", headers=_auth(alice))
        assert found.status_code == 200
        assert found.json()["id"] == bob["id"]
        assert client.get("/users/CHLXXX", headers=_auth(alice)).status_code == 404


class TestFriends:

    def test_request_accept_creates_friendship_and_chat(self, client, alice, bob):
        sent = client.post("/friends/requests", json={"user_code": bob["user_code"]}, headers=_auth(alice))
        assert sent.status_code == 201

        duplicate = client.post("/friends/requests", json={"user_code": bob["user_code"]}, headers=_auth(alice))
        assert duplicate.status_code == 400

        pending = client.get("/friends/requests", headers=_auth(bob)).json()
        assert [r["from_user_id"] for r in pending] == [alice["id"]]

        accepted = client.post(f"/friends/requests/{pending[0]['id']}/accept", headers=_auth(bob))
        assert accepted.status_code == 200
        chat = accepted.json()["chat"]
        assert chat["type"] == "direct"
        assert sorted(chat["participants"]) == sorted([alice["id"], bob["id"]])

        friends = client.get("/friends", headers=_auth(alice)).json()
        assert [f["id"] for f in friends] == [bob["id"]]

        again = client.post("/friends/requests", json={"user_code": bob["user_code"]}, headers=_auth(alice))
        assert again.status_code == 400

    def test_only_recipient_can_respond(self, client, alice, bob):
        request_id = client.post(
            "/friends/requests", json={"user_code": bob["user_code"]}, headers=_auth(alice)
        ).json()["id"]
        assert client.post(f"/friends/requests/{request_id}/accept", headers=_auth(alice)).status_code == 404
        rejected = client.post(f"/friends/requests/{request_id}/reject", headers=_auth(bob))
        assert rejected.json()["request"]["status"] == "rejected"

    def test_cannot_befriend_self(self, client, alice):
        response = client.post("/friends/requests", json={"user_code": alice["user_code"]}, headers=_auth(alice))
        assert response.status_code == 400


class TestChats:

    def test_direct_chat_is_unique_per_pair(self, client, alice, bob):
        first = client.post("/chats/direct", json={"user_code": bob["user_code"]}, headers=_auth(alice)).json()
        second = client.post("/chats/direct", json={"user_code": alice["user_code"]}, headers=_auth(bob)).json()
        assert first["id"] == second["id"]

    def test_group_chat_and_history_access(self, client, alice, bob):
        carol = _register(client, "Carol", "carol@example.com")
        group = client.post(
            "/chats/group", json={"name": "Trip", "member_codes": [bob["user_code"]]}, headers=_auth(alice)
        )
        assert group.status_code == 201
        chat_id = group.json()["id"]

        assert client.get(f"/chats/{chat_id}/messages", headers=_auth(bob)).json() == []
        assert client.get(f"/chats/{chat_id}/messages", headers=_auth(carol)).status_code == 403
        assert [c["id"] for c in client.get("/chats", headers=_auth(bob)).json()] == [chat_id]

    def test_group_needs_name(self, client, alice):
        response = client.post("/chats/group", json={"name": " ", "member_codes": []}, headers=_auth(alice))
        assert response.status_code == 400


class TestFileShares:

    def test_upload_then_single_download(self, client, alice, bob):
        uploaded = _upload(client, alice)
        assert uploaded.status_code == 201
        code = uploaded.json()["share_code"]
        assert len(code) == 6

        info = client.get(f"/files/info/{code}").json()
        assert info["can_download"] is True
        assert info["original_name"] == "photos.zip"

        download = client.get(f"/files/download/{code.lower()}", headers=_auth(bob), follow_redirects=False)
        assert download.status_code == 302
        blob = client.get(download.headers["location"])
        assert blob.status_code == 200
        assert blob.content == ZIP_BYTES
        assert client.get(download.headers["location"]).status_code == 410
        assert client.get(download.headers["location"].split("?")[0]).status_code == 403

        again = client.get(f"/files/download/{code}", headers=_auth(bob), follow_redirects=False)
        assert again.status_code == 410
        assert again.json()["code"] == "limit_reached"

        info = client.get(f"/files/info/{code}").json()
        assert info["can_download"] is False
        assert info["download_count"] == 1

    def test_unknown_code_is_404(self, client, alice):
        response = client.get("/files/download/ZZZZZZ", headers=_auth(alice), follow_redirects=False)
        assert response.status_code == 404
        assert client.get("/files/info/ZZZZZZ").status_code == 404

    def test_download_requires_auth(self, client, alice):
        code = _upload(client, alice).json()["share_code"]
        assert client.get(f"/files/download/{code}", follow_redirects=False).status_code == 401

    @pytest.mark.parametrize("name,content,content_type", [
        ("notes.txt", b"hello", "text/plain"),
        ("fake.zip", b"not a zip", "application/zip"),
        ("photos.zip", ZIP_BYTES, "image/png"),
        ("empty.zip", b"", "application/zip"),
    ])
    def test_rejects_non_zip_uploads(self, client, alice, name, content, content_type):
        response = _upload(client, alice, content=content, name=name, content_type=content_type)
        assert response.status_code == 400
        assert response.json()["code"] == "validation_error"

    def test_multi_download_share(self, client, alice, bob):
        code = _upload(client, alice, max_downloads=2).json()["share_code"]
        for _ in range(2):
            assert client.get(f"/files/download/{code}", headers=_auth(bob), follow_redirects=False).status_code == 302
        assert client.get(f"/files/download/{code}", headers=_auth(bob), follow_redirects=False).status_code == 410

    def test_download_history_is_uploader_only(self, client, alice, bob):
        code = _upload(client, alice).json()["share_code"]
        client.get(f"/files/download/{code}", headers=_auth(bob), follow_redirects=False)

        history = client.get(f"/files/{code}/downloads", headers=_auth(alice))
        assert [d["downloader_id"] for d in history.json()] == [bob["id"]]
        assert client.get(f"/files/{code}/downloads", headers=_auth(bob)).status_code == 403

    def test_uploader_can_list_and_revoke(self, client, alice, bob):
        code = _upload(client, alice).json()["share_code"]
        mine = client.get("/files/mine", headers=_auth(alice)).json()
        assert [s["share_code"] for s in mine] == [code]

        assert client.delete(f"/files/{code}", headers=_auth(bob)).status_code == 403
        revoked = client.delete(f"/files/{code}", headers=_auth(alice))
        assert revoked.json()["can_download"] is False

        response = client.get(f"/files/download/{code}", headers=_auth(bob), follow_redirects=False)
        assert response.status_code == 410
        assert response.json()["code"] == "expired"


class TestWebSocket:

    def test_invalid_token_is_refused(self, client):
        with pytest.raises(WebSocketDisconnect):
            with client.websocket_connect("/ws/chat?token=bogus") as ws:
                ws.receive_json()

    def test_presence_and_relay(self, client, alice, bob):
        chat_id = client.post(
            "/chats/direct", json={"user_code": bob["user_code"]}, headers=_auth(alice)
        ).json()["id"]

        with client.websocket_connect(f"/ws/chat?token={alice['api_token']}") as wa:
            wa.send_json({"type": "join_room", "chat_id": chat_id})
            assert wa.receive_json() == {"type": "room_joined", "chat_id": chat_id}

            with client.websocket_connect(f"/ws/chat?token={bob['api_token']}") as wb:
                assert wa.receive_json() == {"type": "presence", "user_id": bob["id"], "online": True}

                wb.send_json({"type": "join_room", "chat_id": chat_id})
                assert wb.receive_json()["type"] == "room_joined"

                online = client.get("/presence/online").json()
                assert sorted(online["online_users"]) == sorted([alice["id"], bob["id"]])

                wb.send_json({"type": "send_message", "chat_id": chat_id, "content": "hey alice"})
                received = wa.receive_json()
                assert received["type"] == "receive_message"
                assert received["message"]["content"] == "hey alice"
                assert wb.receive_json()["type"] == "message_sent"

                wb.send_json({"type": "ping"})
                assert wb.receive_json() == {"type": "pong"}

                wb.send_json({"type": "dance"})
                assert wb.receive_json()["code"] == "validation_error"

            assert wa.receive_json() == {"type": "presence", "user_id": bob["id"], "online": False}
            assert client.get("/users/me", headers=_auth(alice)).json()["online"] is True
            assert client.get(f"/users/{bob['user_code']}", headers=_auth(alice)).json()["online"] is False

        history = client.get(f"/chats/{chat_id}/messages", headers=_auth(alice)).json()
        assert [m["content"] for m in history] == ["hey alice"]
