"""HTTP and WebSocket surface tests using FastAPI's TestClient."""

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from backend import config, database
from backend.main import app
from conftest import ADMIN_PASSWORD


@pytest.fixture
def client():
    return TestClient(app)


@pytest.fixture
def admin_headers(client):
    response = client.post("/admin/login", json={"password": ADMIN_PASSWORD})
    return {"Authorization": f"Bearer {response.json()['token']}"}


@pytest.fixture
def diary(client, admin_headers):
    response = client.post(
        "/diaries",
        json={"clientId": "client-777", "name": "Jordan", "gender": "Other"},
        headers=admin_headers,
    )
    assert response.status_code == 200
    return response.json()["diary"]


@pytest.fixture
def diary_headers(client, diary):
    response = client.post(f"/diaries/{diary['id']}/access", json={"clientId": "client-777"})
    return {"Authorization": f"Bearer {response.json()['token']}"}


def receive_until(websocket, message_type, predicate=lambda message: True, limit=20):
    for _ in range(limit):
        message = websocket.receive_json()
        if message.get("type") == message_type and predicate(message):
            return message
    raise AssertionError(f"No {message_type} message received")


class TestAdmin:
    def test_login(self, client):
        assert client.post("/admin/login", json={"password": "wrong"}).json() == {
            "ok": False,
            "message": "Invalid password",
        }
        body = client.post("/admin/login", json={"password": ADMIN_PASSWORD}).json()
        assert body["ok"] is True
        assert body["token"]

    def test_lockout_after_three_failures(self, client):
        for _ in range(3):
            body = client.post("/admin/login", json={"password": "wrong"}).json()
        assert body["retry_after_seconds"] == 60
        refused = client.post("/admin/login", json={"password": ADMIN_PASSWORD}).json()
        assert refused["ok"] is False
        assert "Too many attempts" in refused["message"]

    def test_change_password(self, client, admin_headers):
        response = client.post(
            "/admin/password",
            json={"newPassword": "fresh-pass", "confirmPassword": "fresh-pass"},
            headers=admin_headers,
        )
        assert response.json() == {"status": "ok"}
        assert client.post("/admin/login", json={"password": "fresh-pass"}).json()["ok"]

    def test_change_password_mismatch(self, client, admin_headers):
        response = client.post(
            "/admin/password",
            json={"newPassword": "fresh-pass", "confirmPassword": "other-pass"},
            headers=admin_headers,
        )
        assert response.status_code == 400
        assert response.json() == {"status": "error", "message": "Passwords do not match"}

    def test_admin_routes_need_token(self, client):
        assert client.get("/diaries").status_code == 401
        assert client.get("/export/diaries.csv").status_code == 401


class TestDiaries:
    def test_create_and_list(self, client, admin_headers, diary):
        assert diary["url"] == f"/diary/{diary['id']}"
        listed = client.get("/diaries", headers=admin_headers).json()["diaries"]
        assert [item["id"] for item in listed] == [diary["id"]]
        assert client.get("/diaries?search=nobody", headers=admin_headers).json()["diaries"] == []

    def test_invalid_diary_input(self, client, admin_headers):
        response = client.post("/diaries", json={"clientId": "x", "name": "Jordan"}, headers=admin_headers)
        assert response.status_code == 400
        assert response.json()["status"] == "error"

    def test_access_with_wrong_client_id(self, client, diary):
        body = client.post(f"/diaries/{diary['id']}/access", json={"clientId": "someone"}).json()
        assert body == {"ok": False, "message": "Invalid client ID"}

    def test_diary_token_is_scoped(self, client, admin_headers, diary, diary_headers):
        other = client.post(
            "/diaries",
            json={"clientId": "client-888", "name": "Casey", "gender": "Male"},
            headers=admin_headers,
        ).json()["diary"]
        assert client.get(f"/diaries/{diary['id']}", headers=diary_headers).status_code == 200
        assert client.get(f"/diaries/{other['id']}/cards", headers=diary_headers).status_code == 401

    def test_metadata_is_public(self, client, diary):
        metadata = client.get(f"/diaries/{diary['id']}/metadata").json()
        assert metadata["title"] == "Jordan (ID: client-777) - Therapy Diary"

    def test_mark_read(self, client, diary, diary_headers):
        client.post(f"/diaries/{diary['id']}/read", headers=diary_headers)
        response = client.post(f"/diaries/{diary['id']}/read", headers=diary_headers)
        assert response.json() == {"cardReadingCount": 2}

    def test_lock_requires_password_on_access(self, client, diary, diary_headers):
        response = client.post(
            f"/diaries/{diary['id']}/lock",
            json={"password": "secret1", "confirmPassword": "secret1"},
            headers=diary_headers,
        )
        assert response.json() == {"status": "ok"}

        denied = client.post(f"/diaries/{diary['id']}/access", json={"clientId": "client-777"}).json()
        assert denied["message"] == "Incorrect password"
        granted = client.post(
            f"/diaries/{diary['id']}/access",
            json={"clientId": "client-777", "password": "secret1"},
        ).json()
        assert granted["ok"] is True
        assert granted["diary"]["isLocked"] is True

        response = client.post(
            f"/diaries/{diary['id']}/unlock", json={"password": "secret1"}, headers=diary_headers
        )
        assert response.json() == {"status": "ok"}

    def test_delete_cascades_and_revokes_access(self, client, admin_headers, diary, diary_headers):
        client.post(f"/diaries/{diary['id']}/cards", json={"topic": "A"}, headers=diary_headers)

        response = client.delete(f"/diaries/{diary['id']}", headers=admin_headers)

        assert response.json() == {"status": "ok"}
        assert database.get_cards(diary["id"]) == []
        assert client.get(f"/diaries/{diary['id']}", headers=diary_headers).status_code == 401
        assert client.get(f"/diaries/{diary['id']}", headers=admin_headers).status_code == 404


class TestCards:
    def test_append_and_insert_after_index(self, client, diary, diary_headers):
        url = f"/diaries/{diary['id']}/cards"
        first = client.post(url, json={"topic": "First"}, headers=diary_headers).json()["card"]
        last = client.post(url, json={"topic": "Last"}, headers=diary_headers).json()["card"]
        middle = client.post(url, json={"topic": "Middle", "afterIndex": 0}, headers=diary_headers).json()["card"]

        assert (first["order"], last["order"], middle["order"]) == (0, 1, 0.5)
        cards = client.get(url, headers=diary_headers).json()["cards"]
        assert [card["topic"] for card in cards] == ["First", "Middle", "Last"]

    def test_update_duplicate_delete(self, client, diary, diary_headers):
        url = f"/diaries/{diary['id']}/cards"
        card = client.post(url, json={"topic": "Topic"}, headers=diary_headers).json()["card"]

        updated = client.patch(
            f"/cards/{card['id']}",
            json={"bodyText": "<p>Hello<script>x</script></p>", "type": "After"},
            headers=diary_headers,
        ).json()["card"]
        assert "<script>" not in updated["bodyText"]
        assert updated["type"] == "After"

        copy = client.post(f"/cards/{card['id']}/duplicate", headers=diary_headers).json()["card"]
        assert copy["topic"] == "Topic (Copy)"
        assert copy["order"] == 0.5

        assert client.delete(f"/cards/{card['id']}", headers=diary_headers).json() == {"status": "ok"}
        assert client.patch(f"/cards/{card['id']}", json={"topic": "x"}, headers=diary_headers).status_code == 404

    def test_body_limit(self, client, diary, diary_headers):
        response = client.post(
            f"/diaries/{diary['id']}/cards",
            json={"topic": "Long", "bodyText": "y" * 301},
            headers=diary_headers,
        )
        assert response.status_code == 400
        assert response.json()["message"] == "Please keep text under 300 characters"

    def test_reorder(self, client, diary, diary_headers):
        url = f"/diaries/{diary['id']}/cards"
        ids = [client.post(url, json={"topic": name}, headers=diary_headers).json()["card"]["id"] for name in "ABC"]

        response = client.post(f"{url}/reorder", json={"cardId": ids[2], "targetIndex": 0}, headers=diary_headers)

        assert [(card["topic"], card["order"]) for card in response.json()["cards"]] == [
            ("C", 1),
            ("A", 2),
            ("B", 3),
        ]

    def test_store_outage_is_503(self, client, failing_store):
        admin = client.post("/admin/login", json={"password": ADMIN_PASSWORD}).json()["token"]
        diary = client.post(
            "/diaries",
            json={"clientId": "client-999", "name": "Riley"},
            headers={"Authorization": f"Bearer {admin}"},
        ).json()["diary"]
        failing_store.fail_writes = True

        response = client.post(
            f"/diaries/{diary['id']}/cards",
            json={"topic": "A"},
            headers={"Authorization": f"Bearer {admin}"},
        )

        assert response.status_code == 503
        assert response.json() == {"status": "error", "message": "Failed to create card"}


class TestSituations:
    def test_bulk_create_and_content(self, client, admin_headers):
        created = client.post(
            "/situations", json={"content": "Work\n\nHome"}, headers=admin_headers
        ).json()["situations"]
        assert [item["title"] for item in created] == ["Work", "Home"]

        situation_id = created[0]["id"]
        response = client.put(
            f"/situations/{situation_id}/content",
            json={"content": "1. Meeting\n   a. Prepare notes"},
            headers=admin_headers,
        )
        assert response.json() == {"status": "ok", "beforeItems": 1}
        assert client.get(f"/situations/{situation_id}/content").json() == {
            "content": "1. Meeting\n   a. Prepare notes"
        }
        tree = client.get("/situations").json()["situations"]
        assert tree[0]["beforeItems"][0]["afterItems"][0]["title"] == "Prepare notes"

    def test_invalid_content(self, client, admin_headers):
        situation_id = client.post(
            "/situations", json={"titles": ["Work"]}, headers=admin_headers
        ).json()["situations"][0]["id"]
        response = client.put(
            f"/situations/{situation_id}/content", json={"content": "oops"}, headers=admin_headers
        )
        assert response.status_code == 400

    def test_item_crud(self, client, admin_headers):
        situation_id = client.post(
            "/situations", json={"titles": ["Work"]}, headers=admin_headers
        ).json()["situations"][0]["id"]
        before_id = client.post(
            f"/situations/{situation_id}/before-items", json={"title": "Late"}, headers=admin_headers
        ).json()["id"]
        after_id = client.post(
            f"/before-items/{before_id}/after-items", json={"title": "Call ahead"}, headers=admin_headers
        ).json()["id"]

        assert client.patch(
            f"/after-items/{after_id}", json={"title": "Text ahead"}, headers=admin_headers
        ).json() == {"status": "ok"}
        assert client.delete(f"/before-items/{before_id}", headers=admin_headers).json() == {"status": "ok"}
        assert client.delete(f"/after-items/{after_id}", headers=admin_headers).status_code == 404
        assert client.delete(f"/situations/{situation_id}", headers=admin_headers).json() == {"status": "ok"}

    def test_mutations_need_admin(self, client):
        assert client.post("/situations", json={"titles": ["Work"]}).status_code == 401


class TestExports:
    def test_csv(self, client, admin_headers, diary):
        response = client.get("/export/diaries.csv", headers=admin_headers)
        assert response.headers["content-type"].startswith("text/csv")
        assert "attachment; filename=diaries.csv" == response.headers["content-disposition"]
        lines = response.text.strip().splitlines()
        assert lines[0] == "Client ID,Name,Gender,Diary URL,Created At"
        assert f"/diary/{diary['id']}" in lines[1]

    def test_word(self, client, diary, diary_headers):
        response = client.get(f"/export/diaries/{diary['id']}/word", headers=diary_headers)
        assert response.status_code == 200
        assert response.content[:2] == b"PK"


class TestLiveSession:
    def test_refused_without_token(self, client, diary):
        with pytest.raises(WebSocketDisconnect):
            with client.websocket_connect(f"/ws/diaries/{diary['id']}"):
                pass

    def test_bootstrap_and_add_card(self, client, diary, diary_headers):
        token = diary_headers["Authorization"].split(" ", 1)[1]
        with client.websocket_connect(f"/ws/diaries/{diary['id']}?token={token}") as websocket:
            hello = websocket.receive_json()
            assert hello["type"] == "hello"
            assert hello["diary"]["id"] == diary["id"]

            snapshot = receive_until(websocket, "cards:snapshot", lambda message: len(message["cards"]) == 1)
            assert snapshot["cards"][0]["topic"] == "New Topic"
            card_id = snapshot["cards"][0]["id"]

            websocket.send_json({"type": "ping", "ts": 42})
            assert receive_until(websocket, "pong")["ts"] == 42

            websocket.send_json({"type": "card:text", "cardId": card_id, "topic": "Typed"})
            websocket.send_json({"type": "card:add"})
            receive_until(websocket, "cards:snapshot", lambda message: len(message["cards"]) == 2)
            assert database.get_card(card_id).topic == "Typed"

            websocket.send_json({"type": "undo"})
            receive_until(websocket, "cards:snapshot", lambda message: len(message["cards"]) == 1)

        assert len(database.get_cards(diary["id"])) == 1


class TestFrontend:
    @pytest.fixture
    def dist(self, tmp_path, monkeypatch):
        dist = tmp_path / "dist"
        dist.mkdir()
        (dist / "index.html").write_text("INDEX")
        (dist / "favicon.ico").write_text("ICON")
        (tmp_path / "secret.txt").write_text("TOPSECRET")
        monkeypatch.setattr(config, "FRONTEND_DIST", dist)
        return dist

    def test_serves_static_file_and_spa_fallback(self, client, dist):
        assert client.get("/favicon.ico").text == "ICON"
        assert client.get("/diary/abc12345").text == "INDEX"

    def test_paths_outside_dist_fall_back_to_index(self, client, dist):
        response = client.get("/%2e%2e/secret.txt")
        assert response.status_code == 200
        assert response.text == "INDEX"
