import re

from backends import BackendError
from exchange import SessionStore


def test_index_renders(client):
    resp = client.get("/")
    assert resp.status_code == 200
    assert b"chatForm" in resp.data


def test_page_always_reenables_input_after_send(client):
    page = client.get("/").get_data(as_text=True)
    assert re.search(r"\} finally \{\s*setPending\(false\);", page)
    assert "appendBubble('system', `Error: " in page


def test_echo_endpoint(client):
    resp = client.post("/api/echo", json={"message": "hello"})
    assert resp.status_code == 200
    assert resp.get_json() == {"message": "Echo: hello"}


def test_echo_endpoint_rejects_other_methods(client):
    for method in ("get", "put", "delete"):
        resp = getattr(client, method)("/api/echo")
        assert resp.status_code == 405
        assert resp.headers["Allow"] == "POST"
        assert resp.mimetype == "text/plain"
        assert resp.get_data(as_text=True) == f"Method {method.upper()} Not Allowed"


def test_chat_round_trip(client, backend):
    backend.replies = ["hi there"]
    resp = client.post("/api/chat", json={"message": "hello"})
    data = resp.get_json()

    assert resp.status_code == 200
    assert data["reply"] == {"text": "hi there", "sender": "assistant"}
    assert data["pending"] is False
    assert data["ignored"] is False
    assert data["turns"] == [
        {"text": "hello", "sender": "user"},
        {"text": "hi there", "sender": "assistant"},
    ]


def test_blank_chat_message_is_ignored(client, backend):
    for body in ({"message": "   "}, {}, None):
        resp = client.post("/api/chat", json=body)
        data = resp.get_json()
        assert resp.status_code == 200
        assert data["ignored"] is True
        assert data["reply"] is None
        assert data["turns"] == []
    assert backend.calls == []


def test_backend_failure_is_reported_in_conversation(client, backend):
    backend.error = BackendError("Echo request failed (502).", status=502)
    data = client.post("/api/chat", json={"message": "hello"}).get_json()

    assert data["reply"] == {"text": "Error: Echo request failed (502).", "sender": "system"}
    assert len(data["turns"]) == 2
    assert data["pending"] is False


def test_history_is_kept_per_browser_session(app, client):
    client.post("/api/chat", json={"message": "one"})
    client.post("/api/chat", json={"message": "two"})
    assert len(client.get("/api/history").get_json()["turns"]) == 4

    other = app.test_client()
    assert other.get("/api/history").get_json()["turns"] == []


def test_session_update_and_reset(client):
    client.post("/api/chat", json={"message": "hello"})
    data = client.post(
        "/api/session",
        json={"input": "draft", "db_config": "PostgreSQL 15", "project_description": "inventory tracker"},
    ).get_json()
    assert data["input"] == "draft"
    assert data["settings"] == {"db_config": "PostgreSQL 15", "project_description": "inventory tracker"}

    assert client.post("/api/reset").get_json() == {"ok": True}
    history = client.get("/api/history").get_json()
    assert history == {
        "turns": [],
        "pending": False,
        "input": "",
        "settings": {"db_config": "", "project_description": ""},
    }


def test_submission_while_pending_returns_conflict(app, client, backend):
    client.post("/api/session", json={})
    (chat_session,) = app.extensions["chat_sessions"]._sessions.values()
    chat_session._pending = True

    resp = client.post("/api/chat", json={"message": "too soon"})
    data = resp.get_json()

    assert resp.status_code == 409
    assert "pending" in data["error"]
    assert data["turns"] == []
    assert backend.calls == []


def test_reading_history_does_not_create_conversations(app):
    for _ in range(50):
        anonymous = app.test_client(use_cookies=False)
        assert anonymous.get("/api/history").get_json()["turns"] == []
        assert anonymous.post("/api/chat", json={"message": " "}).get_json()["ignored"] is True
        assert anonymous.post("/api/reset").get_json() == {"ok": True}

    assert len(app.extensions["chat_sessions"]) == 0


def test_conversation_store_stays_bounded(app, backend):
    app.extensions["chat_sessions"] = SessionStore(lambda: backend, max_sessions=5)
    for i in range(20):
        anonymous = app.test_client(use_cookies=False)
        anonymous.post("/api/chat", json={"message": f"hello {i}"})

    assert len(app.extensions["chat_sessions"]) == 5
