"""End-to-end tests for the HTTP and websocket surface."""

import asyncio

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from sessiongate.app import app
from sessiongate.service.runtime import get_runtime
from sessiongate.storage.errors import StoreUnavailableError


@pytest.fixture
def client():
    return TestClient(app)


def _login(user_id="user-1"):
    runtime = get_runtime()
    grant = asyncio.run(runtime.sessions.create_session(user_id, {"device_info": "test"}))
    token = runtime.tokens.issue(user_id, grant.session_id)
    return token, grant.session_id


def _headers(token, session_id):
    return {"X-Auth-Token": token, "X-Session-Id": session_id}


def _error_code(response):
    body = response.json()
    assert body["status"] == "error"
    return body["error"]["code"]


class TestVerify:
    def test_verify_with_headers(self, client):
        token, session_id = _login()

        response = client.get("/v1/auth/verify", headers=_headers(token, session_id))

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["user_id"] == "user-1"
        assert data["session"]["session_id"] == session_id
        assert data["session"]["metadata"]["device_info"] == "test"

    def test_verify_with_query_params(self, client):
        token, session_id = _login()

        response = client.get(
            "/v1/auth/verify", params={"token": token, "sessionId": session_id}
        )

        assert response.status_code == 200

    def test_missing_credentials(self, client):
        response = client.get("/v1/auth/verify")

        assert response.status_code == 401
        assert _error_code(response) == "MISSING_CREDENTIALS"

    def test_invalid_token(self, client):
        _, session_id = _login()

        response = client.get("/v1/auth/verify", headers=_headers("bogus", session_id))

        assert response.status_code == 401
        assert _error_code(response) == "INVALID_TOKEN"

    def test_superseded_session(self, client):
        old_token, old_session = _login()
        _login()

        response = client.get("/v1/auth/verify", headers=_headers(old_token, old_session))

        assert response.status_code == 401
        assert _error_code(response) == "INVALID_SESSION"
        assert response.json()["error"]["message"]

    def test_request_id_is_echoed(self, client):
        response = client.get("/v1/auth/verify", headers={"X-Request-ID": "req-123"})

        assert response.headers["X-Request-ID"] == "req-123"


class TestSessionLifecycle:
    def test_refresh_rotates_session(self, client):
        token, session_id = _login()

        response = client.post("/v1/auth/refresh", headers=_headers(token, session_id))

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["session_id"] != session_id
        assert data["token_type"] == "bearer"

        fresh = client.get(
            "/v1/auth/verify", headers=_headers(data["token"], data["session_id"])
        )
        assert fresh.status_code == 200
        assert fresh.json()["data"]["session"]["metadata"]["device_info"] == "test"

        stale = client.get("/v1/auth/verify", headers=_headers(token, session_id))
        assert _error_code(stale) == "INVALID_SESSION"

    def test_logout(self, client):
        token, session_id = _login()

        response = client.post("/v1/auth/logout", headers=_headers(token, session_id))

        assert response.status_code == 200
        assert response.json()["data"] == {"removed": True, "connections_closed": 0}

        after = client.get("/v1/auth/verify", headers=_headers(token, session_id))
        assert after.status_code == 401
        assert _error_code(after) == "SESSION_NOT_FOUND"

    def test_store_outage_during_logout_is_server_error(self, client, monkeypatch):
        token, session_id = _login()

        async def unreachable(*args, **kwargs):
            raise StoreUnavailableError("down", operation="get")

        monkeypatch.setattr(get_runtime().sessions, "remove_session", unreachable)
        response = client.post("/v1/auth/logout", headers=_headers(token, session_id))

        assert response.status_code == 500
        assert _error_code(response) == "store_unavailable"

    def test_heartbeat(self, client):
        token, session_id = _login()

        response = client.post("/v1/sessions/heartbeat", headers=_headers(token, session_id))

        assert response.status_code == 200
        assert response.json()["data"] == {"updated": True}

    def test_active_session(self, client):
        token, session_id = _login()

        response = client.get("/v1/sessions/active", headers=_headers(token, session_id))

        assert response.status_code == 200
        assert response.json()["data"]["session"]["session_id"] == session_id


class TestHealth:
    def test_healthz(self, client):
        response = client.get("/healthz")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["store"]["type"] == "MemoryKeyValueStore"


class TestWebsocket:
    def test_handshake_heartbeat_and_ack(self, client):
        token, session_id = _login()

        with client.websocket_connect("/v1/ws") as ws:
            ws.send_json({"token": token, "session_id": session_id})
            assert ws.receive_json() == {
                "type": "authenticated",
                "data": {"user_id": "user-1", "session_id": session_id},
            }

            ws.send_json({"type": "heartbeat"})
            assert ws.receive_json() == {"type": "heartbeat_ack", "data": {"updated": True}}

            ws.send_json({"type": "chat", "text": "hi"})
            assert ws.receive_json() == {"type": "ack", "data": {"type": "chat"}}

    def test_rejected_handshake_closes_with_4401(self, client):
        with client.websocket_connect("/v1/ws") as ws:
            ws.send_json({"token": "bogus", "sessionId": "nope"})

            envelope = ws.receive_json()
            assert envelope["status"] == "error"
            assert envelope["error"]["code"] == "INVALID_TOKEN"

            with pytest.raises(WebSocketDisconnect) as exc_info:
                ws.receive_json()
            assert exc_info.value.code == 4401

    def test_superseded_session_ends_socket(self, client):
        token, session_id = _login()

        with client.websocket_connect("/v1/ws") as ws:
            ws.send_json({"token": token, "session_id": session_id})
            ws.receive_json()

            _login()
            ws.send_json({"type": "chat"})

            ended = ws.receive_json()
            assert ended["type"] == "session_ended"
            assert ended["data"]["reason"] == "session_invalid"
            with pytest.raises(WebSocketDisconnect) as exc_info:
                ws.receive_json()
            assert exc_info.value.code == 4401
