"""End-to-end auth flow over HTTP: register, login, logout, user management."""

import re
from concurrent.futures import ThreadPoolExecutor

import pytest
from fastapi.testclient import TestClient

from jwtpizza import app as app_module
from jwtpizza.service.runtime import get_runtime
from jwtpizza.service.tokens import get_token_signature

TOKEN_PATTERN = re.compile(r"^[a-zA-Z0-9\-_]*\.[a-zA-Z0-9\-_]*\.[a-zA-Z0-9\-_]*$")


@pytest.fixture
def client():
    return TestClient(app_module.app)


def _register(client, email="e@test.com", password="a", name="pizza diner"):
    response = client.post("/api/auth", json={"name": name, "email": email, "password": password})
    assert response.status_code == 200, response.text
    data = response.json()["data"]
    return data["user"], data["token"]


def _auth(token):
    return {"Authorization": f"Bearer {token}"}


class TestAuthFlow:
    def test_register_login_logout(self, client):
        user, register_token = _register(client)
        assert user["roles"] == [{"role": "diner", "objectId": None}]
        assert "password" not in user

        login = client.put("/api/auth", json={"email": "e@test.com", "password": "a"})
        assert login.status_code == 200
        token = login.json()["data"]["token"]
        assert TOKEN_PATTERN.match(token)
        assert len(token.split(".")) == 3

        marker_owner = get_runtime().store.get_session_marker(get_token_signature(token))
        assert marker_owner == user["id"]

        me = client.get("/api/user/me", headers=_auth(token))
        assert me.status_code == 200
        assert me.json()["data"]["email"] == "e@test.com"

        logout = client.delete("/api/auth", headers=_auth(token))
        assert logout.status_code == 200
        assert logout.json()["data"]["message"] == "logout successful"

        assert client.get("/api/user/me", headers=_auth(token)).status_code == 401
        assert get_runtime().store.get_session_marker(get_token_signature(token)) is None
        # The registration session is independent of the one just closed
        assert client.get("/api/user/me", headers=_auth(register_token)).status_code == 200

    def test_wrong_password_and_unknown_email_look_the_same(self, client):
        _register(client)

        wrong = client.put("/api/auth", json={"email": "e@test.com", "password": "b"})
        unknown = client.put("/api/auth", json={"email": "x@test.com", "password": "a"})

        assert wrong.status_code == unknown.status_code == 404
        assert wrong.json()["error"] == unknown.json()["error"]
        assert wrong.json()["error"]["message"] == "unknown user"

    def test_duplicate_registration_conflicts(self, client):
        _register(client)

        response = client.post(
            "/api/auth", json={"name": "again", "email": "e@test.com", "password": "b"}
        )

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"

    def test_logout_requires_live_token(self, client):
        assert client.delete("/api/auth").status_code == 401
        assert client.delete("/api/auth", headers=_auth("a.b.c")).status_code == 401

    def test_logout_twice_is_unauthorized_second_time(self, client):
        _, token = _register(client)

        assert client.delete("/api/auth", headers=_auth(token)).status_code == 200
        assert client.delete("/api/auth", headers=_auth(token)).status_code == 401

    def test_concurrent_logins_yield_independent_sessions(self, client):
        _register(client)

        def login(_):
            return client.put("/api/auth", json={"email": "e@test.com", "password": "a"})

        with ThreadPoolExecutor(max_workers=2) as pool:
            responses = list(pool.map(login, range(2)))

        tokens = [r.json()["data"]["token"] for r in responses]
        assert get_token_signature(tokens[0]) != get_token_signature(tokens[1])
        client.delete("/api/auth", headers=_auth(tokens[0]))
        assert client.get("/api/user/me", headers=_auth(tokens[1])).status_code == 200

    def test_malformed_authorization_header(self, client):
        assert client.get("/api/user/me", headers={"Authorization": "Token abc"}).status_code == 401
        assert client.get("/api/user/me", headers=_auth("invalid")).status_code == 401

    def test_login_rate_limited(self, client, monkeypatch):
        _register(client)
        monkeypatch.setattr(get_runtime().settings, "login_rate_limit_per_minute", 2)

        statuses = [
            client.put("/api/auth", json={"email": "e@test.com", "password": "a"}).status_code
            for _ in range(3)
        ]

        assert statuses == [200, 200, 429]


class TestUserRoutes:
    def test_list_users_requires_authentication(self, client):
        assert client.get("/api/user").status_code == 401

    def test_list_users(self, client):
        _, token = _register(client)
        _register(client, email="f@test.com", name="second diner")

        response = client.get("/api/user", headers=_auth(token), params={"limit": 1})

        assert response.status_code == 200
        data = response.json()["data"]
        assert [u["email"] for u in data["users"]] == ["e@test.com"]
        assert data["more"] is True

    def test_diner_deletes_self(self, client):
        user, token = _register(client)

        response = client.delete(f"/api/user/{user['id']}", headers=_auth(token))

        assert response.status_code == 200
        assert response.json()["data"]["message"] == "user deleted"
        assert client.get("/api/user/me", headers=_auth(token)).status_code == 401
        relogin = client.put("/api/auth", json={"email": "e@test.com", "password": "a"})
        assert relogin.status_code == 404

    def test_diner_cannot_delete_someone_else(self, client):
        _, token = _register(client)
        other, _ = _register(client, email="f@test.com")

        response = client.delete(f"/api/user/{other['id']}", headers=_auth(token))

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "forbidden"
        assert "admin" not in response.json()["error"]["message"]

    def test_update_self_rehashes_password_and_returns_token(self, client):
        user, token = _register(client)

        response = client.put(
            f"/api/user/{user['id']}",
            headers=_auth(token),
            json={"name": "renamed", "password": "b"},
        )

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["user"]["name"] == "renamed"
        assert TOKEN_PATTERN.match(data["token"])
        assert client.put("/api/auth", json={"email": "e@test.com", "password": "a"}).status_code == 404
        assert client.put("/api/auth", json={"email": "e@test.com", "password": "b"}).status_code == 200

    def test_update_without_password_keeps_old_one(self, client):
        user, token = _register(client)

        client.put(f"/api/user/{user['id']}", headers=_auth(token), json={"name": "renamed"})

        assert client.put("/api/auth", json={"email": "e@test.com", "password": "a"}).status_code == 200
