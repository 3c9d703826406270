"""Tests for the request authentication middleware and protected endpoints."""

import asyncio
import time

import pytest
from fastapi.testclient import TestClient

from bloggerhub import app as app_module
from bloggerhub.service.runtime import get_runtime


@pytest.fixture
def client():
    return TestClient(app_module.app)


@pytest.fixture
def alice_tokens(client):
    response = client.post(
        "/api/auth/signup",
        json={"username": "alice", "email": "alice@example.com", "password": "AlicePassword1"},
    )
    return response.json()["data"]


def _bearer(token):
    return {"Authorization": f"Bearer {token}"}


class TestMe:
    def test_valid_access_token(self, client, alice_tokens):
        response = client.get("/api/users/me", headers=_bearer(alice_tokens["accessToken"]))

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["id"] == alice_tokens["userId"]
        assert data["username"] == "alice"
        assert data["email"] == "alice@example.com"
        assert data["profilePicture"] is None

    @pytest.mark.parametrize(
        "headers",
        [
            {},
            {"Authorization": ""},
            {"Authorization": "Bearer"},
            {"Authorization": "Basic YWxpY2U6cHc="},
            {"Authorization": "Bearer not.a.jwt"},
        ],
    )
    def test_unusable_credentials_are_unauthorized(self, client, alice_tokens, headers):
        response = client.get("/api/users/me", headers=headers)

        assert response.status_code == 401
        assert response.headers["WWW-Authenticate"] == "Bearer"
        assert response.json()["error"]["code"] == "unauthorized"

    def test_refresh_token_is_not_accepted(self, client, alice_tokens):
        response = client.get("/api/users/me", headers=_bearer(alice_tokens["refreshToken"]))
        assert response.status_code == 401

    def test_expired_access_token(self, client, alice_tokens):
        get_runtime().tokens.clock = lambda: time.time() + 16 * 60
        response = client.get("/api/users/me", headers=_bearer(alice_tokens["accessToken"]))
        assert response.status_code == 401

    def test_deleted_user(self, client, alice_tokens):
        store = get_runtime().store
        del store.users[alice_tokens["userId"]]

        response = client.get("/api/users/me", headers=_bearer(alice_tokens["accessToken"]))
        assert response.status_code == 401

    def test_store_failure_leaves_request_unauthenticated(
        self, client, alice_tokens, monkeypatch
    ):
        def broken_get_user(user_id):
            raise RuntimeError("store down")

        monkeypatch.setattr(get_runtime().store, "get_user", broken_get_user)
        response = client.get("/api/users/me", headers=_bearer(alice_tokens["accessToken"]))
        assert response.status_code == 401

    def test_public_endpoints_ignore_bad_tokens(self, client):
        response = client.get("/api/users/health", headers=_bearer("garbage"))
        assert response.status_code == 200


class TestAdminListing:
    def test_free_user_is_forbidden(self, client, alice_tokens):
        response = client.get("/api/users", headers=_bearer(alice_tokens["accessToken"]))

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "forbidden"

    def test_anonymous_is_unauthorized(self, client):
        assert client.get("/api/users").status_code == 401

    def test_admin_lists_users(self, client, alice_tokens):
        runtime = get_runtime()
        admin = runtime.auth.create_user(
            "root", "root@example.com", "RootPassword1", roles=["FREE_USER", "ADMIN_USER"]
        )
        login = client.post(
            "/api/auth/login", json={"username": "root", "password": "RootPassword1"}
        ).json()["data"]

        response = client.get("/api/users", headers=_bearer(login["accessToken"]))

        assert response.status_code == 200
        items = response.json()["data"]["items"]
        assert [item["username"] for item in items] == ["alice", "root"]
        assert items[1]["id"] == admin.id

    def test_limit_is_bounded(self, client):
        runtime = get_runtime()
        runtime.auth.create_user("root", "root@example.com", "RootPassword1", roles=["ADMIN_USER"])
        token = runtime.auth.login("root", "RootPassword1").access_token

        response = client.get("/api/users?limit=0", headers=_bearer(token))
        assert response.status_code == 422


class TestBlockingWork:
    def test_auth_and_store_calls_run_off_the_event_loop(self, client, monkeypatch):
        runtime = get_runtime()
        calls = []

        def _recording(name, func):
            def wrapper(*args, **kwargs):
                try:
                    asyncio.get_running_loop()
                    calls.append((name, "event_loop"))
                except RuntimeError:
                    calls.append((name, "worker_thread"))
                return func(*args, **kwargs)

            return wrapper

        for name in ("signup", "login", "authenticate", "rotate_refresh_token", "logout"):
            monkeypatch.setattr(runtime.auth, name, _recording(name, getattr(runtime.auth, name)))
        monkeypatch.setattr(
            runtime.store, "get_user", _recording("get_user", runtime.store.get_user)
        )

        client.post(
            "/api/auth/signup",
            json={"username": "alice", "email": "alice@example.com", "password": "AlicePassword1"},
        )
        pair = client.post(
            "/api/auth/login", json={"username": "alice", "password": "AlicePassword1"}
        ).json()["data"]
        assert client.get("/api/users/me", headers=_bearer(pair["accessToken"])).status_code == 200
        rotated = client.post("/api/auth/refresh-token", json={"refreshToken": pair["refreshToken"]})
        client.post("/api/auth/logout", json={"refreshToken": rotated.json()["data"]["refreshToken"]})

        names = {name for name, _ in calls}
        assert {"signup", "login", "authenticate", "get_user", "rotate_refresh_token", "logout"} <= names
        assert all(where == "worker_thread" for _, where in calls)
