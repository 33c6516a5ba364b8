"""
HTTP-level tests: role checks and error translation around the directory.

The app's lifespan is not run; the directory dependency is swapped for one
backed by the in-memory fakes.

Run with: pytest tests/test_api.py -v
"""

import pytest
from fastapi.testclient import TestClient

from sqlalchemy.exc import OperationalError

from main import app, get_directory, get_engine

PASSWORD = "Str0ngP@ss!"


@pytest.fixture
def client(directory):
    app.dependency_overrides[get_directory] = lambda: directory
    yield TestClient(app)
    app.dependency_overrides.clear()


def _signup(client, username, token=None, **extra):
    body = {"username": username, "email": f"{username}@example.com", "password": PASSWORD, **extra}
    headers = {"Authorization": f"Bearer {token}"} if token else {}
    return client.post("/auth/signup", json=body, headers=headers)


def _auth(token):
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def admin_token(client):
    resp = _signup(client, "root")
    assert resp.status_code == 201
    return resp.json()["access_token"]


class TestSignupAndLogin:
    def test_first_user_becomes_admin(self, client):
        resp = _signup(client, "root")
        assert resp.status_code == 201
        body = resp.json()
        assert body["user"]["role"] == "admin"
        assert "password" not in body["user"] and "password_hash" not in body["user"]
        assert resp.headers["Location"] == "/users/root"
        assert "X-Correlation-ID" in resp.headers

    def test_later_users_are_viewers_unless_an_admin_asks(self, client, admin_token):
        assert _signup(client, "walker", role="editor").json()["user"]["role"] == "viewer"
        resp = _signup(client, "eddie", token=admin_token, role="editor")
        assert resp.json()["user"]["role"] == "editor"

    def test_admin_cannot_mint_another_admin_at_signup(self, client, admin_token):
        resp = _signup(client, "sneaky", token=admin_token, role="admin")
        assert resp.status_code == 201
        assert resp.json()["user"]["role"] == "viewer"

    def test_duplicate_email_is_a_conflict(self, client, admin_token):
        resp = client.post("/auth/signup", json={
            "username": "other", "email": "ROOT@example.com", "password": PASSWORD,
        })
        assert resp.status_code == 409
        assert resp.json()["code"] == "DUPLICATE_ERROR"
        assert resp.json()["field"] == "email"

    def test_weak_password_is_rejected(self, client):
        resp = client.post("/auth/signup", json={
            "username": "weak", "email": "weak@example.com", "password": "password",
        })
        assert resp.status_code == 422

    def test_login(self, client, admin_token):
        ok = client.post("/auth/login", json={"email": "Root@example.com", "password": PASSWORD})
        assert ok.status_code == 200
        me = client.get("/users/me", headers=_auth(ok.json()["access_token"]))
        assert me.json()["username"] == "root"

        bad = client.post("/auth/login", json={"email": "root@example.com", "password": "Wr0ng!pass"})
        assert bad.status_code == 401


class TestUsernameValidation:
    def test_availability(self, client, admin_token):
        assert client.get("/users/validate/root").json() == {"available": False}
        assert client.get("/users/validate/newbie").json() == {"available": True}

    def test_malformed_username(self, client):
        resp = client.get("/users/validate/no!")
        assert resp.status_code == 400
        assert resp.json()["code"] == "VALIDATION_ERROR"


class TestUserEndpoints:
    def test_listing_requires_editor(self, client, admin_token):
        viewer = _signup(client, "viewer1").json()["access_token"]
        assert client.get("/users", headers=_auth(viewer)).status_code == 403
        assert client.get("/users").status_code == 401

        resp = client.get("/users", params={"limit": 500}, headers=_auth(admin_token))
        assert resp.status_code == 200
        body = resp.json()
        assert body["metadata"]["limit"] == 100
        assert body["metadata"]["total"] == 2
        assert {u["username"] for u in body["items"]} == {"root", "viewer1"}
        assert body["items"][0]["_links"]["self"]["href"].startswith("/users/")

    def test_get_user(self, client, admin_token):
        resp = client.get("/users/root", headers=_auth(admin_token))
        assert resp.status_code == 200
        assert "ETag" in resp.headers
        assert client.get("/users/ghost", headers=_auth(admin_token)).status_code == 404

    def test_only_admins_change_roles(self, client, admin_token):
        editor = _signup(client, "eddie", token=admin_token, role="editor").json()["access_token"]
        _signup(client, "target")

        denied = client.patch("/users/target", json={"role": "editor"}, headers=_auth(editor))
        assert denied.status_code == 403

        renamed = client.patch("/users/target", json={"full_name": "Target Practice"}, headers=_auth(editor))
        assert renamed.status_code == 200
        assert renamed.json()["full_name"] == "Target Practice"

        promoted = client.patch("/users/target", json={"role": "editor"}, headers=_auth(admin_token))
        assert promoted.json()["role"] == "editor"

    def test_patch_errors(self, client, admin_token):
        _signup(client, "target")
        assert client.patch("/users/target", json={}, headers=_auth(admin_token)).status_code == 400
        assert client.patch("/users/ghost", json={"full_name": "x"}, headers=_auth(admin_token)).status_code == 404
        clash = client.patch("/users/target", json={"username": "root"}, headers=_auth(admin_token))
        assert clash.status_code == 409
        assert clash.json()["field"] == "username"

    def test_delete_is_admin_only(self, client, admin_token):
        viewer = _signup(client, "target").json()["access_token"]
        assert client.delete("/users/target", headers=_auth(viewer)).status_code == 403
        assert client.delete("/users/target", headers=_auth(admin_token)).status_code == 204
        assert client.delete("/users/target", headers=_auth(admin_token)).status_code == 404
        assert client.get("/users/validate/target").json() == {"available": True}

    def test_collection_links_escape_the_search_term(self, client, admin_token):
        resp = client.get("/users", params={"search": "a&b c"}, headers=_auth(admin_token))
        href = resp.json()["_links"]["self"]["href"]
        assert "search=a%26b+c" in href
        assert "&b c" not in href


class TestHealth:
    def test_database_up(self, client, monkeypatch):
        async def ok(engine):
            return True

        monkeypatch.setattr("main.ping", ok)
        app.dependency_overrides[get_engine] = lambda: None
        resp = client.get("/healthz")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok", "database": "up"}

    def test_database_down(self, client, monkeypatch):
        async def down(engine):
            raise OperationalError("SELECT 1", {}, Exception("unable to open database file"))

        monkeypatch.setattr("main.ping", down)
        app.dependency_overrides[get_engine] = lambda: None
        resp = client.get("/healthz")
        assert resp.status_code == 503
        assert resp.json()["database"] == "down"
