from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from proxypal.config import Settings
from proxypal.gate import COOKIE_NAME
from proxypal.server import create_app


@pytest.fixture()
def client(settings, clock):
    return TestClient(create_app(settings_loader=lambda: settings, clock=clock))


def _login(client: TestClient, username: str = "ops", password: str = "s3cret"):
    return client.post("/api/auth/login", json={"username": username, "password": password})


def test_login_sets_session_cookie(client):
    r = _login(client)
    assert r.status_code == 200
    assert r.json() == {"ok": True, "user": "ops"}
    cookie = r.headers["set-cookie"]
    lowered = cookie.lower()
    assert cookie.startswith(f"{COOKIE_NAME}=")
    assert "httponly" in lowered
    assert "samesite=lax" in lowered
    assert "path=/" in lowered
    assert "max-age=3600" in lowered
    assert "secure" not in lowered


def test_secure_cookie_in_production(clock):
    settings = Settings(session_secret="s", users="ops:s3cret", cookie_secure=True)
    client = TestClient(create_app(settings_loader=lambda: settings, clock=clock))
    r = _login(client)
    assert "secure" in r.headers["set-cookie"].lower()
    assert "max-age=43200" in r.headers["set-cookie"].lower()


def test_login_trims_username(client):
    r = _login(client, username="  alice ", password="hunter2")
    assert r.json()["user"] == "alice"


@pytest.mark.parametrize(
    "body",
    [
        {},
        {"username": "ops"},
        {"password": "s3cret"},
        {"username": "   ", "password": "s3cret"},
        {"username": "ops", "password": ""},
        {"username": 1, "password": "s3cret"},
        ["ops", "s3cret"],
    ],
)
def test_login_requires_fields(client, body):
    r = client.post("/api/auth/login", json=body)
    assert r.status_code == 400
    assert r.json() == {"error": "Username and password are required"}


def test_login_rejects_unparseable_body(client):
    r = client.post("/api/auth/login", content=b"{not json", headers={"Content-Type": "application/json"})
    assert r.status_code == 400


def test_bad_credentials_are_indistinguishable(client):
    wrong_password = _login(client, password="nope")
    unknown_user = _login(client, username="mallory")
    assert wrong_password.status_code == unknown_user.status_code == 401
    assert wrong_password.json() == unknown_user.json() == {"error": "Invalid credentials"}
    assert "set-cookie" not in wrong_password.headers


def test_login_without_users_is_500(clock):
    settings = Settings(session_secret="s", users="")
    client = TestClient(create_app(settings_loader=lambda: settings, clock=clock))
    r = _login(client)
    assert r.status_code == 500
    assert r.json() == {"error": "UI users not configured"}


def test_login_without_secret_is_500(clock):
    settings = Settings(session_secret="", users="ops:s3cret")
    client = TestClient(create_app(settings_loader=lambda: settings, clock=clock))
    r = _login(client)
    assert r.status_code == 500
    assert "set-cookie" not in r.headers


def test_session_expires_after_ttl(client, clock):
    assert _login(client).status_code == 200
    r = client.get("/api/auth/me")
    assert r.status_code == 200
    assert r.json() == {"user": "ops"}

    clock.advance(minutes=61)
    r = client.get("/api/auth/me")
    assert r.status_code == 401
    assert r.json() == {"error": "Unauthorized"}


def test_logout_clears_cookie_but_does_not_revoke(client):
    r = _login(client)
    token = r.cookies[COOKIE_NAME]

    r = client.post("/api/auth/logout")
    assert r.status_code == 200
    assert r.json() == {"ok": True}
    assert "max-age=0" in r.headers["set-cookie"].lower()
    assert client.get("/api/auth/me").status_code == 401

    # A client that kept the old value is still authenticated until expiry
    r = client.get("/api/auth/me", headers={"Cookie": f"{COOKIE_NAME}={token}"})
    assert r.status_code == 200
    assert r.json() == {"user": "ops"}


def test_login_page_then_console(client):
    r = client.get("/", follow_redirects=False)
    assert r.status_code == 303
    assert client.get(r.headers["location"]).status_code == 200
    _login(client)
    assert client.get("/").status_code == 200
