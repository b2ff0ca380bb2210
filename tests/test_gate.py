from __future__ import annotations

from urllib.parse import parse_qs, urlparse

import pytest
from fastapi.testclient import TestClient

from proxypal.auth import issue_session_token
from proxypal.config import Settings
from proxypal.gate import COOKIE_NAME, is_public_path, read_cookie
from proxypal.server import create_app


@pytest.fixture()
def client(settings, clock):
    return TestClient(create_app(settings_loader=lambda: settings, clock=clock))


def _cookie(token: str) -> dict[str, str]:
    return {"Cookie": f"theme=dark; {COOKIE_NAME}={token}; other=1"}


def test_read_cookie():
    assert read_cookie(None, COOKIE_NAME) is None
    assert read_cookie("", COOKIE_NAME) is None
    assert read_cookie("a=1; b=2", COOKIE_NAME) is None
    assert read_cookie(f"a=1;  {COOKIE_NAME}=tok ; b=2", COOKIE_NAME) == "tok"
    assert read_cookie(f"{COOKIE_NAME}=first; {COOKIE_NAME}=second", COOKIE_NAME) == "first"
    assert read_cookie(f"x{COOKIE_NAME}=nope", COOKIE_NAME) is None
    assert read_cookie(f"{COOKIE_NAME}=", COOKIE_NAME) == ""


@pytest.mark.parametrize(
    "path, public",
    [
        ("/login", True),
        ("/api/auth/login", True),
        ("/api/auth/me", True),
        ("/static/app.css", True),
        ("/favicon.ico", True),
        ("/health", True),
        ("/", False),
        ("/logs", False),
        ("/api/proxy/usage", False),
    ],
)
def test_public_paths(path, public):
    assert is_public_path(path) is public


def test_exempt_paths_need_no_cookie(client):
    assert client.get("/login").status_code == 200
    assert client.get("/health").json() == {"status": "ok"}
    r = client.get("/api/auth/me")
    assert r.status_code == 401
    assert "location" not in r.headers


def test_api_denial_is_401_json(client):
    for headers in [{}, _cookie("garbage"), _cookie("a.b")]:
        r = client.get("/api/proxy/usage", headers=headers, follow_redirects=False)
        assert r.status_code == 401
        assert r.json() == {"error": "Unauthorized"}
        assert "location" not in r.headers


def test_page_denial_redirects_to_login(client):
    r = client.get("/settings/advanced", follow_redirects=False)
    assert r.status_code == 303
    loc = urlparse(r.headers["location"])
    assert loc.path == "/login"
    assert parse_qs(loc.query) == {"next": ["/settings/advanced"]}


def test_valid_cookie_passes(client, settings, clock):
    token = issue_session_token(settings, "alice", now=clock())
    r = client.get("/", headers=_cookie(token))
    assert r.status_code == 200
    assert "ProxyPal Console" in r.text
    # Reaches the route handler, which rejects the provider itself
    r = client.get("/api/proxy/api-keys/unknown", headers=_cookie(token))
    assert r.status_code == 404


def test_expired_cookie_is_denied(client, settings, clock):
    token = issue_session_token(settings, "alice", now=clock())
    clock.advance(minutes=61)
    r = client.get("/", headers=_cookie(token), follow_redirects=False)
    assert r.status_code == 303


def test_settings_are_read_per_request(clock):
    current = {"secret": "one"}

    def loader() -> Settings:
        return Settings(session_secret=current["secret"], users="alice:hunter2")

    client = TestClient(create_app(settings_loader=loader, clock=clock))
    token = issue_session_token(loader(), "alice", now=clock())
    assert client.get("/", headers=_cookie(token)).status_code == 200
    current["secret"] = "two"
    assert client.get("/", headers=_cookie(token), follow_redirects=False).status_code == 303


def test_static_assets_are_public(client):
    r = client.get("/static/login.js")
    assert r.status_code == 200
    assert "/api/auth/login" in r.text
    assert client.get("/static/missing.js").status_code == 404
