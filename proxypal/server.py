from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import httpx
import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.responses import HTMLResponse, JSONResponse
from fastapi.staticfiles import StaticFiles
from fastapi.routing import APIRouter

from proxypal import upstream
from proxypal.auth import (
    ConfigurationError,
    InvalidCredentials,
    issue_session_token,
    now_ms,
    verify_credentials,
)
from proxypal.config import Settings, load_settings
from proxypal.gate import COOKIE_NAME, Clock, SettingsLoader, install_request_gate, session_user

logger = logging.getLogger(__name__)

STATIC_DIR = Path(__file__).parent / "static"

router = APIRouter()


def _settings(request: Request) -> Settings:
    return request.app.state.settings_loader()


def _set_session_cookie(resp: Response, settings: Settings, value: str, max_age: int) -> None:
    resp.set_cookie(
        COOKIE_NAME,
        value,
        httponly=True,
        samesite="lax",
        secure=settings.cookie_secure,
        max_age=max_age,
        path="/",
    )


@router.get("/", response_class=HTMLResponse)
def index() -> HTMLResponse:
    return HTMLResponse((STATIC_DIR / "index.html").read_text(encoding="utf-8"))


@router.get("/login", response_class=HTMLResponse)
def login_page() -> HTMLResponse:
    return HTMLResponse((STATIC_DIR / "login.html").read_text(encoding="utf-8"))


@router.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@router.post("/api/auth/login")
async def login(request: Request) -> Response:
    try:
        body = await request.json()
    except ValueError:
        body = None
    if not isinstance(body, dict):
        body = {}
    username = body.get("username")
    password = body.get("password")
    username = username.strip() if isinstance(username, str) else ""
    password = password if isinstance(password, str) else ""
    if not username or not password:
        return JSONResponse({"error": "Username and password are required"}, status_code=400)

    settings = _settings(request)
    try:
        user = verify_credentials(settings, username, password)
        token = issue_session_token(settings, user.username, request.app.state.clock())
    except ConfigurationError as exc:
        logger.error("Login unavailable: %s", exc)
        return JSONResponse({"error": str(exc)}, status_code=500)
    except InvalidCredentials as exc:
        logger.warning("Failed login for %r: %s", username, exc)
        return JSONResponse({"error": "Invalid credentials"}, status_code=401)

    logger.info("User %s logged in", user.username)
    resp = JSONResponse({"ok": True, "user": user.username})
    _set_session_cookie(resp, settings, token, settings.session_ttl_seconds)
    return resp


@router.post("/api/auth/logout")
def logout(request: Request) -> Response:
    # Client-side only: the token itself stays valid until it expires
    resp = JSONResponse({"ok": True})
    _set_session_cookie(resp, _settings(request), "", 0)
    return resp


@router.get("/api/auth/me")
def me(request: Request) -> Response:
    username = session_user(request, _settings(request), request.app.state.clock())
    if not username:
        return JSONResponse({"error": "Unauthorized"}, status_code=401)
    return JSONResponse({"user": username})


def create_app(
    settings_loader: SettingsLoader = load_settings,
    clock: Clock = now_ms,
    upstream_transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    app = FastAPI(title="ProxyPal Console", docs_url=None, redoc_url=None)
    app.state.settings_loader = settings_loader
    app.state.clock = clock
    app.state.upstream_transport = upstream_transport
    app.mount("/static", StaticFiles(directory=str(STATIC_DIR)), name="static")
    app.include_router(router)
    app.include_router(upstream.router)
    install_request_gate(app, settings_loader, clock)
    return app


app = create_app()


if __name__ == "__main__":
    settings = load_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if not settings.session_secret:
        logger.warning("No session secret configured; logins will fail until CLIPROXY_UI_SECRET is set")
    uvicorn.run(
        "proxypal.server:app",
        host="0.0.0.0",
        port=settings.port,
        reload=False,
        proxy_headers=True,
        forwarded_allow_ips="*",
    )
