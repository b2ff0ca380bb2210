from __future__ import annotations

import logging
from typing import Awaitable, Callable, Optional
from urllib.parse import urlencode

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse, RedirectResponse

from proxypal.auth import validate_session_token
from proxypal.config import Settings

logger = logging.getLogger(__name__)

COOKIE_NAME = "proxypal_session"
LOGIN_PATH = "/login"
API_PREFIX = "/api"
PUBLIC_PREFIXES = ("/login", "/api/auth", "/static", "/favicon", "/health")

SettingsLoader = Callable[[], Settings]
Clock = Callable[[], float]


def is_public_path(path: str) -> bool:
    return path.startswith(PUBLIC_PREFIXES)


def read_cookie(cookie_header: Optional[str], name: str) -> Optional[str]:
    """Value of the first `name=` entry in a raw Cookie header."""
    if not cookie_header:
        return None
    prefix = f"{name}="
    for part in cookie_header.split(";"):
        part = part.strip()
        if part.startswith(prefix):
            return part[len(prefix):]
    return None


def session_user(request: Request, settings: Settings, now: float) -> Optional[str]:
    token = read_cookie(request.headers.get("cookie"), COOKIE_NAME)
    return validate_session_token(settings, token, now)


def login_redirect(path: str) -> RedirectResponse:
    return RedirectResponse(f"{LOGIN_PATH}?{urlencode({'next': path})}", status_code=303)


class RequestGate:
    """
    Inbound filter in front of every route. Public prefixes pass untouched;
    everything else needs a valid session cookie. Denials are a 401 JSON body
    for API paths and a redirect to the login page otherwise.
    """

    def __init__(self, settings_loader: SettingsLoader, clock: Clock) -> None:
        self._settings_loader = settings_loader
        self._clock = clock

    async def __call__(self, request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
        path = request.url.path
        if is_public_path(path):
            return await call_next(request)

        if session_user(request, self._settings_loader(), self._clock()):
            return await call_next(request)

        logger.debug("Denied unauthenticated request to %s", path)
        if path.startswith(API_PREFIX):
            return JSONResponse({"error": "Unauthorized"}, status_code=401)
        return login_redirect(path)


def install_request_gate(app: FastAPI, settings_loader: SettingsLoader, clock: Clock) -> RequestGate:
    gate = RequestGate(settings_loader, clock)
    app.middleware("http")(gate)
    return gate
