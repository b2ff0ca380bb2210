from __future__ import annotations

import math
import os
from dataclasses import dataclass

DEFAULT_SESSION_TTL_HOURS = 12.0
DEFAULT_UPSTREAM_URL = "http://127.0.0.1:8317"
DEFAULT_UPSTREAM_TIMEOUT = 3.5
DEFAULT_PORT = 8080


@dataclass(frozen=True)
class Settings:
    session_secret: str = ""
    users: str = ""
    session_ttl_hours: float = DEFAULT_SESSION_TTL_HOURS
    cookie_secure: bool = False
    upstream_base_url: str = DEFAULT_UPSTREAM_URL
    management_key: str = "proxypal-mgmt-key"
    proxy_api_key: str = "proxypal-local"
    upstream_timeout: float = DEFAULT_UPSTREAM_TIMEOUT
    port: int = DEFAULT_PORT
    log_level: str = "INFO"

    @property
    def session_ttl_ms(self) -> float:
        return self.session_ttl_hours * 60 * 60 * 1000

    @property
    def session_ttl_seconds(self) -> int:
        return round(self.session_ttl_hours * 60 * 60)


def _float_env(raw: str, default: float) -> float:
    try:
        value = float(raw)
    except ValueError:
        return default
    if not math.isfinite(value) or value <= 0:
        return default
    return value


def _ttl_hours(raw: str) -> float:
    return _float_env(raw, DEFAULT_SESSION_TTL_HOURS)


def _port(raw: str) -> int:
    try:
        return int(raw)
    except ValueError:
        return DEFAULT_PORT


def _truthy(v: str) -> bool:
    return v.strip().lower() in {"1", "true", "yes", "on"}


def load_settings() -> Settings:
    env = os.environ
    ttl_raw = env.get("CLIPROXY_UI_SESSION_TTL_HOURS")
    if ttl_raw is None:
        ttl_raw = env.get("CLIPROXY_UI_SESSION_TTL_HR", "")
    # The management key doubles as the signing secret when CLIPROXY_UI_SECRET is unset
    secret = env.get("CLIPROXY_UI_SECRET") or env.get("CLIPROXY_MANAGEMENT_KEY") or ""
    secure = _truthy(env.get("CLIPROXY_UI_COOKIE_SECURE", "")) or env.get("APP_ENV", "") == "production"
    return Settings(
        session_secret=secret,
        users=env.get("CLIPROXY_UI_USERS", ""),
        session_ttl_hours=_ttl_hours(ttl_raw),
        cookie_secure=secure,
        upstream_base_url=(env.get("CLIPROXY_BASE_URL") or DEFAULT_UPSTREAM_URL).rstrip("/"),
        management_key=env.get("CLIPROXY_MANAGEMENT_KEY") or "proxypal-mgmt-key",
        proxy_api_key=env.get("CLIPROXY_API_KEY") or "proxypal-local",
        upstream_timeout=_float_env(env.get("CLIPROXY_UPSTREAM_TIMEOUT", ""), DEFAULT_UPSTREAM_TIMEOUT),
        port=_port(env.get("PORT", "")),
        log_level=env.get("LOG_LEVEL", "INFO"),
    )
