from __future__ import annotations

import base64
import hashlib
import hmac
import json
import logging
import math
import time
from dataclasses import dataclass
from typing import Literal, Optional

from proxypal.config import Settings

logger = logging.getLogger(__name__)

Algorithm = Literal["plain", "sha256"]

SHA256_PREFIX = "sha256:"


class AuthError(Exception):
    """Base class for authentication failures."""


class ConfigurationError(AuthError):
    pass


class InvalidCredentials(AuthError):
    pass


class MalformedToken(AuthError):
    pass


class ExpiredToken(AuthError):
    pass


@dataclass(frozen=True)
class User:
    username: str


@dataclass(frozen=True)
class UserRecord:
    username: str
    secret: str
    algorithm: Algorithm


@dataclass(frozen=True)
class SessionPayload:
    subject: str
    expires_at_ms: float

    def to_json(self) -> str:
        return json.dumps({"u": self.subject, "exp": self.expires_at_ms}, separators=(",", ":"))


def now_ms() -> int:
    return int(time.time() * 1000)


def parse_users(raw: Optional[str]) -> list[UserRecord]:
    """
    Comma-separated entries:
      username:password
      username:sha256:<hex digest of password>
    Entries without a username or a secret are ignored.
    """
    if not raw:
        return []
    users: list[UserRecord] = []
    for entry in raw.split(","):
        entry = entry.strip()
        if not entry or ":" not in entry:
            continue
        u, secret = entry.split(":", 1)
        u = u.strip()
        if not u or not secret:
            continue
        if secret.startswith(SHA256_PREFIX):
            digest = secret[len(SHA256_PREFIX):].strip().lower()
            users.append(UserRecord(username=u, secret=digest, algorithm="sha256"))
        else:
            users.append(UserRecord(username=u, secret=secret.strip(), algorithm="plain"))
    return users


def _sha256_hex(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def _matches(record: UserRecord, password: str) -> bool:
    submitted = password if record.algorithm == "plain" else _sha256_hex(password)
    # Constant-time compare
    return hmac.compare_digest(record.secret.encode("utf-8"), submitted.encode("utf-8"))


def verify_credentials(settings: Settings, username: str, password: str) -> User:
    users = parse_users(settings.users)
    if not users:
        raise ConfigurationError("UI users not configured")
    if not username or not password:
        raise InvalidCredentials("empty username or password")

    record = next((r for r in users if r.username == username), None)
    if record is None:
        # Keep the miss path doing the same amount of work as a mismatch
        _matches(UserRecord(username="", secret=_sha256_hex(""), algorithm="sha256"), password)
        raise InvalidCredentials("unknown user")
    if not _matches(record, password):
        raise InvalidCredentials("password mismatch")
    return User(username=record.username)


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def _b64url_decode(data: str) -> bytes:
    pad = "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode((data + pad).encode("ascii"))


def _sign(secret: str, payload_b64: str) -> str:
    sig = hmac.new(secret.encode("utf-8"), payload_b64.encode("ascii"), hashlib.sha256).digest()
    return _b64url(sig)


def issue_session_token(settings: Settings, username: str, now: Optional[float] = None) -> str:
    if not settings.session_secret:
        raise ConfigurationError("Missing CLIPROXY_UI_SECRET")
    issued_at = now_ms() if now is None else now
    payload = SessionPayload(subject=username, expires_at_ms=int(issued_at + settings.session_ttl_ms))
    payload_b64 = _b64url(payload.to_json().encode("utf-8"))
    return f"{payload_b64}.{_sign(settings.session_secret, payload_b64)}"


def decode_session_token(secret: str, token: str, now: float) -> SessionPayload:
    """
    Strict variant of validate_session_token. The signature is checked over the
    encoded payload text before anything is decoded.

    Raises MalformedToken or ExpiredToken.
    """
    if not secret:
        raise MalformedToken("no signing secret configured")
    if token.count(".") != 1:
        raise MalformedToken("expected exactly one separator")
    payload_b64, sig = token.split(".", 1)
    if not payload_b64 or not sig:
        raise MalformedToken("empty segment")

    try:
        expected_sig = _sign(secret, payload_b64)
    except UnicodeEncodeError as exc:
        raise MalformedToken("non-ascii payload") from exc
    if not hmac.compare_digest(expected_sig.encode("ascii"), sig.encode("utf-8")):
        raise MalformedToken("bad signature")

    try:
        data = json.loads(_b64url_decode(payload_b64).decode("utf-8"))
    except ValueError as exc:
        raise MalformedToken("undecodable payload") from exc
    if not isinstance(data, dict):
        raise MalformedToken("payload is not an object")
    subject = data.get("u")
    exp = data.get("exp")
    if not isinstance(subject, str) or not subject:
        raise MalformedToken("missing subject")
    if isinstance(exp, bool) or not isinstance(exp, (int, float)) or not math.isfinite(exp):
        raise MalformedToken("missing expiry")

    if exp < now:
        raise ExpiredToken(f"expired for {subject}")
    return SessionPayload(subject=subject, expires_at_ms=exp)


def validate_session_token(settings: Settings, token: Optional[str], now: Optional[float] = None) -> Optional[str]:
    if not token:
        return None
    try:
        payload = decode_session_token(settings.session_secret, token, now_ms() if now is None else now)
    except (MalformedToken, ExpiredToken) as exc:
        logger.debug("Rejected session token: %s", exc)
        return None
    return payload.subject
