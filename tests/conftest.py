from __future__ import annotations

import hashlib

import pytest

from proxypal.config import Settings

SECRET = "test-signing-secret"
SWORDFISH_DIGEST = hashlib.sha256(b"swordfish").hexdigest()


class FakeClock:
    def __init__(self, start_ms: int = 1_700_000_000_000) -> None:
        self.now = start_ms

    def __call__(self) -> int:
        return self.now

    def advance(self, *, minutes: float = 0, ms: int = 0) -> None:
        self.now += int(minutes * 60 * 1000) + ms


@pytest.fixture()
def settings() -> Settings:
    return Settings(
        session_secret=SECRET,
        users=f"alice:hunter2, bob:sha256:{SWORDFISH_DIGEST},ops:s3cret",
        session_ttl_hours=1,
    )


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()
