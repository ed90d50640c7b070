from __future__ import annotations

import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Settings are read at import time by some modules; pin them before importing learnauth
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("PASSWORD_HASH_COST", "4")
os.environ.setdefault("LOG_JSON", "false")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from learnauth.config import Settings  # noqa: E402
from learnauth.service.auth import AuthService  # noqa: E402
from learnauth.service.events import AuthEventPublisher  # noqa: E402
from learnauth.service.runtime import reset_auth_service  # noqa: E402
from learnauth.storage.memory import MemoryStore  # noqa: E402

STRONG_PASSWORD = "Passw0rd!"


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime.now(timezone.utc).replace(microsecond=0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingDelivery:
    """Token delivery channel that keeps every raw token it is handed."""

    def __init__(self) -> None:
        self.verifications: list[tuple[str, str]] = []
        self.resets: list[tuple[str, str]] = []

    def send_email_verification(self, email: str, raw_token: str) -> None:
        self.verifications.append((email, raw_token))

    def send_password_reset(self, email: str, raw_token: str) -> None:
        self.resets.append((email, raw_token))

    def last_verification_token(self, email: str) -> str:
        return [token for addr, token in self.verifications if addr == email][-1]

    def last_reset_token(self, email: str) -> str:
        return [token for addr, token in self.resets if addr == email][-1]


@pytest.fixture(autouse=True)
def reset_service_state():
    reset_auth_service()
    yield
    reset_auth_service()


@pytest.fixture
def settings():
    """Low-cost settings so argon2 stays fast in tests."""
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        password_hash_cost=4,
        use_memory_store=True,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def delivery():
    return RecordingDelivery()


@pytest.fixture
def events():
    return AuthEventPublisher()


@pytest.fixture
def auth_service(memory_store, settings, delivery, events, clock):
    return AuthService(
        memory_store, settings, delivery=delivery, events=events, clock=clock
    )


@pytest.fixture
def active_account(auth_service, delivery):
    """Registered and verified account for a@x.com."""
    result = auth_service.register("a@x.com", STRONG_PASSWORD)
    auth_service.verify_email(delivery.last_verification_token("a@x.com"))
    return result
