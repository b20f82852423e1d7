"""
Shared pytest fixtures for backend tests.
Every test gets its own store, so nothing leaks between tests.
"""
import pytest
import sys
import os
from datetime import datetime, timedelta, timezone

# Add backend to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from assistant import RuleBasedResponder
from config import Settings
from database import JsonFileStore, MemoryStore, SQLiteStore


class RecordingNotifier:
    """Captures OTP codes instead of sending them."""

    def __init__(self):
        self.sent: list[tuple[str, str]] = []

    def send_otp(self, email: str, otp: str) -> bool:
        self.sent.append((email, otp))
        return True

    def last_otp(self, email: str) -> str:
        return [otp for sent_to, otp in self.sent if sent_to == email][-1]


class FakeClock:
    def __init__(self):
        self.now = datetime.now(timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def settings():
    return Settings(jwt_secret="test-secret", store_backend="memory")


@pytest.fixture
def sqlite_store(tmp_path):
    """SQLite store with the schema created by the Alembic migrations."""
    store = SQLiteStore(str(tmp_path / "test.db"))
    store.migrate()
    return store


@pytest.fixture(params=["memory", "json", "sqlite"])
def store(request, tmp_path):
    """Each storage backend, for tests of the shared store contract."""
    if request.param == "memory":
        return MemoryStore()
    if request.param == "json":
        return JsonFileStore(str(tmp_path / "store.json"))
    return request.getfixturevalue("sqlite_store")


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def app(settings, notifier, clock):
    import main

    return main.create_app(
        settings,
        store=MemoryStore(),
        notifier=notifier,
        responder=RuleBasedResponder(),
        clock=clock,
    )


@pytest.fixture
def app_client(app):
    from fastapi.testclient import TestClient

    with TestClient(app) as client:
        yield client


@pytest.fixture
def register_user(app_client):
    """Register an account and return (token, user, auth headers)."""

    def _register(email: str = "alice@example.com", password: str = "secret123"):
        response = app_client.post("/api/auth/register", json={"email": email, "password": password})
        assert response.status_code == 200, response.text
        body = response.json()
        return body["token"], body["user"], {"Authorization": f"Bearer {body['token']}"}

    return _register


@pytest.fixture
def auth_headers(register_user):
    return register_user()[2]
