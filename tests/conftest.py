"""Shared pytest fixtures for Ngevent."""

from __future__ import annotations

import json
import os
import sys
import tempfile
from datetime import timedelta
from pathlib import Path

import httpx
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import scoped_session, sessionmaker
from sqlalchemy.pool import StaticPool

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

# Settings are read at import time; keep test runs away from real services.
os.environ.setdefault("NGEVENT_BASE_DIR", tempfile.mkdtemp(prefix="ngevent-tests-"))
os.environ.setdefault("NGEVENT_ENVIRONMENT", "test")
os.environ.setdefault("NGEVENT_ENABLE_SCHEDULER", "false")
os.environ.setdefault("NGEVENT_JWT_SECRET", "test-secret")
os.environ.setdefault("NGEVENT_SITE_URL", "https://ngevent.test")

from fastapi.testclient import TestClient

from ngevent import api, database, lifecycle, storage
from ngevent.cache import events_cache
from ngevent.crud import create_event, create_user
from ngevent.mailer import Mailer
from ngevent.models import Base
from ngevent.queues import QueueClient, SignatureVerifier
from ngevent.ratelimit import RateLimiter
from ngevent.security import create_access_token, hash_password
from ngevent.turnstile import HumanVerifier
from ngevent.uploads import UploadSigner
from ngevent.utils import utcnow

DEFAULT_PASSWORD = "secret123"
_PASSWORD_HASH = hash_password(DEFAULT_PASSWORD)


@pytest.fixture(scope="session", autouse=True)
def configure_in_memory_db():
    """Reuse a single in-memory SQLite database for fast, isolated tests."""

    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    session_factory = scoped_session(
        sessionmaker(
            bind=engine,
            autoflush=False,
            autocommit=False,
            future=True,
            expire_on_commit=False,
        )
    )
    database.engine = engine
    database.SessionLocal = session_factory
    storage.engine = engine
    storage.get_session = database.get_session
    lifecycle.engine = engine
    api.SessionLocal = session_factory
    Base.metadata.create_all(bind=engine)
    yield
    session_factory.remove()


@pytest.fixture(autouse=True)
def clean_database():
    """Reset all tables and cached responses between tests."""

    Base.metadata.drop_all(bind=database.engine)
    Base.metadata.create_all(bind=database.engine)
    events_cache.clear()
    yield
    database.SessionLocal.remove()


@pytest.fixture()
def services():
    """Unconfigured collaborators; tests swap in MockTransport-backed ones."""

    return {
        api.get_mailer: Mailer(api_key=""),
        api.get_queue: QueueClient(token=""),
        api.get_rate_limiter: RateLimiter(url="", token=""),
        api.get_human_verifier: HumanVerifier(secret=""),
        api.get_upload_signer: UploadSigner(cloud_name="", api_key="", api_secret=""),
        api.get_signature_verifier: SignatureVerifier(current_key="", next_key=""),
    }


@pytest.fixture()
def client(monkeypatch, services):
    """FastAPI test client with the scheduler disabled."""

    monkeypatch.setattr(api, "start_scheduler", lambda: None)
    monkeypatch.setattr(api, "stop_scheduler", lambda: None)
    for provider in services:
        # Bind late so tests can replace entries after the client starts.
        api.app.dependency_overrides[provider] = (
            lambda provider=provider: services[provider]
        )
    with TestClient(api.app) as test_client:
        yield test_client
    api.app.dependency_overrides.clear()


@pytest.fixture()
def make_user():
    """Create a committed user with a complete profile."""

    def _make_user(
        email: str = "someone@example.com",
        *,
        role: str = "participant",
        full_name: str | None = "Sam Rivera",
        complete_profile: bool = True,
        verified: bool = True,
    ):
        extra = {}
        if complete_profile:
            extra = {
                "phone": "+62 812 0000 0000",
                "institution": "Universitas Contoh",
                "position": "Student",
                "city": "Bandung",
            }
        with database.get_session() as session:
            user = create_user(
                session,
                email=email,
                password_hash=_PASSWORD_HASH,
                full_name=full_name,
                role=role,
                **extra,
            )
            user.is_verified = verified
        return user

    return _make_user


@pytest.fixture()
def auth_headers():
    def _headers(user) -> dict[str, str]:
        token = create_access_token(user_id=user.id, email=user.email)
        return {"Authorization": f"Bearer {token}"}

    return _headers


@pytest.fixture()
def make_event():
    """Create a committed event owned by ``organizer``."""

    def _make_event(organizer, **overrides):
        start = overrides.pop("start_date", utcnow().replace(microsecond=0) + timedelta(days=7))
        values = {
            "title": "Python Meetup",
            "description": "Talks and networking",
            "start_date": start,
            "end_date": start + timedelta(hours=3),
            "location": "Jakarta",
            "status": "published",
            "category": "Technology",
        }
        values.update(overrides)
        with database.get_session() as session:
            event = create_event(session, organizer=organizer, **values)
        return event

    return _make_event


class FakeKeyValueStore:
    """Answers the key-value REST commands the rate limiter issues."""

    def __init__(self) -> None:
        self.values: dict[str, str] = {}
        self.ttls: dict[str, int] = {}
        self.commands: list[list[str]] = []
        self.transport = httpx.MockTransport(self._handle)

    def _handle(self, request: httpx.Request) -> httpx.Response:
        command = json.loads(request.content)
        self.commands.append(command)
        name, *args = command
        return httpx.Response(200, json={"result": self._run(name.upper(), args)})

    def _run(self, name: str, args: list[str]):
        if name == "INCR":
            value = int(self.values.get(args[0], "0")) + 1
            self.values[args[0]] = str(value)
            return value
        if name == "GET":
            return self.values.get(args[0])
        if name == "EXPIRE":
            self.ttls[args[0]] = int(args[1])
            return 1
        if name == "PEXPIRE":
            self.ttls[args[0]] = int(args[1]) // 1000
            return 1
        if name == "SET":
            self.values[args[0]] = args[1]
            if len(args) >= 4 and args[2].upper() == "EX":
                self.ttls[args[0]] = int(args[3])
            return "OK"
        if name == "TTL":
            if args[0] not in self.values:
                return -2
            return self.ttls.get(args[0], -1)
        if name == "DEL":
            removed = 0
            for key in args:
                removed += int(self.values.pop(key, None) is not None)
                self.ttls.pop(key, None)
            return removed
        raise AssertionError(f"Unexpected command {name}")

    def limiter(self, *, clock=lambda: 120.0) -> RateLimiter:
        return RateLimiter(
            url="https://kv.test",
            token="kv-token",
            client=httpx.Client(transport=self.transport),
            clock=clock,
        )


@pytest.fixture()
def kv_store() -> FakeKeyValueStore:
    return FakeKeyValueStore()


def json_transport(payload, *, status_code: int = 200, calls: list | None = None):
    """MockTransport answering every request with ``payload``."""

    def handler(request: httpx.Request) -> httpx.Response:
        if calls is not None:
            calls.append(request)
        return httpx.Response(status_code, json=payload)

    return httpx.MockTransport(handler)


@pytest.fixture()
def mock_client():
    """Factory for httpx clients backed by ``json_transport``."""

    def _client(payload=None, *, status_code: int = 200, calls: list | None = None):
        return httpx.Client(
            transport=json_transport(
                {} if payload is None else payload, status_code=status_code, calls=calls
            )
        )

    return _client
