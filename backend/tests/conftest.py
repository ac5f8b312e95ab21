"""Shared pytest fixtures for backend tests."""

from __future__ import annotations

import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Iterator

os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("DEBUG", "false")
os.environ["PRESENCE_SWEEP_INTERVAL_SECONDS"] = "0"

import pytest
from fastapi.testclient import TestClient
from passlib.context import CryptContext
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

ROOT_DIR = Path(__file__).resolve().parents[1]
for path in (ROOT_DIR, ROOT_DIR / "src"):
    if str(path) not in sys.path:
        sys.path.insert(0, str(path))

from app.core import security
from app.database import get_db, get_session_factory
from app.main import app
from app.models import Base
from safeyou.realtime import managers as realtime_managers
from safeyou.realtime.bus import ChangeBus

security.pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")


class FakeClock:
    """Manually advanced clock injected into services."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture()
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def test_engine() -> Iterator[Engine]:
    """Provide an in-memory SQLite engine for isolated tests."""

    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(engine)
        engine.dispose()


@pytest.fixture()
def session_factory(test_engine) -> sessionmaker[Session]:
    """Return a session factory bound to the test engine."""

    return sessionmaker(bind=test_engine, future=True)


@pytest.fixture()
def db_session(session_factory) -> Iterator[Session]:
    """Yield a SQLAlchemy session for unit tests."""

    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(autouse=True)
def change_bus(monkeypatch) -> ChangeBus:
    """Give every test its own change bus and connection tracker."""

    bus = ChangeBus(retention=100, queue_size=32)
    monkeypatch.setattr(realtime_managers, "change_bus", bus)
    monkeypatch.setattr(realtime_managers, "connection_tracker", realtime_managers.ConnectionTracker())
    return bus


@pytest.fixture()
def client(session_factory) -> Iterator[TestClient]:
    """Yield a FastAPI TestClient with the database dependencies overridden."""

    def override_get_db() -> Iterator[Session]:
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def register_user(client: TestClient, username: str, password: str = "supersecret") -> dict[str, Any]:
    response = client.post("/api/auth/register", json={"username": username, "password": password})
    assert response.status_code == 201, response.text
    return response.json()


def login_user(client: TestClient, username: str, password: str = "supersecret") -> str:
    response = client.post("/api/auth/login", json={"username": username, "password": password})
    assert response.status_code == 200, response.text
    return response.json()["access_token"]


def auth_headers(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture()
def make_account(client):
    """Register and log in a user, returning ``(user, headers, token)``."""

    def factory(username: str, password: str = "supersecret") -> tuple[dict[str, Any], dict[str, str], str]:
        user = register_user(client, username, password)
        token = login_user(client, username, password)
        return user, auth_headers(token), token

    return factory
