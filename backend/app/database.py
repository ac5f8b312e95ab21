from contextlib import contextmanager
from typing import Any, Iterator

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from app.config import get_settings

settings = get_settings()


def _engine_options(url: str) -> dict[str, Any]:
    options: dict[str, Any] = {"echo": settings.debug, "future": True, "pool_pre_ping": True}
    if url.startswith("sqlite"):
        options["connect_args"] = {"check_same_thread": False}
    else:
        # Commands run on worker threads, one short-lived session each.
        options.update(pool_size=10, max_overflow=20)
    return options


engine = create_engine(settings.database_url, **_engine_options(settings.database_url))
SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False, future=True)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_session_factory() -> sessionmaker[Session]:
    """Dependency returning the factory used by chat commands and subscriptions."""

    return SessionLocal


@contextmanager
def get_db_session() -> Iterator[Session]:
    """Context manager for short-lived database sessions.

    Use this in WebSocket handlers and background tasks instead of
    Depends(get_db) to avoid holding a connection for the whole socket lifetime.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
