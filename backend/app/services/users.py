"""User directory: registration, credential checks and listings."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.errors import InvalidBody, NotFound
from app.core.security import get_password_hash, verify_password
from app.models import ChangeEntity, ChangeOp, User
from app.models.base import utcnow
from app.schemas import UserPresenceRead, UserRead
from app.services.changes import record_change
from app.services.presence import presence_snapshot
from app.services.serializers import serialize_user

logger = logging.getLogger(__name__)

USERNAME_MIN_LENGTH = 3
USERNAME_MAX_LENGTH = 20


class UsernameTaken(InvalidBody):
    """Username is already registered."""

    code = "username_taken"


def normalize_username(username: str) -> str:
    value = (username or "").strip()
    if not USERNAME_MIN_LENGTH <= len(value) <= USERNAME_MAX_LENGTH:
        raise InvalidBody(
            f"Username must be {USERNAME_MIN_LENGTH}-{USERNAME_MAX_LENGTH} characters long"
        )
    return value


def username_key(username: str) -> str:
    return username.strip().casefold()


class UserDirectory:
    def __init__(self, db: Session, *, clock: Callable[[], datetime] = utcnow) -> None:
        self.db = db
        self.clock = clock

    def register(self, username: str, password: str) -> UserRead:
        name = normalize_username(username)
        key = username_key(name)
        if self.find_by_username(name) is not None:
            raise UsernameTaken("Username is already taken")

        now = self.clock()
        user = User(
            username=name,
            username_key=key,
            hashed_password=get_password_hash(password),
            is_online=False,
            last_seen=now,
            suspension_reporters=[],
            created_at=now,
            updated_at=now,
        )
        self.db.add(user)
        try:
            self.db.flush()
        except IntegrityError as exc:
            raise UsernameTaken("Username is already taken") from exc

        snapshot = serialize_user(user, now)
        record_change(self.db, ChangeEntity.USER, ChangeOp.UPSERT, snapshot.model_dump(mode="json"))
        logger.info("User registered", extra={"user_id": user.id})
        return snapshot

    def find_by_username(self, username: str) -> User | None:
        stmt = select(User).where(User.username_key == username_key(username))
        return self.db.execute(stmt).scalar_one_or_none()

    def authenticate(self, username: str, password: str) -> User | None:
        user = self.find_by_username(username)
        if user is None or not verify_password(password, user.hashed_password):
            return None
        return user

    def get(self, user_id: str) -> UserRead:
        user = self.db.get(User, user_id)
        if user is None:
            raise NotFound("User not found")
        return serialize_user(user, self.clock())

    def list(self, grace_seconds: float) -> list[UserPresenceRead]:
        now = self.clock()
        users = self.db.execute(select(User).order_by(User.username_key.asc())).scalars()
        return [presence_snapshot(user, now, grace_seconds) for user in users]
