"""Online state and last-seen tracking for users."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.core.errors import NotFound
from app.models import ChangeEntity, ChangeOp, User
from app.models.base import utcnow
from app.monitoring.metrics import presence_expired_total
from app.schemas import UserPresenceRead, UserRead
from app.services.changes import record_change
from app.services.serializers import serialize_user

logger = logging.getLogger(__name__)


def is_stale(user: User, now: datetime, grace_seconds: float) -> bool:
    """Online according to the store but without a heartbeat inside the grace window."""

    if not user.is_online:
        return False
    return user.last_seen < now - timedelta(seconds=grace_seconds)


def presence_snapshot(user: User, now: datetime, grace_seconds: float) -> UserPresenceRead:
    base = serialize_user(user, now)
    return UserPresenceRead(**base.model_dump(), stale=is_stale(user, now, grace_seconds))


class PresenceTracker:
    def __init__(self, db: Session, *, clock: Callable[[], datetime] = utcnow) -> None:
        self.db = db
        self.clock = clock

    def set_online(self, user_id: str) -> UserRead:
        return self._update(user_id, online=True)

    def set_offline(self, user_id: str) -> UserRead:
        return self._update(user_id, online=False)

    def heartbeat(self, user_id: str) -> UserRead:
        """Refresh ``last_seen`` without touching ``is_online``."""

        return self._update(user_id, online=None)

    def expire_stale(self, grace_seconds: float) -> list[UserRead]:
        """Turn every stale online user offline and return their new snapshots."""

        now = self.clock()
        threshold = now - timedelta(seconds=grace_seconds)
        stmt = (
            select(User)
            .where(User.is_online.is_(True), User.last_seen < threshold)
            .order_by(User.last_seen.asc())
            .with_for_update()
        )
        expired: list[UserRead] = []
        for user in self.db.execute(stmt).scalars():
            user.is_online = False
            self.db.flush()
            snapshot = serialize_user(user, now)
            record_change(self.db, ChangeEntity.USER, ChangeOp.UPSERT, snapshot.model_dump(mode="json"))
            expired.append(snapshot)
        if expired:
            presence_expired_total.inc(len(expired))
            logger.info("Expired stale presence", extra={"users": [item.id for item in expired]})
        return expired

    def _update(self, user_id: str, *, online: bool | None) -> UserRead:
        stmt = select(User).where(User.id == user_id).with_for_update()
        user = self.db.execute(stmt).scalar_one_or_none()
        if user is None:
            raise NotFound("User not found")
        now = self.clock()
        if online is not None:
            user.is_online = online
        # last_seen never moves backwards.
        if user.last_seen is None or now > user.last_seen:
            user.last_seen = now
        self.db.flush()
        snapshot = serialize_user(user, now)
        record_change(self.db, ChangeEntity.USER, ChangeOp.UPSERT, snapshot.model_dump(mode="json"))
        return snapshot
