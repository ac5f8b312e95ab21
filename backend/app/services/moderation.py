"""Report handling and suspension checks."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.config import Settings, get_settings
from app.core.errors import InvalidReport, NotFound
from app.models import ChangeEntity, ChangeOp, Message, User, UserReport
from app.models.base import utcnow
from app.schemas import SuspensionStatus, UserRead
from app.services.changes import record_change
from app.services.serializers import serialize_user
from app.services.suspension import active_suspension, apply_report, is_suspended

logger = logging.getLogger(__name__)

__all__ = ["ModerationService", "is_suspended", "active_suspension"]


class ModerationService:
    def __init__(
        self,
        db: Session,
        *,
        clock: Callable[[], datetime] = utcnow,
        settings: Settings | None = None,
    ) -> None:
        self.db = db
        self.clock = clock
        self.settings = settings or get_settings()

    @property
    def suspension_duration(self) -> timedelta:
        return timedelta(minutes=self.settings.moderation_suspension_minutes)

    def report(self, reporter_id: str, message_id: int) -> UserRead:
        """Suspend the author of *message_id* on behalf of *reporter_id*."""

        reporter = self.db.get(User, reporter_id)
        if reporter is None:
            raise NotFound("Reporter not found")
        message = self.db.get(Message, message_id)
        if message is None or not message.visible_to(reporter_id):
            raise NotFound("Message not found")
        if message.author_id is None:
            raise NotFound("Message author not found")
        if message.author_id == reporter_id:
            raise InvalidReport("Users cannot report their own messages")

        stmt = select(User).where(User.id == message.author_id).with_for_update()
        target = self.db.execute(stmt).scalar_one_or_none()
        if target is None:
            raise NotFound("Message author not found")

        now = self.clock()
        suspension = apply_report(
            active_suspension(target, now),
            reporter.id,
            reporter.username,
            now,
            self.suspension_duration,
        )
        target.suspended_until = suspension.until
        target.suspension_reporters = [dict(entry) for entry in suspension.reporters]
        self.db.add(
            UserReport(
                reporter_id=reporter.id,
                target_id=target.id,
                message_id=message.id,
                suspended_until=suspension.until,
                created_at=now,
            )
        )
        self.db.flush()

        snapshot = serialize_user(target, now)
        record_change(self.db, ChangeEntity.USER, ChangeOp.UPSERT, snapshot.model_dump(mode="json"))
        logger.info(
            "User suspended after report",
            extra={
                "target_id": target.id,
                "reporter_id": reporter.id,
                "until": suspension.until.isoformat(),
                "reporters": len(suspension.reporters),
            },
        )
        return snapshot

    def status(self, user_id: str) -> SuspensionStatus:
        user = self.db.get(User, user_id)
        if user is None:
            raise NotFound("User not found")
        suspension = active_suspension(user, self.clock())
        if suspension is None:
            return SuspensionStatus(user_id=user.id, suspended=False)
        return SuspensionStatus(
            user_id=user.id,
            suspended=True,
            until=suspension.until,
            reported_by=suspension.reported_by,
        )
