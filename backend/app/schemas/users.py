"""Schemas describing users, their presence and suspension state."""

from datetime import datetime

from pydantic import BaseModel, Field


class SuspensionRead(BaseModel):
    """Active suspension of a user."""

    until: datetime
    reported_by: list[str] = Field(
        default_factory=list,
        description="Usernames of the reporters, in the order the reports arrived",
    )


class UserRead(BaseModel):
    """Public snapshot of a user, also used as the user change event payload."""

    id: str
    username: str
    is_online: bool = False
    last_seen: datetime
    suspension: SuspensionRead | None = None
    created_at: datetime


class UserPresenceRead(UserRead):
    """User snapshot annotated with heartbeat staleness."""

    stale: bool = Field(
        default=False,
        description="Online according to the store but silent for longer than the grace window",
    )


class SuspensionStatus(BaseModel):
    """Result of a suspension check for a single user."""

    user_id: str
    suspended: bool
    until: datetime | None = None
    reported_by: list[str] = Field(default_factory=list)
