"""Pure suspension state transitions.

A user is either active or suspended until a deadline by an ordered list of
reporters. Expiry is lazy: nothing clears a past deadline, every reader
compares it with the current time instead.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Sequence

from app.models import User


@dataclass(frozen=True, slots=True)
class Suspension:
    until: datetime
    reporters: tuple[dict[str, Any], ...] = field(default_factory=tuple)

    @property
    def reported_by(self) -> list[str]:
        return [str(reporter.get("username", "")) for reporter in self.reporters]


def is_suspended(user: User, now: datetime) -> bool:
    """Return whether *user* is suspended at *now*; never mutates the user."""

    until = user.suspended_until
    return until is not None and now < until


def active_suspension(user: User, now: datetime) -> Suspension | None:
    """Return the suspension in force at *now*, treating expired ones as absent."""

    if not is_suspended(user, now):
        return None
    return Suspension(
        until=user.suspended_until,  # type: ignore[arg-type]
        reporters=tuple(user.suspension_reporters or ()),
    )


def apply_report(
    current: Suspension | None,
    reporter_id: str,
    reporter_username: str,
    now: datetime,
    duration: timedelta,
) -> Suspension:
    """Fold one report into the current state.

    An active suspension keeps the later of its deadline and ``now + duration``
    and gains the reporter unless the same reporter id is already listed.
    """

    deadline = now + duration
    if current is None:
        return Suspension(until=deadline, reporters=({"id": reporter_id, "username": reporter_username},))

    reporters: Sequence[dict[str, Any]] = current.reporters
    if not any(str(entry.get("id")) == reporter_id for entry in reporters):
        reporters = (*reporters, {"id": reporter_id, "username": reporter_username})
    return Suspension(until=max(current.until, deadline), reporters=tuple(reporters))
