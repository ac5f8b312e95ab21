"""Persistence of the per-entity change log.

Events are written in the same transaction as the mutation they describe and
collected on the session so they can be published once the transaction has
committed.
"""

from __future__ import annotations

from typing import Any, Mapping, Sequence

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from safeyou.realtime.events import ChangeEntity, ChangeEvent, ChangeOp

from app.models import ChangeEventRecord, ChangeSequence

PENDING_CHANGES_KEY = "pending_changes"


def _next_sequence(db: Session, entity: ChangeEntity) -> int:
    stmt = select(ChangeSequence).where(ChangeSequence.entity == entity).with_for_update()
    counter = db.execute(stmt).scalar_one_or_none()
    if counter is None:
        counter = ChangeSequence(entity=entity, last_sequence=0)
        db.add(counter)
    counter.last_sequence += 1
    return counter.last_sequence


def record_change(
    db: Session, entity: ChangeEntity, op: ChangeOp, payload: Mapping[str, Any]
) -> ChangeEvent:
    """Allocate the next sequence for *entity* and store the event.

    The event is also queued on ``db.info`` and handed out by
    :func:`pop_pending_changes` after commit.
    """

    event = ChangeEvent(entity=entity, op=op, sequence=_next_sequence(db, entity), payload=dict(payload))
    db.add(
        ChangeEventRecord(
            entity=entity,
            sequence=event.sequence,
            op=op,
            entity_id=event.entity_id,
            payload=event.payload,
        )
    )
    db.info.setdefault(PENDING_CHANGES_KEY, []).append(event)
    return event


def pop_pending_changes(db: Session) -> list[ChangeEvent]:
    return list(db.info.pop(PENDING_CHANGES_KEY, []))


def discard_pending_changes(db: Session) -> None:
    db.info.pop(PENDING_CHANGES_KEY, None)


def load_history(
    db: Session, entity: ChangeEntity, from_sequence: int, limit: int | None = None
) -> list[ChangeEvent]:
    stmt = (
        select(ChangeEventRecord)
        .where(ChangeEventRecord.entity == entity, ChangeEventRecord.sequence >= from_sequence)
        .order_by(ChangeEventRecord.sequence.asc())
    )
    if limit is not None:
        stmt = stmt.limit(limit)
    return [
        ChangeEvent(entity=row.entity, op=row.op, sequence=row.sequence, payload=dict(row.payload))
        for row in db.execute(stmt).scalars()
    ]


def last_sequence(db: Session, entity: ChangeEntity) -> int:
    value = db.execute(
        select(func.max(ChangeEventRecord.sequence)).where(ChangeEventRecord.entity == entity)
    ).scalar_one_or_none()
    return int(value or 0)


def event_visible_to(event: Any, user_id: str) -> bool:
    """Private message events are only visible to the two participants."""

    if event.entity != ChangeEntity.MESSAGE:
        return True
    recipient_id = event.payload.get("recipient_id")
    if recipient_id is None:
        return True
    return user_id in (event.payload.get("author_id"), recipient_id)


def filter_visible_events(events: Sequence[Any], user_id: str) -> list[Any]:
    return [event for event in events if event_visible_to(event, user_id)]
