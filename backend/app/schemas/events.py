"""Schemas for the persisted change log."""

from typing import Any

from pydantic import BaseModel

from app.models.enums import ChangeEntity, ChangeOp


class ChangeEventRead(BaseModel):
    entity: ChangeEntity
    op: ChangeOp
    sequence: int
    payload: dict[str, Any]


class ChangeHistoryPage(BaseModel):
    """Slice of an entity change log starting at a sequence number."""

    entity: ChangeEntity
    items: list[ChangeEventRead]
    last_sequence: int = 0
    next_sequence: int | None = None
