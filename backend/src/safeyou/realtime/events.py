"""Change event records exchanged between the store and subscribers.

Every mutation of a user or a message produces exactly one
:class:`ChangeEvent` carrying a full snapshot of the entity. Snapshots rather
than diffs keep application idempotent: a subscriber that sees the same event
twice, or an older event after a newer one, simply keeps the newest snapshot
per entity id.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping


class ChangeEntity(str, Enum):
    """Entity streams that carry their own sequence counter."""

    USER = "user"
    MESSAGE = "message"


class ChangeOp(str, Enum):
    """Kinds of mutation described by an event."""

    UPSERT = "upsert"
    DELETE = "delete"


class InvalidChangeEvent(ValueError):
    """Raised when a serialized change event cannot be decoded."""


@dataclass(frozen=True, slots=True)
class ChangeEvent:
    """Immutable description of one entity mutation."""

    entity: ChangeEntity
    op: ChangeOp
    sequence: int
    payload: dict[str, Any] = field(default_factory=dict)

    @property
    def entity_id(self) -> str:
        return str(self.payload.get("id"))

    def to_dict(self) -> dict[str, Any]:
        return {
            "entity": self.entity.value,
            "op": self.op.value,
            "sequence": self.sequence,
            "payload": self.payload,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ChangeEvent":
        try:
            entity = ChangeEntity(data["entity"])
            op = ChangeOp(data["op"])
            sequence = int(data["sequence"])
        except (KeyError, TypeError, ValueError) as exc:
            raise InvalidChangeEvent("Malformed change event") from exc
        payload = data.get("payload")
        if not isinstance(payload, dict) or "id" not in payload:
            raise InvalidChangeEvent("Change event payload must be an object with an id")
        return cls(entity=entity, op=op, sequence=sequence, payload=dict(payload))
