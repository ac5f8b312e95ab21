from __future__ import annotations

from enum import Enum

from safeyou.realtime.events import ChangeEntity, ChangeOp


class MediaKind(str, Enum):
    """Kinds of media a message may reference."""

    IMAGE = "image"
    VIDEO = "video"


class MessageScopeKind(str, Enum):
    """Audience of a message."""

    PUBLIC = "public"
    PRIVATE = "private"


__all__ = ["ChangeEntity", "ChangeOp", "MediaKind", "MessageScopeKind"]
