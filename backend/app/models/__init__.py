"""Database models package."""

from .base import Base
from .chat import (
    ChangeEventRecord,
    ChangeSequence,
    CommandReceipt,
    Message,
    MessageReaction,
    MessageReceipt,
    User,
    UserReport,
)
from .enums import ChangeEntity, ChangeOp, MediaKind, MessageScopeKind

__all__ = [
    "Base",
    "User",
    "Message",
    "MessageReaction",
    "MessageReceipt",
    "UserReport",
    "ChangeSequence",
    "ChangeEventRecord",
    "CommandReceipt",
    "ChangeEntity",
    "ChangeOp",
    "MediaKind",
    "MessageScopeKind",
]
