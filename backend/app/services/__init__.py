"""Application service helpers."""

from .chat import ChatService, KeyedLock, command_locks
from .messages import MessageBody, MessageScope, MessageStore
from .moderation import ModerationService
from .presence import PresenceTracker
from .users import UserDirectory

__all__ = [
    "ChatService",
    "KeyedLock",
    "command_locks",
    "MessageBody",
    "MessageScope",
    "MessageStore",
    "ModerationService",
    "PresenceTracker",
    "UserDirectory",
]
