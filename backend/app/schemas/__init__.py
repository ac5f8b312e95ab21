"""Pydantic schemas for API payloads."""

from .auth import LoginRequest, Token, UserCreate
from .events import ChangeEventRead, ChangeHistoryPage
from .messages import (
    MediaPayload,
    MessageCreate,
    MessageHistoryPage,
    MessageRead,
    ReactionRequest,
    ReplyPreview,
)
from .users import SuspensionRead, SuspensionStatus, UserPresenceRead, UserRead

__all__ = [
    "LoginRequest",
    "Token",
    "UserCreate",
    "UserRead",
    "UserPresenceRead",
    "SuspensionRead",
    "SuspensionStatus",
    "MediaPayload",
    "MessageCreate",
    "MessageRead",
    "MessageHistoryPage",
    "ReactionRequest",
    "ReplyPreview",
    "ChangeEventRead",
    "ChangeHistoryPage",
]
