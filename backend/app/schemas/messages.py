"""Schemas related to chat messages."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from app.models.enums import MediaKind, MessageScopeKind


class MediaPayload(BaseModel):
    """Media referenced by a message."""

    kind: MediaKind
    url: str = Field(..., max_length=1024)


class ReplyPreview(BaseModel):
    """Read-time preview of the message a reply points at."""

    id: int
    author_username: str
    text: str | None = None
    media_kind: MediaKind | None = None


class MessageCreate(BaseModel):
    """Payload for sending a message.

    Body checks (empty body, text length) are left to the message store so
    that they surface as ``InvalidBody`` like every other command failure.
    """

    text: str | None = None
    media: MediaPayload | None = None
    recipient_id: str | None = Field(
        default=None, description="Recipient of a private message; omit for the public room"
    )
    reply_to_id: int | None = None


class MessageRead(BaseModel):
    """Serialized representation of a chat message."""

    id: int
    author_id: str | None
    author_username: str
    text: str | None = None
    media: MediaPayload | None = None
    scope: MessageScopeKind = MessageScopeKind.PUBLIC
    recipient_id: str | None = None
    reply_to_id: int | None = None
    reply_to: ReplyPreview | None = None
    reactions: dict[str, list[str]] = Field(
        default_factory=dict,
        description="Emoji mapped to the ids of the users holding that reaction",
    )
    read_by: list[str] = Field(default_factory=list)
    created_at: datetime
    edited_at: datetime | None = None


class MessageHistoryPage(BaseModel):
    """Cursor-based page of messages in creation order."""

    items: list[MessageRead]
    next_cursor: str | None = None
    has_more: bool = False


class ReactionRequest(BaseModel):
    """Payload for toggling a reaction."""

    emoji: str = Field(..., min_length=1, max_length=32)
    command_id: str | None = Field(
        default=None,
        min_length=1,
        max_length=64,
        description="Client command id; repeated ids are applied only once",
    )
