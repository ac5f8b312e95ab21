"""Snapshots of users and messages as returned by the API and change events."""

from __future__ import annotations

from collections import OrderedDict
from datetime import datetime

from app.models import Message, User
from app.schemas import (
    MediaPayload,
    MessageRead,
    ReplyPreview,
    SuspensionRead,
    UserRead,
)
from app.services.suspension import active_suspension


def serialize_user(user: User, now: datetime) -> UserRead:
    suspension = active_suspension(user, now)
    return UserRead(
        id=user.id,
        username=user.username,
        is_online=user.is_online,
        last_seen=user.last_seen,
        suspension=(
            SuspensionRead(until=suspension.until, reported_by=suspension.reported_by)
            if suspension is not None
            else None
        ),
        created_at=user.created_at,
    )


def _reply_preview(message: Message) -> ReplyPreview | None:
    target = message.reply_to
    if target is None:
        return None
    return ReplyPreview(
        id=target.id,
        author_username=target.author_username,
        text=target.text,
        media_kind=target.media_kind,
    )


def serialize_message(message: Message) -> MessageRead:
    reactions: "OrderedDict[str, list[str]]" = OrderedDict()
    for reaction in sorted(message.reactions, key=lambda item: (item.created_at, item.id or 0)):
        reactions.setdefault(reaction.emoji, []).append(reaction.user_id)
    read_by = [
        receipt.user_id
        for receipt in sorted(message.receipts, key=lambda item: (item.read_at, item.id or 0))
    ]
    media = None
    if message.media_kind is not None and message.media_url:
        media = MediaPayload(kind=message.media_kind, url=message.media_url)
    return MessageRead(
        id=message.id,
        author_id=message.author_id,
        author_username=message.author_username,
        text=message.text,
        media=media,
        scope=message.scope,
        recipient_id=message.recipient_id,
        reply_to_id=message.reply_to_id,
        reply_to=_reply_preview(message),
        reactions=dict(reactions),
        read_by=read_by,
        created_at=message.created_at,
        edited_at=message.edited_at,
    )
