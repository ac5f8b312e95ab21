"""Authoritative message store: send, react, read receipts, delete, history."""

from __future__ import annotations

import base64
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from sqlalchemy import and_, or_, select
from sqlalchemy.orm import Session, selectinload

from app.config import Settings, get_settings
from app.core.errors import AuthorSuspended, Forbidden, InvalidBody, NotFound
from app.models import (
    ChangeEntity,
    ChangeOp,
    CommandReceipt,
    Message,
    MessageReaction,
    MessageReceipt,
    MessageScopeKind,
    User,
)
from app.models.base import utcnow
from app.schemas import MediaPayload, MessageHistoryPage, MessageRead
from app.services.changes import record_change
from app.services.serializers import serialize_message
from app.services.suspension import active_suspension

logger = logging.getLogger(__name__)

REACT_COMMAND = "react"


@dataclass(frozen=True, slots=True)
class MessageScope:
    """Either the public room or a private conversation with ``recipient_id``."""

    kind: MessageScopeKind
    recipient_id: str | None = None

    @classmethod
    def public(cls) -> "MessageScope":
        return cls(MessageScopeKind.PUBLIC)

    @classmethod
    def private(cls, recipient_id: str) -> "MessageScope":
        return cls(MessageScopeKind.PRIVATE, recipient_id)

    @classmethod
    def for_recipient(cls, recipient_id: str | None) -> "MessageScope":
        return cls.private(recipient_id) if recipient_id else cls.public()


@dataclass(frozen=True, slots=True)
class MessageBody:
    text: str | None = None
    media: MediaPayload | None = None


def encode_cursor(created_at: datetime, message_id: int) -> str:
    payload = f"v1|{created_at.isoformat()}|{message_id}"
    return base64.urlsafe_b64encode(payload.encode("utf-8")).decode("ascii")


def decode_cursor(cursor: str) -> tuple[datetime, int]:
    try:
        raw = base64.urlsafe_b64decode(cursor.encode("utf-8")).decode("utf-8")
        version, timestamp, message_id = raw.split("|", 2)
        if version != "v1":
            raise ValueError("Unsupported cursor version")
        return datetime.fromisoformat(timestamp), int(message_id)
    except (ValueError, UnicodeError) as exc:
        raise InvalidBody("Invalid cursor") from exc


class MessageStore:
    """Message commands and queries bound to one database session.

    Mutations flush but never commit; the caller owns the transaction and
    publishes the change events recorded on the session afterwards.
    """

    def __init__(
        self,
        db: Session,
        *,
        clock: Callable[[], datetime] = utcnow,
        settings: Settings | None = None,
    ) -> None:
        self.db = db
        self.clock = clock
        self.settings = settings or get_settings()

    def send(
        self,
        author_id: str,
        scope: MessageScope,
        body: MessageBody,
        reply_to_id: int | None = None,
    ) -> MessageRead:
        text, media = self._normalize_body(body)
        now = self.clock()

        author = self.db.get(User, author_id)
        if author is None:
            raise NotFound("Author not found")
        suspension = active_suspension(author, now)
        if suspension is not None:
            raise AuthorSuspended(suspension.until)

        recipient_id = None
        if scope.kind is MessageScopeKind.PRIVATE:
            if not scope.recipient_id or self.db.get(User, scope.recipient_id) is None:
                raise NotFound("Recipient not found")
            recipient_id = scope.recipient_id

        reply_to = None
        if reply_to_id is not None:
            reply_to = self.db.get(Message, reply_to_id)
            if reply_to is None or not self._reply_allowed(reply_to, author_id, recipient_id):
                raise NotFound("Reply target not found")

        message = Message(
            author_id=author.id,
            author_username=author.username,
            recipient_id=recipient_id,
            text=text,
            media_kind=media.kind if media else None,
            media_url=media.url if media else None,
            reply_to=reply_to,
            created_at=now,
        )
        message.receipts.append(MessageReceipt(user_id=author.id, read_at=now))
        self.db.add(message)
        self.db.flush()

        snapshot = serialize_message(message)
        record_change(self.db, ChangeEntity.MESSAGE, ChangeOp.UPSERT, snapshot.model_dump(mode="json"))
        logger.info(
            "Message sent",
            extra={"message_id": message.id, "author_id": author.id, "scope": message.scope.value},
        )
        return snapshot

    def react(
        self,
        message_id: int,
        user_id: str,
        emoji: str,
        command_id: str | None = None,
    ) -> MessageRead:
        """Toggle *user_id* in ``reactions[emoji]``.

        Every call flips the state. A ``command_id`` this user already applied
        makes the call return the current snapshot without flipping. Ids are
        scoped per user, so two clients may pick the same one.
        """

        emoji = (emoji or "").strip()
        if not emoji:
            raise InvalidBody("Emoji must not be empty")
        if self.db.get(User, user_id) is None:
            raise NotFound("User not found")
        message = self._load_for_update(message_id, user_id)

        if command_id is not None:
            receipt_key = {"user_id": user_id, "command_id": command_id}
            if self.db.get(CommandReceipt, receipt_key) is not None:
                logger.debug(
                    "Duplicate reaction command ignored",
                    extra={"command_id": command_id, "user_id": user_id},
                )
                return serialize_message(message)
            self.db.add(
                CommandReceipt(
                    command_id=command_id,
                    user_id=user_id,
                    command=REACT_COMMAND,
                    message_id=message.id,
                    created_at=self.clock(),
                )
            )

        existing = next(
            (
                reaction
                for reaction in message.reactions
                if reaction.user_id == user_id and reaction.emoji == emoji
            ),
            None,
        )
        if existing is not None:
            message.reactions.remove(existing)
        else:
            message.reactions.append(
                MessageReaction(user_id=user_id, emoji=emoji, created_at=self.clock())
            )
        self.db.flush()

        snapshot = serialize_message(message)
        record_change(self.db, ChangeEntity.MESSAGE, ChangeOp.UPSERT, snapshot.model_dump(mode="json"))
        return snapshot

    def mark_read(self, message_id: int, user_id: str) -> None:
        """Record a read receipt. Missing or invisible messages are ignored."""

        try:
            message = self._load_for_update(message_id, user_id)
        except NotFound:
            logger.debug(
                "Read receipt for unknown message ignored",
                extra={"message_id": message_id, "user_id": user_id},
            )
            return
        if any(receipt.user_id == user_id for receipt in message.receipts):
            return
        if self.db.get(User, user_id) is None:
            logger.debug("Read receipt from unknown user ignored", extra={"user_id": user_id})
            return

        message.receipts.append(MessageReceipt(user_id=user_id, read_at=self.clock()))
        self.db.flush()
        record_change(
            self.db,
            ChangeEntity.MESSAGE,
            ChangeOp.UPSERT,
            serialize_message(message).model_dump(mode="json"),
        )

    def delete(self, message_id: int, requester_id: str) -> None:
        message = self._load_for_update(message_id, requester_id)
        if message.author_id is None or message.author_id != requester_id:
            raise Forbidden("Only the author can delete this message")

        last_snapshot = serialize_message(message)
        replies = list(
            self.db.execute(select(Message).where(Message.reply_to_id == message.id)).scalars()
        )
        for reply in replies:
            reply.reply_to = None
        self.db.delete(message)
        self.db.flush()

        record_change(
            self.db, ChangeEntity.MESSAGE, ChangeOp.DELETE, last_snapshot.model_dump(mode="json")
        )
        for reply in replies:
            record_change(
                self.db,
                ChangeEntity.MESSAGE,
                ChangeOp.UPSERT,
                serialize_message(reply).model_dump(mode="json"),
            )
        logger.info("Message deleted", extra={"message_id": message_id, "author_id": requester_id})

    def list(
        self,
        viewer_id: str,
        scope: MessageScope,
        since: str | None = None,
        limit: int | None = None,
    ) -> MessageHistoryPage:
        """Return messages of *scope* in ``(created_at, id)`` order after *since*."""

        page_size = limit or self.settings.chat_history_default_limit
        page_size = max(1, min(page_size, self.settings.chat_history_max_limit))

        stmt = select(Message).options(
            selectinload(Message.reactions),
            selectinload(Message.receipts),
            selectinload(Message.reply_to),
        )
        if scope.kind is MessageScopeKind.PUBLIC:
            stmt = stmt.where(Message.recipient_id.is_(None))
        else:
            if not scope.recipient_id or self.db.get(User, scope.recipient_id) is None:
                raise NotFound("Recipient not found")
            other = scope.recipient_id
            stmt = stmt.where(
                or_(
                    and_(Message.author_id == viewer_id, Message.recipient_id == other),
                    and_(Message.author_id == other, Message.recipient_id == viewer_id),
                )
            )

        if since:
            pivot_time, pivot_id = decode_cursor(since)
            stmt = stmt.where(
                or_(
                    Message.created_at > pivot_time,
                    and_(Message.created_at == pivot_time, Message.id > pivot_id),
                )
            )

        stmt = stmt.order_by(Message.created_at.asc(), Message.id.asc()).limit(page_size + 1)
        messages = list(self.db.execute(stmt).scalars())
        has_more = len(messages) > page_size
        messages = messages[:page_size]

        if messages:
            next_cursor = encode_cursor(messages[-1].created_at, messages[-1].id)
        else:
            next_cursor = since
        return MessageHistoryPage(
            items=[serialize_message(message) for message in messages],
            next_cursor=next_cursor,
            has_more=has_more,
        )

    def get(self, message_id: int, viewer_id: str) -> MessageRead:
        message = self.db.get(Message, message_id)
        if message is None or not message.visible_to(viewer_id):
            raise NotFound("Message not found")
        return serialize_message(message)

    def _load_for_update(self, message_id: int, viewer_id: str) -> Message:
        stmt = select(Message).where(Message.id == message_id).with_for_update()
        message = self.db.execute(stmt).scalar_one_or_none()
        if message is None or not message.visible_to(viewer_id):
            raise NotFound("Message not found")
        return message

    def _normalize_body(self, body: MessageBody) -> tuple[str | None, MediaPayload | None]:
        text = body.text.rstrip() if body.text is not None else None
        if text is not None and not text.strip():
            text = None
        if text is not None and len(text) > self.settings.chat_message_max_length:
            raise InvalidBody(
                f"Message text exceeds {self.settings.chat_message_max_length} characters"
            )

        media = body.media
        if media is not None:
            url = media.url.strip()
            if not url:
                raise InvalidBody("Media URL must not be empty")
            media = MediaPayload(kind=media.kind, url=url)

        if text is None and media is None:
            raise InvalidBody("Message must contain text or media")
        return text, media

    @staticmethod
    def _reply_allowed(target: Message, author_id: str, recipient_id: str | None) -> bool:
        # Everyone who can read the reply must be able to read its target.
        if target.recipient_id is None:
            return True
        if recipient_id is None:
            return False
        return {target.author_id, target.recipient_id} == {author_id, recipient_id}
