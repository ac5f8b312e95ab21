from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.models.base import Base, UTCDateTime, new_public_id, utcnow
from app.models.enums import ChangeEntity, ChangeOp, MediaKind, MessageScopeKind


def _enum_values(enum_cls) -> list[str]:
    return [member.value for member in enum_cls]


class User(Base):
    """Chat participant, including presence and moderation state."""

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_public_id)
    username: Mapped[str] = mapped_column(String(20), nullable=False)
    username_key: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    hashed_password: Mapped[str] = mapped_column(String(255), nullable=False)
    is_online: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    last_seen: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)
    suspended_until: Mapped[datetime | None] = mapped_column(UTCDateTime())
    suspension_reporters: Mapped[list[dict[str, Any]]] = mapped_column(
        JSON, default=list, nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), default=utcnow, onupdate=utcnow, nullable=False
    )

    messages: Mapped[list["Message"]] = relationship(
        back_populates="author", foreign_keys="Message.author_id"
    )


class Message(Base):
    """Public or private chat message."""

    __tablename__ = "messages"
    __table_args__ = (
        Index("ix_messages_created_at", "created_at", "id"),
        Index("ix_messages_recipient_created_at", "recipient_id", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    author_id: Mapped[str | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    author_username: Mapped[str] = mapped_column(String(20), nullable=False)
    recipient_id: Mapped[str | None] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=True
    )
    text: Mapped[str | None] = mapped_column(Text)
    media_kind: Mapped[MediaKind | None] = mapped_column(
        SAEnum(MediaKind, name="media_kind", values_callable=_enum_values)
    )
    media_url: Mapped[str | None] = mapped_column(String(1024))
    reply_to_id: Mapped[int | None] = mapped_column(
        ForeignKey("messages.id", ondelete="SET NULL"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)
    edited_at: Mapped[datetime | None] = mapped_column(UTCDateTime())

    author: Mapped[User | None] = relationship(back_populates="messages", foreign_keys=[author_id])
    reply_to: Mapped["Message | None"] = relationship(remote_side="Message.id")
    reactions: Mapped[list["MessageReaction"]] = relationship(
        back_populates="message", cascade="all, delete-orphan"
    )
    receipts: Mapped[list["MessageReceipt"]] = relationship(
        back_populates="message", cascade="all, delete-orphan"
    )

    @property
    def scope(self) -> MessageScopeKind:
        return MessageScopeKind.PRIVATE if self.recipient_id else MessageScopeKind.PUBLIC

    def visible_to(self, user_id: str | None) -> bool:
        if self.recipient_id is None:
            return True
        return user_id is not None and user_id in (self.author_id, self.recipient_id)


class MessageReaction(Base):
    """One user's emoji vote on a message."""

    __tablename__ = "message_reactions"
    __table_args__ = (
        UniqueConstraint("message_id", "user_id", "emoji", name="uq_message_reaction"),
        Index("ix_reactions_message", "message_id"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    message_id: Mapped[int] = mapped_column(
        ForeignKey("messages.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    emoji: Mapped[str] = mapped_column(String(32), nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)

    message: Mapped[Message] = relationship(back_populates="reactions")


class MessageReceipt(Base):
    """Marks that a user has observed a message."""

    __tablename__ = "message_receipts"
    __table_args__ = (
        UniqueConstraint("message_id", "user_id", name="uq_message_receipt"),
        Index("ix_receipts_message", "message_id"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    message_id: Mapped[int] = mapped_column(
        ForeignKey("messages.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    read_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)

    message: Mapped[Message] = relationship(back_populates="receipts")


class UserReport(Base):
    """Audit trail of accepted reports."""

    __tablename__ = "user_reports"
    __table_args__ = (Index("ix_user_reports_target", "target_id", "created_at"),)

    id: Mapped[int] = mapped_column(primary_key=True)
    reporter_id: Mapped[str] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    target_id: Mapped[str] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    message_id: Mapped[int | None] = mapped_column(
        ForeignKey("messages.id", ondelete="SET NULL"), nullable=True
    )
    suspended_until: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)


class ChangeSequence(Base):
    """Last allocated sequence number of an entity stream."""

    __tablename__ = "change_sequences"

    entity: Mapped[ChangeEntity] = mapped_column(
        SAEnum(ChangeEntity, name="change_entity", values_callable=_enum_values),
        primary_key=True,
    )
    last_sequence: Mapped[int] = mapped_column(Integer, default=0, nullable=False)


class ChangeEventRecord(Base):
    """Persisted change event, the durable form of the per-entity log."""

    __tablename__ = "change_events"
    __table_args__ = (
        UniqueConstraint("entity", "sequence", name="uq_change_event_sequence"),
        Index("ix_change_events_entity_id", "entity", "entity_id"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    entity: Mapped[ChangeEntity] = mapped_column(
        SAEnum(ChangeEntity, name="change_entity", values_callable=_enum_values),
        nullable=False,
    )
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    op: Mapped[ChangeOp] = mapped_column(
        SAEnum(ChangeOp, name="change_op", values_callable=_enum_values), nullable=False
    )
    entity_id: Mapped[str] = mapped_column(String(64), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)


class CommandReceipt(Base):
    """Client command ids already applied, used for exactly-once reactions."""

    __tablename__ = "command_receipts"

    user_id: Mapped[str] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    command_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    command: Mapped[str] = mapped_column(String(32), nullable=False)
    message_id: Mapped[int | None] = mapped_column(Integer)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)
