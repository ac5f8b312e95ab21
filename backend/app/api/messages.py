"""HTTP endpoints for chat messages."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy.orm import Session

from app.api.deps import get_chat_service, get_current_user
from app.config import get_settings
from app.database import get_db
from app.models import User
from app.schemas import MessageCreate, MessageHistoryPage, MessageRead, ReactionRequest, UserRead
from app.services.chat import ChatService
from app.services.messages import MessageBody, MessageScope, MessageStore

router = APIRouter(prefix="/messages", tags=["messages"])

settings = get_settings()


@router.get("", response_model=MessageHistoryPage)
def list_messages(
    recipient_id: str | None = Query(default=None, description="Other participant of a private conversation"),
    since: str | None = Query(default=None, description="Cursor returned as next_cursor by a previous page"),
    limit: int | None = Query(default=None, ge=1, le=settings.chat_history_max_limit),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> MessageHistoryPage:
    """Return messages in creation order, public unless ``recipient_id`` is given."""

    store = MessageStore(db, settings=settings)
    return store.list(current_user.id, MessageScope.for_recipient(recipient_id), since=since, limit=limit)


@router.get("/{message_id}", response_model=MessageRead)
def read_message(
    message_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> MessageRead:
    return MessageStore(db, settings=settings).get(message_id, current_user.id)


@router.post("", response_model=MessageRead, status_code=status.HTTP_201_CREATED)
async def send_message(
    payload: MessageCreate,
    current_user: User = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service),
) -> MessageRead:
    return await service.send_message(
        current_user.id,
        MessageScope.for_recipient(payload.recipient_id),
        MessageBody(text=payload.text, media=payload.media),
        reply_to_id=payload.reply_to_id,
    )


@router.post("/{message_id}/reactions", response_model=MessageRead)
async def toggle_reaction(
    message_id: int,
    payload: ReactionRequest,
    current_user: User = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service),
) -> MessageRead:
    """Toggle the caller's reaction; a repeated ``command_id`` is applied once."""

    return await service.react(message_id, current_user.id, payload.emoji, payload.command_id)


@router.post("/{message_id}/read", status_code=status.HTTP_204_NO_CONTENT)
async def mark_message_read(
    message_id: int,
    current_user: User = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service),
) -> Response:
    await service.mark_read(message_id, current_user.id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.delete("/{message_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_message(
    message_id: int,
    current_user: User = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service),
) -> Response:
    await service.delete_message(message_id, current_user.id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{message_id}/report", response_model=UserRead)
async def report_message(
    message_id: int,
    current_user: User = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service),
) -> UserRead:
    """Report the author of a message, suspending them for the moderation window."""

    return await service.report(current_user.id, message_id)
