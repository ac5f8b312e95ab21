"""Catch-up access to the persisted change log."""

from fastapi import APIRouter, Depends, Query

from app.api.deps import get_chat_service, get_current_user
from app.models import ChangeEntity, User
from app.schemas import ChangeHistoryPage
from app.services.chat import ChatService
from app.services.changes import filter_visible_events

router = APIRouter(prefix="/changes", tags=["changes"])


@router.get("/{entity}", response_model=ChangeHistoryPage)
async def read_changes(
    entity: ChangeEntity,
    from_sequence: int = Query(default=1, ge=1),
    limit: int | None = Query(default=None, ge=1),
    current_user: User = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service),
) -> ChangeHistoryPage:
    """Return events with ``sequence >= from_sequence`` the caller may see."""

    page = await service.change_history(entity, from_sequence, limit)
    page.items = filter_visible_events(page.items, current_user.id)
    return page
