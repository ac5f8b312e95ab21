"""Presence commands issued by connected clients."""

from fastapi import APIRouter, Depends

from app.api.deps import get_chat_service, get_current_user
from app.models import User
from app.schemas import UserRead
from app.services.chat import ChatService

router = APIRouter(prefix="/presence", tags=["presence"])


@router.post("/online", response_model=UserRead)
async def go_online(
    current_user: User = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service),
) -> UserRead:
    return await service.set_online(current_user.id)


@router.post("/offline", response_model=UserRead)
async def go_offline(
    current_user: User = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service),
) -> UserRead:
    return await service.set_offline(current_user.id)


@router.post("/heartbeat", response_model=UserRead)
async def heartbeat(
    current_user: User = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service),
) -> UserRead:
    """Refresh ``last_seen`` without changing the online flag."""

    return await service.heartbeat(current_user.id)
