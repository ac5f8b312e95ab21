"""Authentication API endpoints."""

from datetime import timedelta

from fastapi import APIRouter, Depends, HTTPException, Response, status

from app.api.deps import get_chat_service, get_current_user
from app.config import get_settings
from app.core.security import create_access_token
from app.models import User
from app.schemas import LoginRequest, Token, UserCreate, UserRead
from app.services.chat import ChatService

router = APIRouter()
settings = get_settings()


@router.post("/register", response_model=UserRead, status_code=status.HTTP_201_CREATED)
async def register_user(
    user_in: UserCreate, service: ChatService = Depends(get_chat_service)
) -> UserRead:
    """Register a new user in the system."""

    return await service.register(user_in.username, user_in.password)


@router.post("/login", response_model=Token)
async def login_user(
    credentials: LoginRequest, service: ChatService = Depends(get_chat_service)
) -> Token:
    """Authenticate a user, mark them online and return a JWT access token."""

    user = await service.login(credentials.username, credentials.password)
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Incorrect username or password",
        )

    access_token_expires = timedelta(minutes=settings.access_token_expire_minutes)
    access_token = create_access_token({"sub": user.id}, expires_delta=access_token_expires)
    return Token(
        access_token=access_token,
        token_type="bearer",
        expires_in=int(access_token_expires.total_seconds()),
    )


@router.post("/logout", status_code=status.HTTP_204_NO_CONTENT)
async def logout_user(
    current_user: User = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service),
) -> Response:
    """Mark the current user offline."""

    await service.set_offline(current_user.id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
