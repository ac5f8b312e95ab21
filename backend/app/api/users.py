"""User directory endpoints."""

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.api.deps import get_current_user
from app.config import get_settings
from app.database import get_db
from app.models import User
from app.models.base import utcnow
from app.schemas import UserPresenceRead, UserRead
from app.services.serializers import serialize_user
from app.services.users import UserDirectory

router = APIRouter(prefix="/users", tags=["users"])

settings = get_settings()


@router.get("", response_model=list[UserPresenceRead])
def list_users(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> list[UserPresenceRead]:
    """Return every user with normalized suspension and a staleness flag."""

    return UserDirectory(db).list(settings.presence_grace_seconds)


@router.get("/me", response_model=UserRead)
def read_current_user(current_user: User = Depends(get_current_user)) -> UserRead:
    return serialize_user(current_user, utcnow())
