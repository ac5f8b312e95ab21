"""Moderation lookups."""

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.api.deps import get_current_user
from app.database import get_db
from app.models import User
from app.schemas import SuspensionStatus
from app.services.moderation import ModerationService

router = APIRouter(prefix="/moderation", tags=["moderation"])


@router.get("/users/{user_id}", response_model=SuspensionStatus)
def read_suspension(
    user_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> SuspensionStatus:
    return ModerationService(db).status(user_id)
