from fastapi import APIRouter

from app.api.auth import router as auth_router
from app.api.changes import router as changes_router
from app.api.messages import router as messages_router
from app.api.moderation import router as moderation_router
from app.api.presence import router as presence_router
from app.api.users import router as users_router

router = APIRouter()

router.include_router(auth_router, prefix="/auth", tags=["auth"])
router.include_router(users_router)
router.include_router(presence_router)
router.include_router(messages_router)
router.include_router(moderation_router)
router.include_router(changes_router)


@router.get("/", tags=["root"])
def read_root() -> dict[str, str]:
    return {"message": "Welcome to the SafeYou Chat API"}
