from fastapi import APIRouter

from app.api.comments import router as comments_router
from app.api.conversations import router as conversations_router
from app.api.health import router as health_router
from app.api.posts import router as posts_router
from app.api.presence import router as presence_router
from app.api.profiles import router as profiles_router
from app.api.storage import router as storage_router
from app.api.uploads import router as uploads_router

router = APIRouter()

router.include_router(uploads_router)
router.include_router(storage_router)
router.include_router(profiles_router)
router.include_router(posts_router)
router.include_router(comments_router)
router.include_router(conversations_router)
router.include_router(presence_router)
router.include_router(health_router)


@router.get("/", tags=["root"])
def read_root() -> dict[str, str]:
    return {"message": "Welcome to the ConnectHub API"}
