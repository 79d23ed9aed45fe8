from fastapi import APIRouter
from app.modules.media.router import router as media_router

api_router = APIRouter()
api_router.include_router(media_router, tags=["media"])
# media_router carries /upload, /submissions/{id}/..., /profile/image and /account

@api_router.get("/health", tags=["health"])
async def health():
    return {"status": "ok"}
