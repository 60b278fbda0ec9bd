from fastapi import APIRouter
from fastapi.responses import PlainTextResponse

from agora.api.assets import router as assets_router
from agora.api.auth import router as auth_router
from agora.api.health import router as health_router
from agora.api.users import router as users_router

api_router = APIRouter()


@api_router.get("", response_class=PlainTextResponse, include_in_schema=False)
async def api_root() -> str:
    return "Agora API"


# Include sub-routers
api_router.include_router(health_router, tags=["health"])
api_router.include_router(auth_router)
api_router.include_router(users_router)
api_router.include_router(assets_router)
