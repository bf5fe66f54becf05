from fastapi import APIRouter, Depends

from app.api.admin import router as admin_router
from app.api.auth import router as auth_router
from app.api.health import router as health_router
from app.api.legacy_auth import router as legacy_auth_router
from app.api.users import router as users_router
from app.utils.auth import resolve_principal

# Identity is resolved on every API request; routes read the cached result
api_router = APIRouter(dependencies=[Depends(resolve_principal)])

# Include sub-routers
api_router.include_router(health_router, tags=["health"])
api_router.include_router(auth_router)
api_router.include_router(legacy_auth_router)
api_router.include_router(users_router)
api_router.include_router(admin_router)
