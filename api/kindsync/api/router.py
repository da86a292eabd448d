from fastapi import APIRouter

from kindsync.api.routes import health, imports, pending, webhooks

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(imports.router, prefix="/imports", tags=["imports"])
api_router.include_router(webhooks.router, prefix="/webhooks", tags=["webhooks"])
api_router.include_router(pending.router, prefix="/pending", tags=["pending"])
