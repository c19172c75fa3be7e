from fastapi import APIRouter

from app.interfaces.api.admin import router as admin_router
from app.interfaces.api.billing import router as billing_router
from app.interfaces.api.health import router as health_router
from app.interfaces.api.webhooks import router as webhooks_router

api_router = APIRouter()
api_router.include_router(health_router, tags=["health"])
api_router.include_router(webhooks_router)
api_router.include_router(admin_router)
api_router.include_router(billing_router)
