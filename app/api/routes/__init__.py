"""
API Routes
"""
from fastapi import APIRouter

from app.api.routes.admin import router as admin_router
from app.api.webhooks.social import router as webhooks_router

# Mounted under /api
router = APIRouter()
router.include_router(admin_router, prefix="/admin", tags=["Admin"])

# Mounted at the root: platforms are registered against /webhooks/{platform}
webhook_router = APIRouter()
webhook_router.include_router(webhooks_router, prefix="/webhooks", tags=["Webhooks"])
