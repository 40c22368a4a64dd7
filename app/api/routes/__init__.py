"""
API Routes
"""
from fastapi import APIRouter

from app.api.routes.admin import router as admin_router
from app.api.webhooks.asaas import router as asaas_router
from app.api.webhooks.astria import router as astria_router
from app.api.webhooks.replicate import router as replicate_router
from app.api.webhooks.video import router as video_router

router = APIRouter()

router.include_router(asaas_router, prefix="/webhooks", tags=["Webhooks"])
router.include_router(replicate_router, prefix="/webhooks", tags=["Webhooks"])
router.include_router(astria_router, prefix="/webhooks", tags=["Webhooks"])
router.include_router(video_router, prefix="/webhooks", tags=["Webhooks"])
router.include_router(admin_router, prefix="/admin", tags=["Admin"])
