from fastapi import APIRouter

from govmon.api.v1.health import router as health_router
from govmon.api.v1.monitoring import router as monitoring_router

v1_router = APIRouter()

v1_router.include_router(health_router, tags=["Health"])
v1_router.include_router(monitoring_router, tags=["Monitoring"])
