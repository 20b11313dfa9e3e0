from fastapi import APIRouter
from app.api.v1 import dashboard, analytics, reports, exports, notifications, realtime, metrics

api_router = APIRouter()

# Include all endpoint routers
api_router.include_router(dashboard.router, prefix="/dashboard", tags=["dashboard"])
api_router.include_router(analytics.router, prefix="/analytics", tags=["analytics"])
api_router.include_router(reports.router, prefix="/reports", tags=["reports"])
api_router.include_router(exports.router, prefix="/exports", tags=["exports"])
api_router.include_router(notifications.router, prefix="/notifications", tags=["notifications"])
api_router.include_router(realtime.router, prefix="/realtime", tags=["realtime"])
api_router.include_router(metrics.router, tags=["monitoring"])
