"""
API router - aggregates all route modules.
"""
from fastapi import APIRouter
from src.api.notifications import router as notifications_router
from src.api.campaigns import router as campaigns_router
from src.api.triggers import router as triggers_router
from src.api.cron import router as cron_router
from src.api.health import router as health_router

api_router = APIRouter()
api_router.include_router(notifications_router)
api_router.include_router(campaigns_router)
api_router.include_router(triggers_router)
api_router.include_router(cron_router)
api_router.include_router(health_router)
