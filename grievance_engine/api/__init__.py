"""API routes for the grievance engine."""

from fastapi import APIRouter

from .events import router as events_router
from .grievances import router as grievances_router
from .reports import router as reports_router
from .templates import router as templates_router

# Main API router
api_router = APIRouter()

# Grievance lifecycle is the primary surface
api_router.include_router(grievances_router)
api_router.include_router(templates_router)
api_router.include_router(reports_router)
api_router.include_router(events_router)

__all__ = ["api_router"]
