"""API routes."""

from fastapi import APIRouter

from dealcast.routes import admin

api_router = APIRouter()

# Admin endpoints (quotas, copy cache, manual poll)
api_router.include_router(admin.router, prefix="/v1/admin", tags=["admin"])
