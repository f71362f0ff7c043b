"""API routes for the FastAPI application."""

from fastapi import APIRouter

from billsync.api.v1.endpoints import billing, health

api_router = APIRouter()
api_router.include_router(health.router, prefix="/health", tags=["health"])
api_router.include_router(billing.router, prefix="/billing", tags=["billing"])
