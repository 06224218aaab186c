from fastapi import APIRouter

from app.api.v1.routers import entitlements, health, loan_workflow

api_router = APIRouter()
api_router.include_router(health.router)
api_router.include_router(loan_workflow.router)
api_router.include_router(entitlements.router)

__all__ = ["api_router"]
