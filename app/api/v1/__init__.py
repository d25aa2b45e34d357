from fastapi import APIRouter

from app.api.v1.routers import health, loans, pipeline_runs

api_router = APIRouter()
api_router.include_router(health.router)
api_router.include_router(loans.router)
api_router.include_router(pipeline_runs.router)

__all__ = ["api_router"]
