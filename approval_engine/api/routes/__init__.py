"""API Routes module"""
from fastapi import APIRouter

from .templates import router as templates_router
from .instances import router as instances_router
from .tasks import router as tasks_router
from .ops import router as ops_router

# Main API router
api_router = APIRouter()

api_router.include_router(templates_router, prefix="/templates", tags=["Templates"])
api_router.include_router(instances_router, prefix="/instances", tags=["Instances"])
api_router.include_router(tasks_router, prefix="/tasks", tags=["Tasks"])
api_router.include_router(ops_router, tags=["Ops"])

__all__ = ["api_router"]
