"""
API v1 router initialization and setup.
"""
from fastapi import APIRouter
from .endpoints import billing, cron, queue, metrics

api_router = APIRouter()

api_router.include_router(
    cron.router,
    prefix="/cron",
    tags=["cron"]
)

api_router.include_router(
    queue.router,
    prefix="/queue",
    tags=["queue"]
)

api_router.include_router(
    metrics.router,
    prefix="/metrics",
    tags=["metrics"]
)

api_router.include_router(
    billing.router,
    prefix="/billing",
    tags=["billing"]
)
