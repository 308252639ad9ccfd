"""
API v1 routes.
"""

from fastapi import APIRouter

from taskflow.api.v1 import tasks

router = APIRouter()

router.include_router(tasks.router, prefix="/tasks", tags=["Tasks"])
