"""Aggregate all v1 API routers."""

from fastapi import APIRouter
from grader_pipeline.api.v1.health import router as health_router
from grader_pipeline.api.v1.grading import router as grading_router

v1_router = APIRouter(prefix="/api/v1")
v1_router.include_router(health_router, tags=["health"])
v1_router.include_router(grading_router, tags=["grading"])
