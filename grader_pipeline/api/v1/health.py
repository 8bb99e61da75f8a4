"""Health check endpoint."""

from fastapi import APIRouter
import platform
import sys

from grader_pipeline.api.v1 import grading as grading_api

router = APIRouter()


@router.get("/health")
async def health_check():
    """Service health, queue state and system info."""
    service = grading_api._service
    queues = None
    if service is not None:
        queues = {
            name: {
                "running": service.registry.get(name).is_running,
                "concurrency": service.registry.get(name).concurrency,
                "counts": counts,
            }
            for name, counts in service.registry.counts().items()
        }

    return {
        "status": "healthy" if service is not None else "starting",
        "queues": queues,
        "python_version": sys.version,
        "platform": platform.platform(),
    }
