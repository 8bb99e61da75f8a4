"""Grading pipeline service - FastAPI application hosting the queue workers."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from grader_pipeline.config import settings
from grader_pipeline.api.v1.router import v1_router
from grader_pipeline.api.v1.health import router as health_root_router
from grader_pipeline.api.v1 import grading as grading_api
from grader_pipeline.db.supabase_client import reset_supabase
from grader_pipeline.pipeline.service import build_service

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown logic."""
    logger.info("Starting grading pipeline on port %d", settings.api_port)
    logger.info("Queue backend: %s", settings.queue_backend)
    logger.info("Work root: %s", settings.work_root)
    logger.info("Default concurrency: %d", settings.concurrent_jobs)

    service = build_service(settings)
    await service.start()
    grading_api.set_service(service)
    logger.info("Workers started for queues: %s", ", ".join(service.registry.list_queues()))

    yield

    logger.info("Shutting down grading pipeline")
    grading_api.set_service(None)
    await service.stop()
    reset_supabase()


app = FastAPI(
    title="Grading Pipeline",
    description="Queue-driven grading of student repository submissions",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(health_root_router, tags=["health"])  # GET /health at root
app.include_router(v1_router)  # All /api/v1/* endpoints
