"""Grading API: submit grading jobs, poll status, request cancellation."""

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel
from typing import List

from grader_pipeline.jobs.models import JobStatus
from grader_pipeline.jobs.registry import QueueNames
from grader_pipeline.pipeline.intake import submit_grading
from grader_pipeline.pipeline.stages import GradingJobData

router = APIRouter()

# Set by main.py during lifespan
_service = None


def set_service(service):
    global _service
    _service = service


def _require_service():
    if _service is None:
        raise HTTPException(status_code=503, detail="Grading pipeline not initialized")
    return _service


class GradingSubmitRequest(BaseModel):
    submission_id: str
    assignment_id: str
    student_id: str
    github_repo_url: str
    rubric_id: str
    test_suite_ids: List[str] = []
    attempt_number: int = 1


class GradingSubmitResponse(BaseModel):
    job_id: str
    status: str
    message: str


@router.post("/grading", response_model=GradingSubmitResponse, status_code=202)
async def submit_grading_job(request: GradingSubmitRequest):
    """Accept a submission attempt for grading."""
    service = _require_service()
    handle = await submit_grading(service.registry, GradingJobData(**request.model_dump()))
    return GradingSubmitResponse(
        job_id=handle.id,
        status=JobStatus.WAITING.value,
        message="Grading job accepted. Poll GET /api/v1/grading/{id} for status.",
    )


@router.get("/grading/{job_id}")
async def get_grading_status(job_id: str):
    """Current state, progress and outcome of a grading job."""
    service = _require_service()
    job = await service.registry.get(QueueNames.GRADING).get_status(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Grading job not found")

    response = {
        "job_id": job.id,
        "submission_id": job.data.get("submission_id"),
        "status": job.status.value,
        "progress": job.progress,
        "attempts_made": job.attempts_made,
        "created_at": job.created_at.isoformat(),
        "started_at": job.started_at.isoformat() if job.started_at else None,
        "finished_at": job.finished_at.isoformat() if job.finished_at else None,
    }

    run = service.orchestrator.get_run(job_id)
    if run is not None:
        response["state"] = run.state.value
        response["failed_stage"] = run.failed_stage

    if job.status == JobStatus.COMPLETED:
        response["result"] = job.result
    if job.status == JobStatus.FAILED:
        response["error"] = job.error

    return response


@router.post("/grading/{job_id}/cancel")
async def cancel_grading_job(job_id: str):
    """Stop a grading job before its next stage starts."""
    service = _require_service()
    job = await service.registry.get(QueueNames.GRADING).get_status(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Grading job not found")
    if job.is_terminal or not service.orchestrator.cancel(job_id):
        raise HTTPException(status_code=409, detail=f"Grading job already {job.status.value}")
    return {"job_id": job_id, "cancel_requested": True}


@router.get("/queues")
async def get_queue_counts():
    """Job counts per queue and status."""
    service = _require_service()
    return service.registry.counts()
