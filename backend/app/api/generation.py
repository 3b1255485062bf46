"""
Generation jobs API.

POST /api/generation returns the job id at once; progress and the terminal
result are pushed over WS /ws/events. GET /api/generation/{job_id} is the
polling fallback.
"""
import logging
from datetime import datetime

from fastapi import APIRouter, Request
from pydantic import BaseModel

from api.envelope import Envelope, ErrorBody, error_body
from core.errors import AlreadyRunningError
from services.generation import (
    CancelOutcome,
    ChatMessage,
    GenerationCoordinator,
    GenerationJob,
    GenerationResult,
    JobStatus,
    ProgressEvent,
)

router = APIRouter(prefix="/api/generation", tags=["generation"])
logger = logging.getLogger("loadout.api.generation")


class StartRequest(BaseModel):
    idea: str
    chat_history: list[ChatMessage] = []


class StartResponse(Envelope):
    job_id: str | None = None
    running_job_id: str | None = None


class CancelResponse(Envelope):
    outcome: CancelOutcome


class JobView(BaseModel):
    id: str
    idea: str
    status: JobStatus
    progress: list[ProgressEvent] = []
    result: GenerationResult | None = None
    error: ErrorBody | None = None
    created_at: datetime
    finished_at: datetime | None = None


class JobResponse(Envelope):
    job: JobView | None = None


def _coordinator(request: Request) -> GenerationCoordinator:
    return request.app.state.coordinator


def job_view(job: GenerationJob) -> JobView:
    return JobView(
        id=job.id,
        idea=job.idea,
        status=job.status,
        progress=list(job.progress_log),
        result=job.result,
        error=error_body(job.error) if job.error else None,
        created_at=job.created_at,
        finished_at=job.finished_at,
    )


@router.post("", response_model=StartResponse)
async def start_generation(req: StartRequest, request: Request):
    try:
        job_id = _coordinator(request).start(req.idea, req.chat_history)
    except AlreadyRunningError as e:
        return StartResponse(success=False, running_job_id=e.job_id, error=error_body(e))
    except ValueError as e:
        return StartResponse(success=False, error=error_body(e))
    return StartResponse(job_id=job_id)


@router.post("/{job_id}/cancel", response_model=CancelResponse)
async def cancel_generation(job_id: str, request: Request):
    outcome = _coordinator(request).cancel(job_id)
    if outcome == CancelOutcome.SUCCESS:
        return CancelResponse(outcome=outcome)
    message = "Unknown job" if outcome == CancelOutcome.NOT_FOUND else "Job already finished"
    return CancelResponse(
        success=False,
        outcome=outcome,
        error=ErrorBody(kind=outcome.value, message=message),
    )


@router.get("/{job_id}", response_model=JobResponse)
async def get_generation(job_id: str, request: Request):
    job = _coordinator(request).get(job_id)
    if job is None:
        return JobResponse(
            success=False, error=ErrorBody(kind="not_found", message=f"Unknown job {job_id}"),
        )
    return JobResponse(job=job_view(job))
