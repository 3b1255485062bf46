"""Preview server API: serve a file set (or a finished job's files) locally."""
import logging

from fastapi import APIRouter, Request
from pydantic import BaseModel

from api.envelope import Envelope, error_body
from core.errors import PreviewError
from services.generation import GeneratedFile, JobStatus
from services.preview_server import PreviewFile, PreviewServerManager

router = APIRouter(prefix="/api/preview", tags=["preview"])
logger = logging.getLogger("loadout.api.preview")


class PreviewStartRequest(BaseModel):
    files: list[GeneratedFile] | None = None
    job_id: str | None = None


class PreviewStartResponse(Envelope):
    url: str | None = None
    port: int | None = None


class PreviewUrlResponse(Envelope):
    url: str | None = None
    running: bool = False


def _preview(request: Request) -> PreviewServerManager:
    return request.app.state.preview


def _files_for(req: PreviewStartRequest, request: Request) -> list[GeneratedFile]:
    if req.files:
        return req.files
    if not req.job_id:
        raise ValueError("Either files or job_id is required")

    job = request.app.state.coordinator.get(req.job_id)
    if job is None:
        raise ValueError(f"Unknown job {req.job_id}")
    if job.status != JobStatus.SUCCEEDED or job.result is None:
        raise ValueError(f"Job {req.job_id} has no generated files ({job.status.value})")
    return job.result.files


@router.post("/start", response_model=PreviewStartResponse)
async def start_preview(req: PreviewStartRequest, request: Request):
    try:
        files = _files_for(req, request)
        started = await _preview(request).start(
            [PreviewFile(filename=f.filename, content=f.content, type=f.type) for f in files]
        )
    except (PreviewError, ValueError) as e:
        logger.warning("Preview start failed: %s", e)
        return PreviewStartResponse(success=False, error=error_body(e))
    return PreviewStartResponse(url=started["url"], port=started["port"])


@router.post("/stop", response_model=Envelope)
async def stop_preview(request: Request):
    try:
        await _preview(request).stop()
    except Exception as e:
        logger.error("Preview stop failed: %s", e, exc_info=True)
        return Envelope(success=False, error=error_body(e))
    return Envelope()


@router.get("/url", response_model=PreviewUrlResponse)
async def preview_url(request: Request):
    url = _preview(request).get_url()
    return PreviewUrlResponse(url=url, running=url is not None)
