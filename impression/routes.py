from __future__ import annotations

from pathlib import Path
from typing import Optional

from fastapi import APIRouter, File, Form, HTTPException, Request, UploadFile, WebSocket
from fastapi.responses import FileResponse, PlainTextResponse

from .jobs import JobManager
from .models import ErrorBody, ImpressionAccepted, JobStatus
from .pipeline.presets import allowed_presets, resolve_preset
from .pipeline.uploads import (
    RESERVED_EXTENSIONS,
    UploadTooLarge,
    check_size,
    guess_extension,
    media_type_for,
    store_upload,
)
from .websocket import stream_job_events

router = APIRouter()

_ERRORS_404 = {404: {"model": ErrorBody}}
_INTAKE_ERRORS = {400: {"model": ErrorBody}, 413: {"model": ErrorBody}, 500: {"model": ErrorBody}}


def _manager(request: Request) -> JobManager:
    return request.app.state.jobs


@router.get("/", response_class=PlainTextResponse)
async def index() -> str:
    return "OK"


@router.get("/health")
async def health() -> dict:
    return {"ok": True}


@router.post(
    "/v1/impression",
    response_model=ImpressionAccepted,
    response_model_by_alias=True,
    responses=_INTAKE_ERRORS,
)
async def create_impression(
    request: Request,
    image: Optional[UploadFile] = File(None),
    preset: Optional[str] = Form(None),
) -> ImpressionAccepted:
    manager = _manager(request)
    settings = manager.settings
    if image is None:
        raise HTTPException(status_code=400, detail="image file is required")

    resolved = resolve_preset(preset)
    if resolved is None:
        raise HTTPException(
            status_code=400,
            detail={"error": f"unknown preset {preset!r}", "allowed": allowed_presets()},
        )
    if manager.credential_missing(resolved) and settings.token_check == "request":
        raise HTTPException(status_code=500, detail="REPLICATE_API_TOKEN is not configured")

    # read one byte past the cap so oversize uploads are detected without buffering them whole
    data = await image.read(settings.max_upload_bytes + 1)
    if not data:
        raise HTTPException(status_code=400, detail="image file is required")
    try:
        check_size(data, settings.max_upload_bytes)
    except UploadTooLarge as exc:
        raise HTTPException(status_code=413, detail=str(exc))

    job = manager.create(resolved)
    extension = guess_extension(image.content_type, image.filename, data)
    upload_path = store_upload(settings.uploads_dir, data, extension, stem=job.job_id)
    manager.submit(job, upload_path, resolved)
    return ImpressionAccepted(job_id=job.job_id, status=job.status, preset=resolved.name)


@router.get("/v1/jobs/{job_id}", response_model=JobStatus, response_model_by_alias=True, responses=_ERRORS_404)
async def get_job(job_id: str, request: Request) -> JobStatus:
    job = _manager(request).store.get(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="job not found")
    return JobStatus.from_job(job)


@router.get("/v1/result/{filename}", responses=_ERRORS_404)
async def get_result(filename: str, request: Request) -> FileResponse:
    results_dir: Path = _manager(request).settings.results_dir.resolve()
    path = (results_dir / filename).resolve()
    # in-flight downloads and bookkeeping files are never served
    if path.parent != results_dir or path.suffix.lower() in RESERVED_EXTENSIONS or not path.is_file():
        raise HTTPException(status_code=404, detail="result not found")
    return FileResponse(path, filename=path.name, media_type=media_type_for(path))


@router.websocket("/ws/jobs/{job_id}")
async def job_ws(websocket: WebSocket, job_id: str) -> None:
    manager: JobManager = websocket.app.state.jobs
    await stream_job_events(websocket, manager.events, manager.store, job_id)
