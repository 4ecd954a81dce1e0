"""
Control endpoints for explicit operator actions.

HTTP adapter over the running PipelineService:
- POST /convert            manual convert request (bypasses stability)
- POST /jobs/{id}/cancel   cancel a queued or running job
- GET  /jobs               all known jobs, newest last
- GET  /jobs/{id}          one job with its latest progress
- GET  /status             service summary

No CRUD on slide files. No settings mutation.
"""

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, ConfigDict

from ..jobs.errors import JobNotFoundError, QueueClosedError
from ..service import PipelineService
from ..watchfolders.scanner import FileScanner

logger = logging.getLogger(__name__)

router = APIRouter(tags=["control"])


class ConvertRequest(BaseModel):
    """Request body for a manual conversion."""

    model_config = ConfigDict(extra="forbid")

    path: str


class ConvertResponse(BaseModel):
    """Response for a manual conversion."""

    model_config = ConfigDict(extra="forbid")

    job_id: str
    created: bool
    message: str


class OperationResponse(BaseModel):
    """Generic operation response."""

    model_config = ConfigDict(extra="forbid")

    success: bool
    message: str


def _service(request: Request) -> PipelineService:
    return request.app.state.pipeline


def _job_payload(service: PipelineService, job_id: str) -> Optional[Dict[str, Any]]:
    try:
        payload = service.job_queue.get(job_id).to_summary()
    except JobNotFoundError:
        # Evicted from queue history; the event projection may still know it
        view = service.state_store.get(job_id)
        return view.to_dict() if view else None
    payload["progress"] = service.state_store.latest_progress(job_id)
    return payload


# ============================================================================
# ACTIONS
# ============================================================================

@router.post("/convert", response_model=ConvertResponse)
def convert(body: ConvertRequest, request: Request):
    """
    Queue a conversion for one file now.

    Idempotent: a file that already has an active job returns that job
    with created=false.
    """
    service = _service(request)
    source = Path(body.path)

    if not source.is_absolute():
        raise HTTPException(status_code=400, detail=f"Path must be absolute: {body.path}")
    if not source.is_file():
        raise HTTPException(status_code=404, detail=f"File not found: {body.path}")
    if source.suffix.lower() not in FileScanner.SLIDE_EXTENSIONS:
        raise HTTPException(status_code=400, detail=f"Unsupported file type: {source.suffix}")

    try:
        result = service.convert(str(source))
    except QueueClosedError as e:
        raise HTTPException(status_code=503, detail=str(e))

    message = "Conversion queued" if result.created else "Conversion already in progress"
    logger.info(f"[API] Convert {source.name}: {message} ({result.job_id})")
    return ConvertResponse(job_id=result.job_id, created=result.created, message=message)


@router.post("/jobs/{job_id}/cancel", response_model=OperationResponse)
def cancel_job(job_id: str, request: Request):
    """Request cancellation. Cancelling a finished job is a 409."""
    service = _service(request)
    try:
        job = service.job_queue.get(job_id)
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail=f"Job not found: {job_id}")

    if not service.cancel(job_id):
        raise HTTPException(
            status_code=409,
            detail=f"Job {job_id} is already {job.state.value}",
        )
    return OperationResponse(success=True, message=f"Cancellation requested for job {job_id}")


# ============================================================================
# STATUS
# ============================================================================

@router.get("/jobs")
def list_jobs(request: Request) -> List[Dict[str, Any]]:
    service = _service(request)
    jobs = sorted(service.job_queue.list_jobs(), key=lambda j: j.created_at)
    result = []
    for job in jobs:
        payload = job.to_summary()
        payload["progress"] = service.state_store.latest_progress(job.id)
        result.append(payload)
    return result


@router.get("/jobs/{job_id}")
def get_job(job_id: str, request: Request) -> Dict[str, Any]:
    payload = _job_payload(_service(request), job_id)
    if payload is None:
        raise HTTPException(status_code=404, detail=f"Job not found: {job_id}")
    return payload


@router.get("/status")
def get_status(request: Request) -> Dict[str, Any]:
    return _service(request).status()
