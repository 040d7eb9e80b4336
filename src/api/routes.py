"""FastAPI routes for the Prism job API."""

import logging
from typing import AsyncIterator, List, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ValidationError

from src.api.deps import get_registry_dep
from src.models.job import (
    GenerationPayload,
    IngestionPayload,
    JobKind,
    JobSnapshot,
    JobStatus,
)
from src.services.registry import JobRegistry
from src.utils.errors import InvalidInputError, JobNotFoundError, JobStateError, PrismError

logger = logging.getLogger(__name__)

# Create router
router = APIRouter(prefix="/jobs", tags=["jobs"])


# ==================== Error Response Model ====================


class ErrorResponse(BaseModel):
    """Standard error response model."""

    detail: str
    error_type: str


# ==================== Exception Handlers ====================


async def validation_exception_handler(request: Request, exc: ValidationError) -> JSONResponse:
    """Handle Pydantic validation errors."""
    return JSONResponse(
        status_code=422,
        content={
            "detail": "Validation error",
            "error_type": "ValidationError",
            "errors": exc.errors(include_url=False),
        },
    )


async def prism_exception_handler(request: Request, exc: PrismError) -> JSONResponse:
    """Handle application-specific errors."""
    status_code = 500

    if isinstance(exc, JobNotFoundError):
        status_code = 404
    elif isinstance(exc, InvalidInputError):
        status_code = 422
    elif isinstance(exc, JobStateError):
        status_code = 409

    if status_code == 500:
        logger.exception(f"Unexpected application error: {exc}")

    return JSONResponse(
        status_code=status_code,
        content={
            "detail": str(exc),
            "error_type": type(exc).__name__,
        },
    )


# ==================== Request/Response Models ====================


class SubmitResponse(BaseModel):
    """Response model for job submission."""

    job_id: str
    status: JobStatus


class ClearResponse(BaseModel):
    """Response model for clearing finished jobs."""

    removed: int


# ==================== Endpoints ====================


@router.post("/ingestion", response_model=SubmitResponse, status_code=202)
async def submit_ingestion(
    payload: IngestionPayload,
    registry: JobRegistry = Depends(get_registry_dep),
) -> SubmitResponse:
    """
    Queue a file for upload, chunking and storage.

    Unsupported or oversized files are accepted as jobs that are already
    ``failed``, so the client renders them like any other finished upload.
    """
    job_id = await registry.submit(payload)
    return SubmitResponse(job_id=job_id, status=registry.get(job_id).status)


@router.post("/generation", response_model=SubmitResponse, status_code=202)
async def submit_generation(
    payload: GenerationPayload,
    registry: JobRegistry = Depends(get_registry_dep),
) -> SubmitResponse:
    """Queue a chat prompt whose reply is streamed token by token."""
    job_id = await registry.submit(payload)
    return SubmitResponse(job_id=job_id, status=registry.get(job_id).status)


@router.get("", response_model=List[JobSnapshot])
async def list_jobs(
    status: Optional[JobStatus] = None,
    kind: Optional[JobKind] = None,
    registry: JobRegistry = Depends(get_registry_dep),
) -> List[JobSnapshot]:
    """List jobs, newest first, optionally filtered by status and kind."""
    return registry.list(status=status, kind=kind)


@router.delete("", response_model=ClearResponse)
async def clear_jobs(registry: JobRegistry = Depends(get_registry_dep)) -> ClearResponse:
    """Forget every finished job."""
    return ClearResponse(removed=registry.clear())


@router.get("/{job_id}", response_model=JobSnapshot)
async def get_job(job_id: str, registry: JobRegistry = Depends(get_registry_dep)) -> JobSnapshot:
    """Current snapshot of a job."""
    return registry.get(job_id)


@router.post("/{job_id}/cancel", response_model=JobSnapshot)
async def cancel_job(job_id: str, registry: JobRegistry = Depends(get_registry_dep)) -> JobSnapshot:
    """Request cancellation; finished jobs are returned unchanged."""
    return registry.cancel(job_id)


@router.delete("/{job_id}", response_model=JobSnapshot)
async def remove_job(job_id: str, registry: JobRegistry = Depends(get_registry_dep)) -> JobSnapshot:
    """Dismiss one finished job; in-flight jobs answer 409."""
    return registry.remove(job_id)


@router.get("/{job_id}/events")
async def stream_job_events(
    job_id: str,
    registry: JobRegistry = Depends(get_registry_dep),
) -> StreamingResponse:
    """
    Server-sent events, one per snapshot, ending with the terminal one.

    Disconnecting only closes the subscription; the job keeps running.
    """
    subscription = registry.subscribe(job_id)

    async def events() -> AsyncIterator[str]:
        async with subscription:
            async for snapshot in subscription:
                yield f"event: {snapshot.status}\ndata: {snapshot.model_dump_json()}\n\n"

    return StreamingResponse(events(), media_type="text/event-stream")
