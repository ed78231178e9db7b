"""
Render API Router - submit, inspect and cancel timeline renders.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status

from dayreel.auth import verify_api_key
from dayreel.config import get_available_aspect_ratios
from dayreel.schemas.requests import RenderSubmitRequest
from dayreel.schemas.responses import (
    AspectRatioResponse,
    RenderStatusResponse,
    RenderSubmitResponse,
)
from dayreel.services.errors import ValidationError
from dayreel.services.jobs import RenderJobManager
from dayreel.services.scheduler import JobState

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/renders", tags=["Renders"])


# ============================================================================
# Dependencies
# ============================================================================


async def get_job_manager(request: Request) -> RenderJobManager:
    """Get the job manager from app state (initialized at startup)."""
    manager = getattr(request.app.state, "job_manager", None)
    if manager is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Render job manager not initialized",
        )
    return manager


# ============================================================================
# Endpoints
# ============================================================================


@router.get("/aspect-ratios", response_model=list[AspectRatioResponse])
async def list_aspect_ratios() -> list[AspectRatioResponse]:
    """List the available output aspect ratio presets."""
    return [AspectRatioResponse(**preset) for preset in get_available_aspect_ratios()]


@router.post("", response_model=RenderSubmitResponse, status_code=status.HTTP_202_ACCEPTED)
async def submit_render(
    request: RenderSubmitRequest,
    manager: RenderJobManager = Depends(get_job_manager),
    _: None = Depends(verify_api_key),
) -> RenderSubmitResponse:
    """
    Submit a timeline render.

    The render runs asynchronously. Use GET /renders/{job_id} to check status.
    Invalid timelines and settings are rejected here with 422, before any
    work is scheduled.
    """
    entries = [entry.to_domain() for entry in request.entries]
    render_settings = request.settings.to_domain()

    try:
        job_id = manager.start_render(
            entries,
            render_settings,
            mode=request.mode,
            callback_url=request.callback_url,
        )
    except ValidationError as e:
        logger.info(f"Render request rejected: {e}")
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=e.describe(),
        )

    job = manager.get(job_id)
    return RenderSubmitResponse(
        job_id=job_id,
        status=job.state.value,
        message=f"Render queued: {len(entries)} entries",
        total_frames=job.total_frames,
    )


@router.get("", response_model=list[RenderStatusResponse])
async def list_renders(
    state: Optional[JobState] = None,
    limit: int = Query(20, ge=1, le=100, description="Maximum number of renders to return"),
    manager: RenderJobManager = Depends(get_job_manager),
    _: None = Depends(verify_api_key),
) -> list[RenderStatusResponse]:
    """List recent renders (newest first), optionally filtered by state."""
    return [RenderStatusResponse.from_job(job) for job in manager.list_jobs(state, limit=limit)]


@router.get("/{job_id}", response_model=RenderStatusResponse)
async def get_render(
    job_id: str,
    manager: RenderJobManager = Depends(get_job_manager),
    _: None = Depends(verify_api_key),
) -> RenderStatusResponse:
    """Get the state, progress and result of a render."""
    job = manager.get(job_id)
    if job is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Render {job_id} not found",
        )
    return RenderStatusResponse.from_job(job)


@router.delete("/{job_id}", status_code=status.HTTP_204_NO_CONTENT)
async def cancel_render(
    job_id: str,
    manager: RenderJobManager = Depends(get_job_manager),
    _: None = Depends(verify_api_key),
) -> Response:
    """
    Request cancellation of a render.

    Cancellation is cooperative; the job reaches the cancelled state at its
    next frame boundary. Cancelling a finished render is a no-op.
    """
    if manager.get(job_id) is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Render {job_id} not found",
        )
    manager.cancel(job_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
