"""
Health check endpoints for the render service.
"""

import shutil

from fastapi import APIRouter, Request

from dayreel import __version__
from dayreel.config import get_settings
from dayreel.schemas.responses import HealthResponse, ReadinessResponse

router = APIRouter()


@router.get("/health", response_model=HealthResponse)
async def health_check():
    """
    Basic health check endpoint.

    Returns 200 if the service is running.
    """
    return HealthResponse(status="healthy", version=__version__)


@router.get("/health/ready", response_model=ReadinessResponse)
async def readiness_check(request: Request):
    """
    Readiness check endpoint.

    Ready when ffmpeg is on PATH and the job manager has been created.
    """
    ffmpeg_ready = shutil.which(get_settings().ffmpeg_path) is not None
    manager_ready = getattr(request.app.state, "job_manager", None) is not None

    return ReadinessResponse(
        ready=ffmpeg_ready and manager_ready,
        ffmpeg="available" if ffmpeg_ready else "missing",
        job_manager="ready" if manager_ready else "not_initialized",
    )
