"""
Response schemas for the render API.
"""

from typing import Optional

from pydantic import BaseModel, Field

from dayreel.services.scheduler import RenderJob, RenderResult


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = Field(..., description="Service health status")
    version: str = Field(..., description="API version")


class ReadinessResponse(BaseModel):
    """Readiness check response."""

    ready: bool
    ffmpeg: str = Field(..., description="'available' or 'missing'")
    job_manager: str = Field(..., description="'ready' or 'not_initialized'")


class AspectRatioResponse(BaseModel):
    """One aspect ratio preset."""

    id: str
    name: str
    description: str
    width: int
    height: int


class ArtifactResponse(BaseModel):
    """Where the finished render lives."""

    uri: str
    size_bytes: int
    content_type: str
    duration_seconds: float


class RenderResultResponse(BaseModel):
    """Terminal outcome of a render."""

    status: str
    reason: Optional[str] = None
    error_category: Optional[str] = None
    decode_failures: list[str] = []
    frames_rendered: int
    processing_time_seconds: float
    artifact: Optional[ArtifactResponse] = None

    @classmethod
    def from_result(cls, result: RenderResult) -> "RenderResultResponse":
        artifact = None
        if result.artifact is not None:
            artifact = ArtifactResponse(
                uri=result.artifact.uri,
                size_bytes=result.artifact.size_bytes,
                content_type=result.artifact.content_type,
                duration_seconds=result.artifact.duration_seconds,
            )
        return cls(
            status=result.status.value,
            reason=result.reason,
            error_category=result.error_category,
            decode_failures=list(result.decode_failures),
            frames_rendered=result.frames_rendered,
            processing_time_seconds=result.processing_time_seconds,
            artifact=artifact,
        )


class RenderSubmitResponse(BaseModel):
    """Response after submitting a render."""

    job_id: str
    status: str
    message: str
    total_frames: int


class RenderStatusResponse(BaseModel):
    """Response for a render status query."""

    job_id: str
    state: str
    progress_percent: float
    current_step: str
    frames_rendered: int
    total_frames: int
    entries: int
    result: Optional[RenderResultResponse] = None

    @classmethod
    def from_job(cls, job: RenderJob) -> "RenderStatusResponse":
        return cls(
            job_id=job.job_id,
            state=job.state.value,
            progress_percent=job.progress_percent,
            current_step=job.current_step,
            frames_rendered=job.frames_rendered,
            total_frames=job.total_frames,
            entries=len(job.timeline),
            result=RenderResultResponse.from_result(job.result) if job.result else None,
        )
