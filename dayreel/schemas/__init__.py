"""
Pydantic schemas for request/response models.
"""

from dayreel.schemas.requests import (
    FaceRegionInput,
    RenderSettingsInput,
    RenderSubmitRequest,
    TimelineEntryInput,
)
from dayreel.schemas.responses import (
    AspectRatioResponse,
    HealthResponse,
    ReadinessResponse,
    RenderResultResponse,
    RenderStatusResponse,
    RenderSubmitResponse,
)

__all__ = [
    "FaceRegionInput",
    "TimelineEntryInput",
    "RenderSettingsInput",
    "RenderSubmitRequest",
    "AspectRatioResponse",
    "HealthResponse",
    "ReadinessResponse",
    "RenderResultResponse",
    "RenderStatusResponse",
    "RenderSubmitResponse",
]
