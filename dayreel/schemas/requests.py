"""
Request schemas for the render API.
"""

from typing import Literal, Optional

from pydantic import BaseModel, Field, model_validator

from dayreel.services.timeline import (
    FaceRegion,
    RenderSettings,
    TimelineEntry,
    TransitionType,
)


class FaceRegionInput(BaseModel):
    """Face region normalized to the source image (0..1)."""

    x: float = Field(..., ge=0.0, le=1.0)
    y: float = Field(..., ge=0.0, le=1.0)
    width: float = Field(..., gt=0.0, le=1.0)
    height: float = Field(..., gt=0.0, le=1.0)

    @model_validator(mode="after")
    def validate_bounds(self) -> "FaceRegionInput":
        """Region must lie inside the image."""
        if self.x + self.width > 1.0 + 1e-6 or self.y + self.height > 1.0 + 1e-6:
            raise ValueError("face_region must lie within the image (x + width <= 1, y + height <= 1)")
        return self

    def to_domain(self) -> FaceRegion:
        return FaceRegion(x=self.x, y=self.y, width=self.width, height=self.height)


class TimelineEntryInput(BaseModel):
    """One day of the timeline."""

    day_key: str = Field(..., pattern=r"^\d{4}-\d{2}-\d{2}$", description="Calendar day, YYYY-MM-DD")
    image_ref: str = Field(..., min_length=1, description="Image path, file:// URI or http(s) URL")
    face_region: Optional[FaceRegionInput] = Field(
        default=None, description="Optional normalized face/subject region"
    )

    def to_domain(self) -> TimelineEntry:
        return TimelineEntry(
            day_key=self.day_key,
            image_ref=self.image_ref,
            face_region=self.face_region.to_domain() if self.face_region else None,
        )


class RenderSettingsInput(BaseModel):
    """Output options for a render."""

    aspect_ratio: str = Field("16:9", description="Aspect ratio preset: '16:9', '1:1' or '9:16'")
    duration_per_slide: float = Field(2.0, description="Seconds each day stays on screen")
    transition: TransitionType = Field(TransitionType.NONE, description="'none' or 'crossfade'")
    show_date_overlay: bool = Field(True, description="Draw the date stamp on every frame")
    face_aware_crop: bool = Field(True, description="Bias vertical crops toward faces")
    background_color: str = Field("#000000", description="Background color as #RRGGBB")

    def to_domain(self) -> RenderSettings:
        return RenderSettings(
            aspect_ratio=self.aspect_ratio,
            duration_per_slide=self.duration_per_slide,
            transition=self.transition,
            show_date_overlay=self.show_date_overlay,
            face_aware_crop=self.face_aware_crop,
            background_color=self.background_color,
        )


class RenderSubmitRequest(BaseModel):
    """Request to start a render."""

    entries: list[TimelineEntryInput] = Field(..., description="Entries sorted ascending by day")
    settings: RenderSettingsInput = Field(default_factory=RenderSettingsInput)
    mode: Literal["batch", "realtime"] = Field(
        "batch", description="'batch' writes stills and encodes once; 'realtime' streams frames"
    )
    callback_url: Optional[str] = Field(None, description="Webhook URL for progress updates")
