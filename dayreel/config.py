"""
Configuration module using Pydantic Settings for environment variable management.

Only essential environment variables are exposed. All other settings are hardcoded
for consistency and simplicity.
"""

from functools import lru_cache
from typing import Literal, Optional

from pydantic_settings import BaseSettings


# ============================================================
# ASPECT RATIO PRESETS
# ============================================================

class AspectRatio:
    """
    Available aspect ratio identifiers for rendered timelines.
    """
    LANDSCAPE = "16:9"
    SQUARE = "1:1"
    PORTRAIT = "9:16"


_ASPECT_RATIO_DIMENSIONS = {
    AspectRatio.LANDSCAPE: (1920, 1080),
    AspectRatio.SQUARE: (1080, 1080),
    AspectRatio.PORTRAIT: (1080, 1920),
}


def get_aspect_ratio_dimensions(aspect_ratio: str) -> tuple[int, int]:
    """
    Get the output (width, height) for an aspect ratio ID.

    Args:
        aspect_ratio: One of the AspectRatio constants

    Returns:
        (width, height) in pixels

    Raises:
        ValueError: If aspect_ratio is not recognized
    """
    if aspect_ratio not in _ASPECT_RATIO_DIMENSIONS:
        valid = list(_ASPECT_RATIO_DIMENSIONS.keys())
        raise ValueError(f"Unsupported aspect ratio: {aspect_ratio}. Valid aspect ratios: {valid}")

    return _ASPECT_RATIO_DIMENSIONS[aspect_ratio]


def get_available_aspect_ratios() -> list[dict]:
    """
    Get list of available aspect ratio presets with metadata.

    Returns:
        List of preset info dicts with id, name, width and height
    """
    return [
        {
            "id": AspectRatio.LANDSCAPE,
            "name": "Landscape",
            "description": "Widescreen 1920x1080 - YouTube and desktop playback",
            "width": 1920,
            "height": 1080,
        },
        {
            "id": AspectRatio.SQUARE,
            "name": "Square",
            "description": "Square 1080x1080 - feed posts",
            "width": 1080,
            "height": 1080,
        },
        {
            "id": AspectRatio.PORTRAIT,
            "name": "Portrait",
            "description": "Vertical 1080x1920 - stories and reels",
            "width": 1080,
            "height": 1920,
        },
    ]


class OverlayStyle:
    """Date-stamp overlay styling (hardcoded)."""

    box_left: int = 20
    box_bottom: int = 80  # Distance from the bottom edge to the top of the box
    box_width: int = 240
    box_height: int = 60
    box_color: tuple[int, int, int] = (0, 0, 0)  # BGR
    text_left: int = 40
    text_center_from_bottom: int = 50
    text_color: tuple[int, int, int] = (255, 255, 255)  # BGR
    font_scale: float = 1.0
    thickness: int = 2


class Settings(BaseSettings):
    """
    Application settings.

    Only essential configuration is loaded from environment variables.
    All encoding/compositing settings are hardcoded for consistency.
    """

    # ============================================================
    # ENVIRONMENT VARIABLES (minimal set)
    # ============================================================

    # Application
    app_name: str = "dayreel"
    debug: bool = False
    log_level: str = "INFO"

    # Security - API authentication
    api_key: Optional[str] = None  # API key for authenticating incoming requests
    webhook_secret: Optional[str] = None  # Secret for signing outgoing webhooks

    # Artifact storage
    storage_backend: Literal["local", "s3"] = "local"
    output_directory: str = "output"
    temp_directory: str = "/tmp/dayreel"

    # AWS S3 (only used when storage_backend == "s3")
    aws_region: str = "us-east-1"
    aws_access_key_id: Optional[str] = None
    aws_secret_access_key: Optional[str] = None
    s3_bucket: str = "dayreel-renders"

    # Performance tuning
    max_concurrent_jobs: int = 2  # Max render jobs running at once
    max_decode_workers: int = 4  # Max parallel image decodes in the batch path
    job_retention_limit: int = 100  # Finished jobs kept for status queries before eviction

    # External tools
    ffmpeg_path: str = "ffmpeg"

    # Image sources
    image_root: Optional[str] = None  # Local image refs must resolve inside this directory

    # Compositing
    auto_detect_faces: bool = False  # Detect a face region when the entry has none
    face_anchor_top_bias: float = 0.3
    realtime_pacing: bool = True  # Pace the real-time path at the output frame rate

    # Logging
    job_log_files: bool = False  # Write a per-job log file under logs/

    # ============================================================
    # HARDCODED SETTINGS (not configurable via env vars)
    # ============================================================

    @property
    def frame_rate(self) -> int:
        return 30

    @property
    def crossfade_seconds(self) -> float:
        return 0.5

    @property
    def progress_yield_interval(self) -> int:
        return 10  # Frames between cooperative yields / progress reports

    @property
    def realtime_queue_frames(self) -> int:
        return 30  # One second of buffered frames before accept() blocks

    @property
    def realtime_bitrate(self) -> str:
        return "5M"

    @property
    def video_codec(self) -> str:
        return "libx264"

    @property
    def pixel_format(self) -> str:
        return "yuv420p"

    @property
    def ffmpeg_preset(self) -> str:
        return "veryfast"

    @property
    def ffmpeg_crf(self) -> int:
        return 20

    @property
    def still_image_extension(self) -> str:
        return ".jpg"

    @property
    def still_jpeg_quality(self) -> int:
        return 92

    @property
    def http_timeout_seconds(self) -> float:
        return 30.0

    @property
    def face_confidence_threshold(self) -> float:
        return 0.3

    @property
    def job_log_directory(self) -> str:
        return "logs"

    class Config:
        env_prefix = "DAYREEL_"
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False

    def get_overlay_style(self) -> OverlayStyle:
        """Build OverlayStyle from settings."""
        return OverlayStyle()


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
