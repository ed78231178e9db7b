"""
Services for the timeline renderer.

Includes:
- Timeline model, anchor resolution and frame compositing
- Image loading (local files, URLs, optional face detection)
- Encoding sinks (batch stills + concat, real-time stream)
- Render scheduling, job management, artifact storage and webhooks
"""

from dayreel.services.anchor_resolver import AnchorPolicy
from dayreel.services.artifact_store import (
    ArtifactHandle,
    ArtifactStore,
    LocalArtifactStore,
    S3ArtifactStore,
    create_artifact_store,
)
from dayreel.services.compositor import FrameCompositor, composite
from dayreel.services.image_source import DecodedImage, ImageSource, LocalImageSource
from dayreel.services.jobs import RenderJobManager
from dayreel.services.scheduler import (
    JobState,
    RenderJob,
    RenderResult,
    RenderScheduler,
    RenderStatus,
)
from dayreel.services.timeline import (
    FaceRegion,
    RenderSettings,
    Timeline,
    TimelineEntry,
    TransitionType,
)

__all__ = [
    # Model
    "FaceRegion",
    "TimelineEntry",
    "Timeline",
    "RenderSettings",
    "TransitionType",
    # Compositing
    "AnchorPolicy",
    "FrameCompositor",
    "composite",
    # Images
    "DecodedImage",
    "ImageSource",
    "LocalImageSource",
    # Rendering
    "JobState",
    "RenderJob",
    "RenderResult",
    "RenderScheduler",
    "RenderStatus",
    "RenderJobManager",
    # Storage
    "ArtifactHandle",
    "ArtifactStore",
    "LocalArtifactStore",
    "S3ArtifactStore",
    "create_artifact_store",
]
