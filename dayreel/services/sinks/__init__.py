"""
Encoding sinks: one contract, a real-time and a batch implementation.
"""

from typing import Literal, Optional

from dayreel.config import Settings, get_settings
from dayreel.services.sinks.base import Artifact, EncodingSink
from dayreel.services.sinks.batch import BatchSink
from dayreel.services.sinks.manifest import ConcatManifest, ManifestEntry
from dayreel.services.sinks.realtime import RealtimeSink

SinkMode = Literal["batch", "realtime"]


def create_sink(
    mode: SinkMode,
    work_dir: str,
    width: int,
    height: int,
    settings: Optional[Settings] = None,
) -> EncodingSink:
    """
    Build the sink for a deployment context.

    Raises:
        ValueError: If mode is not recognized
    """
    settings = settings or get_settings()
    if mode == "batch":
        return BatchSink(work_dir, width, height, settings.frame_rate, settings=settings)
    if mode == "realtime":
        return RealtimeSink(width, height, settings.frame_rate, settings=settings)
    raise ValueError(f"Unknown sink mode: {mode}. Valid modes: ['batch', 'realtime']")


__all__ = [
    "Artifact",
    "EncodingSink",
    "BatchSink",
    "RealtimeSink",
    "ConcatManifest",
    "ManifestEntry",
    "SinkMode",
    "create_sink",
]
