"""
Encoding sink contract shared by the real-time and batch implementations.
"""

import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

import numpy as np

from dayreel.services.errors import EncodeError, SinkClosedError

logger = logging.getLogger(__name__)


@dataclass
class Artifact:
    """Finished video, either in memory or on disk."""

    content_type: str
    path: Optional[str] = None
    data: Optional[bytes] = None
    frame_count: int = 0
    duration_seconds: float = 0.0

    @property
    def size_bytes(self) -> int:
        if self.data is not None:
            return len(self.data)
        if self.path and os.path.isfile(self.path):
            return os.path.getsize(self.path)
        return 0

    @property
    def extension(self) -> str:
        return ".webm" if self.content_type == "video/webm" else ".mp4"


class EncodingSink(ABC):
    """
    Consumes frames in order and produces an Artifact.

    Lifecycle: accept()* then exactly one of finish() or abort(). Frames
    delivered after either are rejected with SinkClosedError.
    """

    # Real-time sinks expect frames at the output cadence
    paced = False

    # How many images the scheduler may decode concurrently for this sink
    load_workers = 1

    def __init__(self, width: int, height: int, frame_rate: int):
        self.width = width
        self.height = height
        self.frame_rate = frame_rate
        self.frames_accepted = 0
        self._closed = False
        self._finished = False
        self._aborted = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def accept(self, frame: np.ndarray) -> None:
        """Deliver the next frame; may wait when the encoder applies backpressure."""
        if self._closed:
            raise SinkClosedError("Sink no longer accepts frames")
        if frame.shape != (self.height, self.width, 3):
            raise EncodeError(
                f"Frame size mismatch: got {frame.shape}, expected {(self.height, self.width, 3)}"
            )
        await self._accept(frame)
        self.frames_accepted += 1

    async def finish(self) -> Artifact:
        """Signal end-of-stream and wait for the encoded artifact."""
        if self._closed:
            raise SinkClosedError("Sink already finished or aborted")
        self._closed = True
        artifact = await self._finish()
        self._finished = True
        logger.info(
            f"{type(self).__name__} finished: {self.frames_accepted} frames, "
            f"{artifact.size_bytes / 1024 / 1024:.1f} MB"
        )
        return artifact

    async def abort(self) -> None:
        """Discard everything produced so far. Safe to call more than once."""
        if self._finished or self._aborted:
            return
        self._closed = True
        self._aborted = True
        logger.info(f"{type(self).__name__} aborted after {self.frames_accepted} frames")
        await self._abort()

    @abstractmethod
    async def _accept(self, frame: np.ndarray) -> None:
        ...

    @abstractmethod
    async def _finish(self) -> Artifact:
        ...

    @abstractmethod
    async def _abort(self) -> None:
        ...
