"""
Batch sink - writes frames as stills plus a concat manifest, then invokes
ffmpeg once to encode the video.
"""

import asyncio
import logging
import os
from typing import Optional

import cv2
import numpy as np

from dayreel.config import Settings, get_settings
from dayreel.services.errors import EncodeError
from dayreel.services.ffmpeg import build_concat_command, run_ffmpeg
from dayreel.services.sinks.base import Artifact, EncodingSink
from dayreel.services.sinks.manifest import ConcatManifest

logger = logging.getLogger(__name__)

MANIFEST_FILENAME = "files.txt"
OUTPUT_FILENAME = "render.mp4"


class BatchSink(EncodingSink):
    """
    Pre-renders every frame to a still image for an external encoder.

    A frame identical to the previous one extends the previous still's
    duration instead of writing a new file, so a static slide costs one still
    held for the whole slide.
    """

    def __init__(
        self,
        work_dir: str,
        width: int,
        height: int,
        frame_rate: int,
        settings: Optional[Settings] = None,
    ):
        super().__init__(width, height, frame_rate)
        self.settings = settings or get_settings()
        self.work_dir = work_dir
        self.load_workers = max(1, self.settings.max_decode_workers)
        self.manifest = ConcatManifest(frame_rate=frame_rate)
        self._last_frame: Optional[np.ndarray] = None
        self._written: list[str] = []
        os.makedirs(self.work_dir, exist_ok=True)

    def _still_path(self, index: int) -> str:
        return os.path.join(self.work_dir, f"frame_{index:04d}{self.settings.still_image_extension}")

    def _write_still(self, path: str, frame: np.ndarray) -> None:
        params = [cv2.IMWRITE_JPEG_QUALITY, self.settings.still_jpeg_quality]
        if not cv2.imwrite(path, frame, params):
            raise EncodeError(f"Failed to write still {path}")

    async def _accept(self, frame: np.ndarray) -> None:
        if self._last_frame is not None and np.array_equal(frame, self._last_frame):
            self.manifest.extend_last(1)
            return

        path = self._still_path(len(self.manifest.entries))
        loop = asyncio.get_event_loop()
        await loop.run_in_executor(None, lambda: self._write_still(path, frame))
        self._written.append(path)
        self.manifest.add(path, frames=1)
        self._last_frame = frame

    async def _finish(self) -> Artifact:
        self._last_frame = None
        # Every still is on disk before the encoder is invoked
        self.manifest.validate(self.width, self.height, self.settings.pixel_format)

        manifest_path = self.manifest.write(os.path.join(self.work_dir, MANIFEST_FILENAME))
        output_path = os.path.join(self.work_dir, OUTPUT_FILENAME)

        logger.info(
            f"Encoding {len(self.manifest.entries)} stills "
            f"({self.manifest.total_frames} frames, {self.manifest.duration_seconds:.1f}s) "
            f"at {self.width}x{self.height}"
        )
        await run_ffmpeg(
            build_concat_command(
                self.settings,
                manifest_path,
                output_path,
                self.width,
                self.height,
                total_frames=self.manifest.total_frames,
            )
        )

        if not os.path.isfile(output_path):
            raise EncodeError("Render failed: output file not created")

        return Artifact(
            content_type="video/mp4",
            path=output_path,
            frame_count=self.manifest.total_frames,
            duration_seconds=self.manifest.duration_seconds,
        )

    async def _abort(self) -> None:
        self._last_frame = None
        paths = self._written + [
            os.path.join(self.work_dir, MANIFEST_FILENAME),
            os.path.join(self.work_dir, OUTPUT_FILENAME),
        ]
        for path in paths:
            try:
                os.remove(path)
            except FileNotFoundError:
                pass
            except OSError as e:
                logger.warning(f"Failed to remove {path}: {e}")
        self._written.clear()
        self.manifest.entries.clear()
