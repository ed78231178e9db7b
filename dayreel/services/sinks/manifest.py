"""
Concat manifest - the ordered (still image, duration) list handed to ffmpeg's
concat demuxer.
"""

import logging
import os
from dataclasses import dataclass, field

from dayreel.services.errors import ConfigurationError

logger = logging.getLogger(__name__)

SUPPORTED_PIXEL_FORMATS = ("yuv420p", "yuvj420p")


@dataclass
class ManifestEntry:
    """One still and how many output frames it is held for."""

    path: str
    frames: int = 1


def _quote(path: str) -> str:
    # concat demuxer quoting: close quote, escaped quote, reopen
    return "'" + path.replace("'", "'\\''") + "'"


@dataclass
class ConcatManifest:
    """
    Ordered manifest of stills with per-still durations.

    Durations are kept as frame counts so coalesced runs never accumulate
    float error; seconds are derived when the manifest is written.
    """

    frame_rate: int
    entries: list[ManifestEntry] = field(default_factory=list)

    def add(self, path: str, frames: int = 1) -> None:
        self.entries.append(ManifestEntry(path=path, frames=frames))

    def extend_last(self, frames: int = 1) -> None:
        """Hold the most recent still for more frames."""
        if not self.entries:
            raise ValueError("Cannot extend an empty manifest")
        self.entries[-1].frames += frames

    @property
    def total_frames(self) -> int:
        return sum(entry.frames for entry in self.entries)

    @property
    def duration_seconds(self) -> float:
        return self.total_frames / self.frame_rate

    def to_text(self) -> str:
        """
        Render the manifest in concat demuxer syntax.

        Durations are the differences of rounded cumulative start times, so
        every still starts on its exact frame boundary however long the
        manifest is. The demuxer ignores the duration of the final entry
        unless the last file is listed once more, so it is repeated without a
        duration; the encoder caps the output at total_frames.
        """
        lines = []
        start_frame = 0
        for entry in self.entries:
            end_frame = start_frame + entry.frames
            start = round(start_frame / self.frame_rate, 6)
            end = round(end_frame / self.frame_rate, 6)
            lines.append(f"file {_quote(os.path.abspath(entry.path))}")
            lines.append(f"duration {end - start:.6f}")
            start_frame = end_frame
        if self.entries:
            lines.append(f"file {_quote(os.path.abspath(self.entries[-1].path))}")
        return "\n".join(lines) + "\n"

    def validate(self, width: int, height: int, pixel_format: str) -> None:
        """
        Check encoder constraints before invoking it.

        Raises:
            ConfigurationError: Empty manifest, odd dimensions, non-positive
                duration, missing still, or unsupported pixel format
        """
        if not self.entries:
            raise ConfigurationError("Manifest is empty")
        if width <= 0 or height <= 0 or width % 2 or height % 2:
            raise ConfigurationError(f"Output dimensions must be positive and even, got {width}x{height}")
        if self.frame_rate <= 0:
            raise ConfigurationError(f"Invalid frame rate: {self.frame_rate}")
        if pixel_format not in SUPPORTED_PIXEL_FORMATS:
            raise ConfigurationError(f"Unsupported pixel format: {pixel_format}")

        for index, entry in enumerate(self.entries):
            if entry.frames <= 0:
                raise ConfigurationError(f"Manifest entry {index} has zero duration")
            if not os.path.isfile(entry.path):
                raise ConfigurationError(f"Manifest entry {index} still is missing")

    def write(self, path: str) -> str:
        with open(path, "w", encoding="utf-8") as f:
            f.write(self.to_text())
        logger.debug(f"Manifest written: {path} ({len(self.entries)} stills, {self.total_frames} frames)")
        return path
