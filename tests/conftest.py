"""
Pytest configuration and fixtures.
"""

import os
import sys
from typing import Optional

import numpy as np
import pytest

# Add package directory to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from dayreel.config import Settings, get_settings
from dayreel.services.artifact_store import ArtifactHandle, ArtifactStore
from dayreel.services.errors import DecodeError
from dayreel.services.image_source import DecodedImage, ImageSource
from dayreel.services.sinks.base import Artifact, EncodingSink
from dayreel.services.timeline import FaceRegion, TimelineEntry


def solid_image(width: int, height: int, color=(0, 0, 0)) -> np.ndarray:
    """Solid BGR image."""
    image = np.empty((height, width, 3), dtype=np.uint8)
    image[:] = color
    return image


def banded_image(width: int, height: int, bands: int = 10) -> np.ndarray:
    """Image whose rows encode their vertical position (band index * 20 in every channel)."""
    image = np.empty((height, width, 3), dtype=np.uint8)
    band_height = height // bands
    for band in range(bands):
        image[band * band_height:(band + 1) * band_height] = band * 20
    return image


class FakeImageSource(ImageSource):
    """In-memory image source; unknown refs fail to decode."""

    def __init__(self, images: Optional[dict] = None):
        self.images = images or {}
        self.calls: list[str] = []

    def decode(self, ref: str, face_region: Optional[FaceRegion] = None) -> DecodedImage:
        self.calls.append(ref)
        if ref not in self.images:
            raise DecodeError(f"Image not found: {ref}")
        return DecodedImage(ref=ref, pixels=self.images[ref], face_region=face_region)


class RecordingSink(EncodingSink):
    """
    Sink that keeps a per-frame pixel sample instead of encoding.

    Whole frames are not kept; a 90-frame 1080p render would hold ~500MB.
    """

    def __init__(
        self,
        width: int,
        height: int,
        frame_rate: int = 30,
        fail_on_finish: Optional[Exception] = None,
        paced: bool = False,
    ):
        super().__init__(width, height, frame_rate)
        self.paced = paced
        self.fail_on_finish = fail_on_finish
        self.centers: list[np.ndarray] = []
        self.overlay_samples: list[np.ndarray] = []
        self.finished = False
        self.aborted = False

    async def _accept(self, frame: np.ndarray) -> None:
        self.centers.append(frame[self.height // 2, self.width // 2].copy())
        # Inside the date box, left of the label text
        self.overlay_samples.append(frame[self.height - 75, 25].copy())

    async def _finish(self) -> Artifact:
        if self.fail_on_finish is not None:
            raise self.fail_on_finish
        self.finished = True
        return Artifact(
            content_type="video/mp4",
            data=b"\x00\x00\x00\x18ftypmp42",
            frame_count=self.frames_accepted,
            duration_seconds=self.frames_accepted / self.frame_rate,
        )

    async def _abort(self) -> None:
        self.aborted = True


class FakeArtifactStore(ArtifactStore):
    """Keeps persisted artifacts in memory."""

    def __init__(self):
        self.persisted: list[tuple[str, Artifact]] = []

    async def persist(self, artifact: Artifact, job_id: str) -> ArtifactHandle:
        self.persisted.append((job_id, artifact))
        return ArtifactHandle(
            uri=f"memory://{job_id}/render.mp4",
            size_bytes=artifact.size_bytes,
            content_type=artifact.content_type,
            frame_count=artifact.frame_count,
            duration_seconds=artifact.duration_seconds,
        )


@pytest.fixture
def make_entries():
    """Build consecutive-day entries for a list of image refs."""

    def _make(refs, start_day: int = 1, month: int = 1, year: int = 2024):
        return [
            TimelineEntry(day_key=f"{year:04d}-{month:02d}-{start_day + i:02d}", image_ref=ref)
            for i, ref in enumerate(refs)
        ]

    return _make


@pytest.fixture
def color_images():
    """Three small solid images with distinct gray levels."""
    return {
        "dark.png": solid_image(64, 64, (0, 0, 0)),
        "light.png": solid_image(64, 64, (240, 240, 240)),
        "mid.png": solid_image(64, 64, (100, 100, 100)),
    }


@pytest.fixture
def image_source(color_images):
    return FakeImageSource(color_images)


@pytest.fixture
def artifact_store():
    return FakeArtifactStore()


@pytest.fixture
def test_settings(tmp_path):
    """Service settings isolated to a temp directory."""
    return Settings(
        temp_directory=str(tmp_path / "work"),
        output_directory=str(tmp_path / "output"),
        max_concurrent_jobs=2,
        max_decode_workers=2,
    )


@pytest.fixture
def clear_settings_cache():
    """Reset cached settings around tests that change environment variables."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()
