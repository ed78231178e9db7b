"""
Image source - resolves timeline image references to decoded pixel buffers.

Supports:
- Local paths (optionally confined to a root directory)
- file:// URIs
- http(s):// URLs (fetched with httpx)
"""

import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional
from urllib.parse import unquote, urlparse

import cv2
import httpx
import numpy as np

from dayreel.services.errors import DecodeError
from dayreel.services.face_detector import FaceDetector
from dayreel.services.timeline import FaceRegion

logger = logging.getLogger(__name__)


@dataclass
class DecodedImage:
    """A decoded 8-bit BGR image plus its optional face hint."""

    ref: str
    pixels: np.ndarray  # (height, width, 3) uint8, BGR
    face_region: Optional[FaceRegion] = None

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])


class ImageSource(ABC):
    """Collaborator contract: decode an image reference or raise DecodeError."""

    @abstractmethod
    def decode(self, ref: str, face_region: Optional[FaceRegion] = None) -> DecodedImage:
        """
        Decode one image.

        Args:
            ref: Opaque image reference
            face_region: Precomputed face region from the caller, if any

        Raises:
            DecodeError: If the image is missing or cannot be decoded
        """


def decode_image_bytes(data: bytes, ref: str = "<bytes>") -> np.ndarray:
    """
    Decode encoded image bytes to a 3-channel 8-bit BGR array.

    IMREAD_COLOR expands grayscale, drops alpha and reduces depth to 8 bits.
    """
    if not data:
        raise DecodeError(f"Empty image data: {ref}")

    buffer = np.frombuffer(data, dtype=np.uint8)
    pixels = cv2.imdecode(buffer, cv2.IMREAD_COLOR)
    if pixels is None or pixels.size == 0:
        raise DecodeError(f"Unsupported or corrupt image: {ref}")
    return pixels


class LocalImageSource(ImageSource):
    """
    Image source for local files and remote URLs.

    When a FaceDetector is supplied, images decoded without a face region get
    one from detection (the largest face), if any is found.
    """

    def __init__(
        self,
        root: Optional[str] = None,
        face_detector: Optional[FaceDetector] = None,
        http_timeout: float = 30.0,
    ):
        self.root = os.path.realpath(root) if root else None
        self.face_detector = face_detector
        self.http_timeout = http_timeout

    def _resolve_path(self, ref: str) -> str:
        parsed = urlparse(ref)
        path = unquote(parsed.path) if parsed.scheme == "file" else ref

        if self.root:
            candidate = os.path.realpath(os.path.join(self.root, path))
            if os.path.commonpath([candidate, self.root]) != self.root:
                raise DecodeError(f"Image path escapes the image root: {ref}")
            return candidate
        return path

    def _read_bytes(self, ref: str) -> bytes:
        scheme = urlparse(ref).scheme.lower()

        if scheme in ("http", "https"):
            try:
                response = httpx.get(ref, timeout=self.http_timeout, follow_redirects=True)
                response.raise_for_status()
            except httpx.HTTPError as e:
                raise DecodeError(f"Failed to fetch {ref}: {e}") from e
            return response.content

        path = self._resolve_path(ref)
        if not os.path.isfile(path):
            raise DecodeError(f"Image not found: {ref}")
        try:
            with open(path, "rb") as f:
                return f.read()
        except OSError as e:
            raise DecodeError(f"Failed to read {ref}: {e}") from e

    def decode(self, ref: str, face_region: Optional[FaceRegion] = None) -> DecodedImage:
        if not ref:
            raise DecodeError("Empty image reference")

        pixels = decode_image_bytes(self._read_bytes(ref), ref)

        if face_region is None and self.face_detector is not None and self.face_detector.is_ready():
            try:
                face_region = self.face_detector.detect_primary_region(pixels)
            except Exception as e:
                logger.warning(f"Face detection failed for {ref}: {e}")
            if face_region is not None:
                logger.debug(f"Detected face for {ref}: {face_region}")

        return DecodedImage(ref=ref, pixels=pixels, face_region=face_region)
