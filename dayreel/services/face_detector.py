"""
Face detection service used to supply crop hints for images without one.

Uses OpenCV's bundled Haar cascade; the largest face that passes the size
bounds wins and is returned normalized to the image.
"""

import logging
import os
from dataclasses import dataclass
from typing import List, Optional, Tuple

import cv2
import numpy as np

from dayreel.services.timeline import FaceRegion

logger = logging.getLogger(__name__)


@dataclass
class FaceDetectionResult:
    """Result of face detection on a single image."""

    bbox: Tuple[int, int, int, int]  # x, y, width, height
    confidence: float
    detection_method: str = "haar_cascade"


class FaceDetector:
    """
    Haar cascade face detector.

    Detection runs on a downscaled grayscale copy so large photos stay cheap;
    boxes are mapped back to original pixel coordinates.
    """

    # Face size bounds as fraction of image area
    MIN_FACE_AREA_RATIO = 0.0005
    MAX_FACE_AREA_RATIO = 0.60

    # Longest side of the image the cascade actually sees
    DETECTION_MAX_DIMENSION = 960

    CASCADE_FILE = "haarcascade_frontalface_default.xml"

    def __init__(self, confidence_threshold: float = 0.3):
        self.confidence_threshold = confidence_threshold
        self._cascade: Optional[cv2.CascadeClassifier] = None
        self._ready = False
        self._load_cascade()

    def _load_cascade(self) -> None:
        path = os.path.join(cv2.data.haarcascades, self.CASCADE_FILE)
        try:
            cascade = cv2.CascadeClassifier(path)
        except cv2.error as e:
            logger.warning(f"Face hints disabled, cannot load {path}: {e}")
            return
        if cascade.empty():
            logger.warning(f"Face hints disabled, cascade at {path} is empty")
            return
        self._cascade = cascade
        self._ready = True
        logger.info("Face hint detector ready (Haar cascade)")

    def is_ready(self) -> bool:
        return self._ready

    def detect_faces(self, image: np.ndarray) -> List[FaceDetectionResult]:
        """
        Detect faces in a BGR image.

        Args:
            image: BGR pixels of the decoded photo

        Returns:
            Detections in original pixel coordinates, size-filtered
        """
        if not self.is_ready():
            raise RuntimeError("Face detector is not loaded")

        height, width = image.shape[:2]
        scale = min(1.0, self.DETECTION_MAX_DIMENSION / max(width, height))
        small = image
        if scale < 1.0:
            small = cv2.resize(image, (int(width * scale), int(height * scale)), interpolation=cv2.INTER_AREA)

        gray = cv2.cvtColor(small, cv2.COLOR_BGR2GRAY)
        small_h, small_w = gray.shape[:2]
        faces = self._cascade.detectMultiScale(
            gray,
            scaleFactor=1.1,
            minNeighbors=5,
            minSize=(24, 24),
            maxSize=(int(small_w * 0.9), int(small_h * 0.9)),
        )

        frame_area = width * height
        detections = []
        for box in faces:
            bbox = tuple(int(v / scale) for v in box)
            # Haar gives no score; bigger faces are trusted more
            confidence = min(0.9, 0.3 + 2 * bbox[2] * bbox[3] / frame_area)
            if confidence >= self.confidence_threshold:
                detections.append(FaceDetectionResult(bbox=bbox, confidence=confidence))

        return self._filter_by_size(detections, frame_area)

    def _filter_by_size(
        self,
        detections: List[FaceDetectionResult],
        frame_area: int,
    ) -> List[FaceDetectionResult]:
        kept = []
        for det in detections:
            ratio = det.bbox[2] * det.bbox[3] / frame_area
            if self.MIN_FACE_AREA_RATIO <= ratio <= self.MAX_FACE_AREA_RATIO:
                kept.append(det)
            else:
                logger.debug(f"Dropping face {det.bbox}: covers {ratio:.2%} of the photo")
        return kept

    def detect_primary_region(self, image: np.ndarray) -> Optional[FaceRegion]:
        """
        Return the largest detected face as a normalized region, or None.
        """
        detections = self.detect_faces(image)
        if not detections:
            return None

        best = max(detections, key=lambda d: d.bbox[2] * d.bbox[3])
        height, width = image.shape[:2]
        x, y, w, h = best.bbox
        return FaceRegion(x=x / width, y=y / height, width=w / width, height=h / height)
