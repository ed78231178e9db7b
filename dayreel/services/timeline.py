"""
Timeline model - the validated, date-ordered sequence of entries to render.
"""

import logging
import math
import re
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Optional, Sequence

from dayreel.config import get_aspect_ratio_dimensions
from dayreel.services.errors import ValidationError

logger = logging.getLogger(__name__)


DAY_KEY_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")
HEX_COLOR_PATTERN = re.compile(r"^#?([0-9a-fA-F]{6})$")


class TransitionType(str, Enum):
    """Transition between consecutive slides."""

    NONE = "none"
    CROSSFADE = "crossfade"


@dataclass(frozen=True)
class FaceRegion:
    """Face/subject region, normalized (0..1) to the original image."""

    x: float
    y: float
    width: float
    height: float

    @property
    def center_x(self) -> float:
        return self.x + self.width / 2

    @property
    def center_y(self) -> float:
        return self.y + self.height / 2


@dataclass(frozen=True)
class TimelineEntry:
    """One calendar day and the image assigned to it."""

    day_key: str  # 'YYYY-MM-DD'
    image_ref: str
    face_region: Optional[FaceRegion] = None

    @property
    def day(self) -> date:
        """Parse the day key as a local calendar date."""
        year, month, day = (int(part) for part in self.day_key.split("-"))
        return date(year, month, day)


def parse_hex_color(value: str) -> tuple[int, int, int]:
    """
    Parse '#RRGGBB' into an OpenCV BGR tuple.

    Raises:
        ValidationError: If the value is not a 6-digit hex color
    """
    match = HEX_COLOR_PATTERN.match(value or "")
    if not match:
        raise ValidationError(f"Invalid background color: {value!r} (expected #RRGGBB)")
    digits = match.group(1)
    r, g, b = (int(digits[i:i + 2], 16) for i in (0, 2, 4))
    return (b, g, r)


@dataclass(frozen=True)
class RenderSettings:
    """
    Immutable per-render configuration.

    frame_rate and crossfade_seconds come from the service Settings; the rest
    is chosen by the user for each render.
    """

    aspect_ratio: str = "16:9"
    duration_per_slide: float = 2.0  # seconds
    transition: TransitionType = TransitionType.NONE
    show_date_overlay: bool = True
    face_aware_crop: bool = True
    background_color: str = "#000000"
    frame_rate: int = 30
    crossfade_seconds: float = 0.5

    @property
    def dimensions(self) -> tuple[int, int]:
        """Output (width, height); raises ValidationError for unknown ratios."""
        try:
            return get_aspect_ratio_dimensions(self.aspect_ratio)
        except ValueError as e:
            raise ValidationError(str(e)) from e

    @property
    def background_bgr(self) -> tuple[int, int, int]:
        return parse_hex_color(self.background_color)

    @property
    def frames_per_slide(self) -> int:
        return int(round(self.duration_per_slide * self.frame_rate))

    @property
    def transition_frames(self) -> int:
        """
        Length of the trailing crossfade window of each slide.

        Capped at frames_per_slide - 1 so every slide opens on its own image
        at full opacity.
        """
        if TransitionType(self.transition) != TransitionType.CROSSFADE:
            return 0
        window = int(round(self.crossfade_seconds * self.frame_rate))
        return max(0, min(window, self.frames_per_slide - 1))

    def validate(self) -> None:
        """
        Check settings invariants.

        Raises:
            ValidationError: On a non-positive or non-finite duration, a
                duration shorter than one frame, an unknown aspect ratio,
                transition or color
        """
        if self.frame_rate <= 0:
            raise ValidationError(f"Invalid frame rate: {self.frame_rate}")
        if not math.isfinite(self.duration_per_slide) or self.duration_per_slide <= 0:
            raise ValidationError(
                f"duration_per_slide must be positive and finite, got {self.duration_per_slide}"
            )
        if self.frames_per_slide < 1:
            raise ValidationError(
                f"duration_per_slide {self.duration_per_slide}s is shorter than one frame "
                f"at {self.frame_rate}fps"
            )
        try:
            TransitionType(self.transition)
        except ValueError as e:
            raise ValidationError(f"Unsupported transition: {self.transition}") from e
        # Both raise ValidationError on bad input
        _ = self.dimensions
        _ = self.background_bgr


@dataclass
class Timeline:
    """
    Ordered, validated sequence of timeline entries.

    Entries must arrive sorted ascending by day key; the timeline never
    re-sorts, it only rejects out-of-order or duplicate keys.
    """

    entries: list[TimelineEntry] = field(default_factory=list)

    @classmethod
    def validate(
        cls,
        entries: Sequence[TimelineEntry],
        settings: Optional[RenderSettings] = None,
    ) -> "Timeline":
        """
        Validate entries (and settings, if given) and build a Timeline.

        Raises:
            ValidationError: If the sequence is empty, a day key is malformed,
                day keys are not strictly increasing, or settings are invalid
        """
        if settings is not None:
            settings.validate()

        if not entries:
            raise ValidationError("Timeline is empty")

        previous: Optional[str] = None
        for index, entry in enumerate(entries):
            if not DAY_KEY_PATTERN.match(entry.day_key or ""):
                raise ValidationError(f"Entry {index}: malformed day key {entry.day_key!r}")
            try:
                _ = entry.day
            except ValueError as e:
                raise ValidationError(f"Entry {index}: invalid date {entry.day_key!r}") from e
            if previous is not None and entry.day_key <= previous:
                kind = "duplicate" if entry.day_key == previous else "out-of-order"
                raise ValidationError(
                    f"Entry {index}: {kind} day key {entry.day_key} after {previous}"
                )
            previous = entry.day_key

        logger.debug(f"Timeline validated: {len(entries)} entries {entries[0].day_key}..{previous}")
        return cls(entries=list(entries))

    def __len__(self) -> int:
        return len(self.entries)

    def entry_at(self, index: int) -> TimelineEntry:
        return self.entries[index]

    def neighbor_after(self, index: int) -> Optional[TimelineEntry]:
        """Entry following index, or None for the last entry."""
        if index + 1 < len(self.entries):
            return self.entries[index + 1]
        return None
