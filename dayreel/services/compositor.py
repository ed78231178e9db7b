"""
Frame compositor - turns decoded images into output frames.

Pipeline per frame:
1. Background fill
2. Cover-scale the primary image (no letterboxing, excess cropped)
3. Crop window placed by the anchor resolver (horizontal always centered)
4. Optional crossfade: next slide's image blended over at blend factor
5. Optional date label, drawn last so it never fades

Frames are BGR uint8 arrays of exactly (height, width, 3), the layout
OpenCV and ffmpeg's bgr24 raw input both use.
"""

import logging
import math
from collections import OrderedDict
from datetime import date
from typing import Optional

import cv2
import numpy as np

from dayreel.config import OverlayStyle
from dayreel.services.anchor_resolver import (
    AnchorPolicy,
    resolve_horizontal_offset,
    resolve_vertical_offset,
)
from dayreel.services.image_source import DecodedImage
from dayreel.services.timeline import RenderSettings, TimelineEntry

logger = logging.getLogger(__name__)

Frame = np.ndarray

_MONTHS = ("Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")

# Placeholder marker (BGR)
PLACEHOLDER_COLOR = (0, 0, 255)
PLACEHOLDER_TEXT = "No image"


def format_day_label(day: date) -> str:
    """Format a date as 'Mon D, YYYY' independent of the process locale."""
    return f"{_MONTHS[day.month - 1]} {day.day}, {day.year}"


def cover_scale(
    image_width: int,
    image_height: int,
    target_width: int,
    target_height: int,
) -> tuple[float, int, int]:
    """
    Compute cover-fit scaling.

    Returns:
        (scale, scaled_width, scaled_height); the scaled size is never smaller
        than the target in either dimension
    """
    if image_width <= 0 or image_height <= 0:
        raise ValueError(f"Invalid image size {image_width}x{image_height}")

    scale = max(target_width / image_width, target_height / image_height)
    # Round half-pixels up so float error can't leave a 1px gap
    scaled_width = max(target_width, int(math.ceil(image_width * scale - 1e-6)))
    scaled_height = max(target_height, int(math.ceil(image_height * scale - 1e-6)))
    return scale, scaled_width, scaled_height


def background_frame(settings: RenderSettings) -> Frame:
    """Solid background frame for the render's dimensions."""
    width, height = settings.dimensions
    frame = np.empty((height, width, 3), dtype=np.uint8)
    frame[:] = settings.background_bgr
    return frame


def render_layer(
    image: DecodedImage,
    settings: RenderSettings,
    policy: Optional[AnchorPolicy] = None,
) -> Frame:
    """
    Cover-scale and crop one image to the output frame.

    The face hint (if any) travels with the decoded image.
    """
    target_width, target_height = settings.dimensions
    _, scaled_width, scaled_height = cover_scale(
        image.width, image.height, target_width, target_height
    )

    shrinking = scaled_width < image.width
    interpolation = cv2.INTER_AREA if shrinking else cv2.INTER_LINEAR
    scaled = cv2.resize(image.pixels, (scaled_width, scaled_height), interpolation=interpolation)

    offset_x = resolve_horizontal_offset(scaled_width, target_width)
    offset_y = resolve_vertical_offset(
        scaled_height,
        target_height,
        face_aware=settings.face_aware_crop,
        face_region=image.face_region,
        policy=policy,
    )

    left = min(int(round(-offset_x)), scaled_width - target_width)
    top = min(int(round(-offset_y)), scaled_height - target_height)

    frame = background_frame(settings)
    frame[:, :] = scaled[top:top + target_height, left:left + target_width]
    return frame


def render_placeholder(settings: RenderSettings) -> Frame:
    """Background frame with a visible 'missing image' marker."""
    frame = background_frame(settings)
    width, height = settings.dimensions

    size = min(width, height) // 4
    cx, cy = width // 2, height // 2
    top_left = (cx - size, cy - size)
    bottom_right = (cx + size, cy + size)

    cv2.rectangle(frame, top_left, bottom_right, PLACEHOLDER_COLOR, thickness=8)
    cv2.line(frame, top_left, bottom_right, PLACEHOLDER_COLOR, thickness=8)
    cv2.line(frame, (cx + size, cy - size), (cx - size, cy + size), PLACEHOLDER_COLOR, thickness=8)

    (text_w, text_h), _ = cv2.getTextSize(PLACEHOLDER_TEXT, cv2.FONT_HERSHEY_SIMPLEX, 1.5, 3)
    cv2.putText(
        frame,
        PLACEHOLDER_TEXT,
        (cx - text_w // 2, cy + size + 30 + text_h),
        cv2.FONT_HERSHEY_SIMPLEX,
        1.5,
        PLACEHOLDER_COLOR,
        3,
        cv2.LINE_AA,
    )
    return frame


def draw_date_overlay(frame: Frame, day: date, style: Optional[OverlayStyle] = None) -> None:
    """Draw the date label box bottom-left, in place."""
    style = style or OverlayStyle()
    height = frame.shape[0]

    x1 = style.box_left
    y1 = height - style.box_bottom
    x2 = x1 + style.box_width
    y2 = y1 + style.box_height

    cv2.rectangle(frame, (x1, y1), (x2, y2), style.box_color, thickness=-1)

    label = format_day_label(day)
    (_, text_h), _ = cv2.getTextSize(label, cv2.FONT_HERSHEY_SIMPLEX, style.font_scale, style.thickness)
    baseline_y = height - style.text_center_from_bottom + text_h // 2
    cv2.putText(
        frame,
        label,
        (style.text_left, baseline_y),
        cv2.FONT_HERSHEY_SIMPLEX,
        style.font_scale,
        style.text_color,
        style.thickness,
        cv2.LINE_AA,
    )


def blend_layers(base: Frame, overlay: Frame, blend_factor: float) -> Frame:
    """Composite overlay over base at alpha = blend_factor."""
    alpha = float(min(1.0, max(0.0, blend_factor)))
    return cv2.addWeighted(overlay, alpha, base, 1.0 - alpha, 0)


def composite(
    primary: Optional[DecodedImage],
    secondary: Optional[tuple[Optional[DecodedImage], float]],
    settings: RenderSettings,
    day: Optional[date],
    policy: Optional[AnchorPolicy] = None,
    overlay_style: Optional[OverlayStyle] = None,
) -> Frame:
    """
    Build one output frame without a render in progress.

    Args:
        primary: Current slide's image, or None if it failed to decode
        secondary: (next image or None, blend factor) while a crossfade is active
        settings: Render settings
        day: Date shown in the overlay (the primary slide's day)
        policy: Face-aware anchor policy
        overlay_style: Date label styling

    Returns:
        A new frame owned by the caller
    """
    compositor = FrameCompositor(settings, policy, overlay_style)
    next_layer = blend_factor = None
    if secondary is not None:
        next_image, blend_factor = secondary
        next_layer = compositor.layer_for(next_image)
    return compositor.build_frame(compositor.layer_for(primary), next_layer, blend_factor, day)


class FrameCompositor:
    """
    Compositor bound to one render's settings.

    A slide's scaled layer is identical for every one of its frames, so the
    most recent layers are cached; only blending and the overlay run per frame.
    """

    CACHE_SIZE = 3

    def __init__(
        self,
        settings: RenderSettings,
        policy: Optional[AnchorPolicy] = None,
        overlay_style: Optional[OverlayStyle] = None,
    ):
        self.settings = settings
        self.policy = policy or AnchorPolicy()
        self.overlay_style = overlay_style or OverlayStyle()
        self._layers: "OrderedDict[str, Frame]" = OrderedDict()

    def layer_for(self, image: Optional[DecodedImage]) -> Frame:
        """Full-frame layer for an image, or the placeholder when it failed to decode."""
        if image is None:
            return render_placeholder(self.settings)
        return render_layer(image, self.settings, self.policy)

    def _cached_layer(self, key: str, image: Optional[DecodedImage]) -> Frame:
        layer = self._layers.get(key)
        if layer is not None:
            self._layers.move_to_end(key)
            return layer

        layer = self.layer_for(image)
        self._layers[key] = layer
        while len(self._layers) > self.CACHE_SIZE:
            self._layers.popitem(last=False)
        return layer

    def build_frame(
        self,
        layer: Frame,
        next_layer: Optional[Frame],
        blend_factor: Optional[float],
        day: Optional[date],
    ) -> Frame:
        """Blend next_layer over a copy of layer, then draw the date label."""
        frame = layer.copy()
        if next_layer is not None and blend_factor is not None:
            frame = blend_layers(frame, next_layer, blend_factor)
        if self.settings.show_date_overlay and day is not None:
            draw_date_overlay(frame, day, self.overlay_style)
        return frame

    def compose(
        self,
        entry: TimelineEntry,
        image: Optional[DecodedImage],
        next_entry: Optional[TimelineEntry] = None,
        next_image: Optional[DecodedImage] = None,
        blend_factor: Optional[float] = None,
    ) -> Frame:
        """Build the frame for entry, optionally crossfading toward next_entry."""
        layer = self._cached_layer(entry.day_key, image)
        next_layer = None
        if next_entry is not None and blend_factor is not None:
            next_layer = self._cached_layer(next_entry.day_key, next_image)
        return self.build_frame(layer, next_layer, blend_factor, entry.day)

    def release(self) -> None:
        """Drop cached layers."""
        self._layers.clear()
