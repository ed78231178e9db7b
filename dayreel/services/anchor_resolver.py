"""
Face-aware anchor resolver - decides where a cover-scaled image is cropped.

Offsets follow canvas drawing convention: the scaled image's top-left corner is
drawn at (offset_x, offset_y), so offsets are always <= 0 and a value of
-excess shows the bottom-most window of the image.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from dayreel.services.timeline import FaceRegion

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AnchorPolicy:
    """
    Vertical framing policy.

    top_bias is an empirical UI choice (people are usually in the upper part of
    a photo), not derived from detection data. When a face region is known and
    honor_face_hint is set, the crop window is centered on it instead.
    """

    top_bias: float = 0.3
    honor_face_hint: bool = True


def clamp_offset(offset: float, excess: float) -> float:
    """Clamp an offset into [-excess, 0] so no background shows at either edge."""
    if excess <= 0:
        return 0.0
    return float(min(0.0, max(-excess, offset)))


def resolve_horizontal_offset(scaled_width: float, target_width: int) -> float:
    """Horizontal placement is always centered."""
    excess = scaled_width - target_width
    if excess <= 0:
        return 0.0
    return clamp_offset(-excess / 2, excess)


def resolve_vertical_offset(
    scaled_height: float,
    target_height: int,
    face_aware: bool,
    face_region: Optional[FaceRegion] = None,
    policy: Optional[AnchorPolicy] = None,
) -> float:
    """
    Compute the vertical draw offset for a cover-scaled image.

    Args:
        scaled_height: Image height after cover scaling
        target_height: Output frame height
        face_aware: Whether face-aware cropping is enabled for this render
        face_region: Optional face hint, normalized to the original image
        policy: Anchor policy (defaults to 30% top bias, honor hints)

    Returns:
        Offset in [-excess, 0]; 0 when there is nothing to crop
    """
    policy = policy or AnchorPolicy()
    excess = scaled_height - target_height
    if excess <= 0:
        return 0.0

    if not face_aware:
        return clamp_offset(-excess / 2, excess)

    if face_region is not None and policy.honor_face_hint:
        # Center the crop window on the face's vertical center
        face_center = face_region.center_y * scaled_height
        offset = target_height / 2 - face_center
        return clamp_offset(offset, excess)

    return clamp_offset(-(excess * policy.top_bias), excess)
