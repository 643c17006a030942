from __future__ import annotations

import logging

from app.models.images import (
    ExtensionStrategy,
    ImageDimensions,
    Padding,
    PlanKind,
    Region,
    StrategyType,
    TransformPlan,
)

logger = logging.getLogger(__name__)


def _axis_geometry(original: int, target: int) -> tuple[int, int, int, int]:
    """
    Resolve one axis into (crop_offset, crop_size, pad_before, pad_after).

    A shrinking axis is cropped around its center; a growing axis keeps the
    whole original and splits the extra pixels evenly, with the odd pixel
    going after the image.
    """
    if target <= original:
        return (original - target) // 2, target, 0, 0
    pad = target - original
    before = pad // 2
    return 0, original, before, pad - before


def select_plan(
    original: ImageDimensions,
    target: ImageDimensions,
    requested: ExtensionStrategy,
    ai_available: bool = True,
) -> TransformPlan:
    """
    Decide how the target canvas gets filled.

    - Target fits within the original on both axes: crop-only, whatever was
      requested. Cropping never invents pixels.
    - Otherwise AI extension when it was requested and a client is wired.
    - Otherwise edge extension, executed locally.
    """
    x, crop_w, pad_left, pad_right = _axis_geometry(original.width, target.width)
    y, crop_h, pad_top, pad_bottom = _axis_geometry(original.height, target.height)

    crop = Region(x=x, y=y, width=crop_w, height=crop_h)
    padding = Padding(left=pad_left, right=pad_right, top=pad_top, bottom=pad_bottom)

    if target.fits_within(original):
        kind = PlanKind.CROP_ONLY
    elif requested.type == StrategyType.AI and ai_available:
        kind = PlanKind.AI_EXTEND
    else:
        kind = PlanKind.EDGE_EXTEND

    logger.debug(
        "Planned %s for %s -> %s (crop=%s, padding=%s)",
        kind.value,
        original,
        target,
        crop,
        padding,
    )
    return TransformPlan(kind=kind, original=original, target=target, crop=crop, padding=padding)
