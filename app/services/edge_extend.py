"""
Deterministic edge-replication fallback.

This path must always be able to finish a pipeline run on its own, so it
never talks to a remote service: the outermost row/column of pixels is
stretched outward with OpenCV's `BORDER_REPLICATE`. Identical input and plan
always produce identical bytes.
"""

from __future__ import annotations

import logging

import cv2
import numpy as np

from app.errors import InvalidParameterError
from app.models.images import ImageMetadata, ProcessedImage, TransformPlan
from app.services.dimensions import decode
from app.services.normalizer import encode_lossless

logger = logging.getLogger(__name__)


def crop_to_plan(image: np.ndarray, plan: TransformPlan) -> np.ndarray:
    """Cut the shrinking axes of `image` down to the plan's crop region."""
    h, w = image.shape[:2]
    if (w, h) != (plan.original.width, plan.original.height):
        raise InvalidParameterError(
            f"Plan was computed for {plan.original} but the image is {w}x{h}."
        )
    crop = plan.crop
    return image[crop.y : crop.y + crop.height, crop.x : crop.x + crop.width]


def replicate_edges(image: np.ndarray, plan: TransformPlan) -> np.ndarray:
    """Pad an already-cropped image out to the target by replicating its borders."""
    pad = plan.padding
    if pad.is_empty:
        return image
    return cv2.copyMakeBorder(
        image,
        top=pad.top,
        bottom=pad.bottom,
        left=pad.left,
        right=pad.right,
        borderType=cv2.BORDER_REPLICATE,
    )


def apply_plan(image: np.ndarray, plan: TransformPlan) -> np.ndarray:
    """Crop then pad; the result is exactly `plan.target` in size."""
    return replicate_edges(crop_to_plan(image, plan), plan)


def extend(buffer: bytes, plan: TransformPlan) -> ProcessedImage:
    """
    Execute a plan locally.

    Works for crop-only plans too (the padding is simply empty). The result is
    PNG-encoded so the normalizer receives a lossless intermediate. Only
    `DecodeError` is expected for malformed input.
    """
    image = decode(buffer)
    output = apply_plan(image, plan)

    logger.info(
        "Edge-extended %s -> %s (padding l=%d r=%d t=%d b=%d)",
        plan.original,
        plan.target,
        plan.padding.left,
        plan.padding.right,
        plan.padding.top,
        plan.padding.bottom,
    )

    encoded = encode_lossless(output)
    return ProcessedImage(
        buffer=encoded,
        metadata=ImageMetadata(
            width=output.shape[1],
            height=output.shape[0],
            format="png",
            size=len(encoded),
        ),
    )
