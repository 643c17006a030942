"""
Rotation and mirroring.

Quarter turns and flips are exact pixel permutations. Arbitrary angles rotate
about the center onto a canvas grown to fit the whole image; uncovered
corners are black, or transparent when the image has alpha.
"""

from __future__ import annotations

import math

import cv2
import numpy as np

from app.errors import InvalidParameterError
from app.models.images import RotateOperation

MAX_CUSTOM_ANGLE = 180.0

QUARTER_TURNS = {
    90: cv2.ROTATE_90_CLOCKWISE,
    180: cv2.ROTATE_180,
    270: cv2.ROTATE_90_COUNTERCLOCKWISE,
}


def validate_angle(angle: object) -> float:
    if isinstance(angle, bool) or not isinstance(angle, (int, float)) or not math.isfinite(angle):
        raise InvalidParameterError(f"Custom angle must be a number, got {angle!r}.")
    if not -MAX_CUSTOM_ANGLE <= angle <= MAX_CUSTOM_ANGLE:
        raise InvalidParameterError("Custom angle must be between -180 and 180 degrees")
    return float(angle)


def rotate(image: np.ndarray, angle: float) -> np.ndarray:
    """Rotate clockwise by `angle` degrees."""
    turn = angle % 360
    if turn == 0:
        return image
    if turn in QUARTER_TURNS:
        return cv2.rotate(image, QUARTER_TURNS[int(turn)])

    height, width = image.shape[:2]
    center = (width / 2.0, height / 2.0)
    # OpenCV angles are counter-clockwise.
    matrix = cv2.getRotationMatrix2D(center, -angle, 1.0)
    cos, sin = abs(matrix[0, 0]), abs(matrix[0, 1])
    new_width = max(1, int(round(height * sin + width * cos)))
    new_height = max(1, int(round(height * cos + width * sin)))
    matrix[0, 2] += new_width / 2.0 - center[0]
    matrix[1, 2] += new_height / 2.0 - center[1]

    channels = image.shape[2] if image.ndim == 3 else 1
    return cv2.warpAffine(
        image,
        matrix,
        (new_width, new_height),
        flags=cv2.INTER_LINEAR,
        borderMode=cv2.BORDER_CONSTANT,
        borderValue=(0,) * channels,
    )


def rotate_flip(
    image: np.ndarray,
    operation: RotateOperation,
    custom_angle: float = 0.0,
    flip_horizontal: bool = False,
    flip_vertical: bool = False,
) -> np.ndarray:
    """Apply `operation`, then any extra mirroring."""
    if operation == RotateOperation.ROTATE_90:
        output = rotate(image, 90)
    elif operation == RotateOperation.ROTATE_180:
        output = rotate(image, 180)
    elif operation == RotateOperation.ROTATE_270:
        output = rotate(image, 270)
    elif operation == RotateOperation.FLIP_HORIZONTAL:
        output = cv2.flip(image, 1)
    elif operation == RotateOperation.FLIP_VERTICAL:
        output = cv2.flip(image, 0)
    else:
        output = rotate(image, custom_angle)

    if flip_horizontal:
        output = cv2.flip(output, 1)
    if flip_vertical:
        output = cv2.flip(output, 0)
    return output
