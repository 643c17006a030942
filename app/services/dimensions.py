"""
Image decoding and dimension analysis.

Raster formats are read with Pillow and handed to the rest of the pipeline as
OpenCV-ordered numpy arrays (BGR, or BGRA when the source carries alpha).
SVG sizes are read straight from the markup; pixels are only produced (via
CairoSVG) when a caller actually needs them.
"""

from __future__ import annotations

import logging
import re
from io import BytesIO

import cv2
import numpy as np
from PIL import Image, UnidentifiedImageError

from app.errors import DecodeError
from app.models.images import ImageDimensions

logger = logging.getLogger(__name__)

SUPPORTED_RASTER_FORMATS = {"JPEG": "jpeg", "PNG": "png", "WEBP": "webp"}

_SVG_ROOT = re.compile(rb"<svg\b[^>]*>", re.IGNORECASE | re.DOTALL)
_SVG_LENGTH = r'\b{name}\s*=\s*["\']\s*([\d.]+)\s*(?:px)?\s*["\']'
_SVG_VIEWBOX = re.compile(
    r'\bviewBox\s*=\s*["\']\s*[-\d.]+[\s,]+[-\d.]+[\s,]+([\d.]+)[\s,]+([\d.]+)\s*["\']',
    re.IGNORECASE,
)


def is_svg(buffer: bytes) -> bool:
    """Check the first bytes for an SVG or XML prologue."""
    header = buffer[:256].lstrip()
    return header.startswith(b"<?xml") or b"<svg" in header.lower()


def detect_format(buffer: bytes) -> str:
    """Return the lower-case format name ("jpeg", "png", "webp" or "svg")."""
    if not buffer:
        raise DecodeError("Image buffer is empty.")
    if is_svg(buffer):
        return "svg"
    try:
        with Image.open(BytesIO(buffer)) as image:
            pil_format = image.format
    except (UnidentifiedImageError, OSError) as exc:
        raise DecodeError("Buffer is not a recognizable image.") from exc

    fmt = SUPPORTED_RASTER_FORMATS.get(pil_format or "")
    if fmt is None:
        raise DecodeError(
            f"Unsupported image format {pil_format!r}. Please upload JPEG, PNG, WebP, or SVG files."
        )
    return fmt


def _svg_dimensions(buffer: bytes) -> ImageDimensions:
    match = _SVG_ROOT.search(buffer[:65536])
    if match is None:
        raise DecodeError("SVG document has no <svg> root element.")
    root = match.group(0).decode("utf-8", errors="replace")

    width = re.search(_SVG_LENGTH.format(name="width"), root)
    height = re.search(_SVG_LENGTH.format(name="height"), root)
    if width and height:
        values = (float(width.group(1)), float(height.group(1)))
    else:
        viewbox = _SVG_VIEWBOX.search(root)
        if viewbox is None:
            raise DecodeError("SVG document does not declare its size.")
        values = (float(viewbox.group(1)), float(viewbox.group(2)))

    w, h = (int(round(v)) for v in values)
    if w <= 0 or h <= 0:
        raise DecodeError(f"SVG document declares an empty canvas ({w}x{h}).")
    return ImageDimensions(width=w, height=h)


def analyze(buffer: bytes) -> ImageDimensions:
    """
    Report the pixel dimensions of an encoded image.

    Only the header is parsed for raster formats. Raises `DecodeError` for
    anything that is not JPEG, PNG, WebP or SVG.
    """
    fmt = detect_format(buffer)
    if fmt == "svg":
        return _svg_dimensions(buffer)

    with Image.open(BytesIO(buffer)) as image:
        width, height = image.size
    return ImageDimensions(width=width, height=height)


def _rasterize_svg(buffer: bytes) -> bytes:
    try:
        # cairosvg needs the native cairo library at import time.
        import cairosvg
    except (ImportError, OSError) as exc:
        raise DecodeError("SVG rasterization is not available on this server.") from exc

    dims = _svg_dimensions(buffer)
    try:
        return cairosvg.svg2png(
            bytestring=buffer, output_width=dims.width, output_height=dims.height
        )
    except Exception as exc:  # noqa: BLE001
        raise DecodeError(f"Failed to rasterize SVG: {exc}") from exc


def decode(buffer: bytes) -> np.ndarray:
    """
    Decode an image into an OpenCV array.

    Images with transparency come back as BGRA, everything else as BGR.
    """
    fmt = detect_format(buffer)
    if fmt == "svg":
        buffer = _rasterize_svg(buffer)

    try:
        with Image.open(BytesIO(buffer)) as image:
            image.load()
            has_alpha = image.mode in ("RGBA", "LA", "PA") or (
                image.mode == "P" and "transparency" in image.info
            )
            if has_alpha:
                rgba = np.array(image.convert("RGBA"))
                return cv2.cvtColor(rgba, cv2.COLOR_RGBA2BGRA)
            rgb = np.array(image.convert("RGB"))
            return cv2.cvtColor(rgb, cv2.COLOR_RGB2BGR)
    except (UnidentifiedImageError, OSError, Image.DecompressionBombError) as exc:
        logger.error("Failed to decode %s image: %s", fmt, exc)
        raise DecodeError(f"Failed to decode {fmt} image: {exc}") from exc
