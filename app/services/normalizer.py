"""
Output encoding and optional recompression.

Quality is a 1-100 linear scale mapped onto each codec's native parameter.
When a compression backend is configured, the re-encoded output is sent there
with a size-based quality recommendation; a backend failure never fails the
pipeline, it just leaves the re-encoded bytes in place and flags the result.
"""

from __future__ import annotations

import base64
import logging
from io import BytesIO
from typing import TYPE_CHECKING

import cv2
import numpy as np
from PIL import Image

from app.errors import CompressionBackendError, DecodeError, InvalidParameterError
from app.models.images import ImageMetadata, OutputFormat, ProcessedImage
from app.services.dimensions import analyze, decode

if TYPE_CHECKING:
    from app.services.cloudconvert_client import CloudConvertClient

logger = logging.getLogger(__name__)

SVG_TEMPLATE = (
    '<?xml version="1.0" encoding="UTF-8"?>\n'
    '<svg xmlns="http://www.w3.org/2000/svg" xmlns:xlink="http://www.w3.org/1999/xlink" '
    'width="{width}" height="{height}" viewBox="0 0 {width} {height}">\n'
    '  <image width="{width}" height="{height}" xlink:href="data:image/png;base64,{data}"/>\n'
    "</svg>"
)

FILE_EXTENSIONS = {
    OutputFormat.JPEG: "jpg",
    OutputFormat.PNG: "png",
    OutputFormat.WEBP: "webp",
    OutputFormat.SVG: "svg",
}


def validate_quality(quality: object) -> int:
    """Reject anything but an integer in 1-100. Values are never clamped."""
    if isinstance(quality, bool) or not isinstance(quality, int):
        raise InvalidParameterError(f"Quality must be an integer between 1 and 100, got {quality!r}.")
    if not 1 <= quality <= 100:
        raise InvalidParameterError(f"Quality must be between 1 and 100, got {quality}.")
    return quality


def png_compress_level(quality: int) -> int:
    """Map quality 1..100 onto zlib level 9..0 (higher quality, lighter compression)."""
    return 9 - round((quality - 1) * 9 / 99)


def _to_pil(image: np.ndarray) -> Image.Image:
    if image.ndim == 3 and image.shape[2] == 4:
        return Image.fromarray(cv2.cvtColor(image, cv2.COLOR_BGRA2RGBA))
    return Image.fromarray(cv2.cvtColor(image, cv2.COLOR_BGR2RGB))


def _save(pil_image: Image.Image, fmt: str, **params) -> bytes:
    buffer = BytesIO()
    pil_image.save(buffer, format=fmt, **params)
    return buffer.getvalue()


def encode(image: np.ndarray, fmt: OutputFormat, quality: int) -> bytes:
    """Encode an OpenCV array into the requested format."""
    pil_image = _to_pil(image)

    if fmt == OutputFormat.JPEG:
        return _save(pil_image.convert("RGB"), "JPEG", quality=quality, optimize=True)
    if fmt == OutputFormat.PNG:
        return _save(pil_image, "PNG", compress_level=png_compress_level(quality))
    if fmt == OutputFormat.WEBP:
        return _save(pil_image, "WEBP", quality=quality, method=4)

    # SVG output embeds a PNG rendition.
    png = _save(pil_image, "PNG", compress_level=png_compress_level(quality))
    svg = SVG_TEMPLATE.format(
        width=pil_image.width,
        height=pil_image.height,
        data=base64.b64encode(png).decode("ascii"),
    )
    return svg.encode("utf-8")


def encode_lossless(image: np.ndarray) -> bytes:
    """PNG encoding used for intermediate results between pipeline stages."""
    return _save(_to_pil(image), "PNG", compress_level=6)


class FormatNormalizer:
    """Re-encodes pipeline output and, when configured, recompresses it."""

    def __init__(self, compressor: "CloudConvertClient | None" = None) -> None:
        self._compressor = compressor

    @property
    def compression_enabled(self) -> bool:
        return self._compressor is not None

    def normalize(
        self,
        buffer: bytes,
        fmt: OutputFormat | str,
        quality: int,
        *,
        compress: bool = True,
        backend_quality: int | None = None,
    ) -> ProcessedImage:
        """
        Re-encode `buffer` to `fmt` at `quality`.

        `backend_quality` overrides the size-based recommendation sent to the
        compression backend. The returned image has `compression_skipped` set
        when the backend was consulted and failed.
        """
        quality = validate_quality(quality)
        fmt = OutputFormat.parse(fmt)
        if backend_quality is not None:
            backend_quality = validate_quality(backend_quality)

        image = decode(buffer)
        height, width = image.shape[:2]
        encoded = encode(image, fmt, quality)

        skipped = False
        if compress and self._compressor is not None and fmt != OutputFormat.SVG:
            try:
                encoded = self._recompress(encoded, fmt, width, height, backend_quality)
            except CompressionBackendError as exc:
                logger.warning("Compression backend failed, using uncompressed output: %s", exc)
                skipped = True
            except Exception:  # noqa: BLE001
                logger.exception("Compression backend failed unexpectedly, using uncompressed output")
                skipped = True

        return ProcessedImage(
            buffer=encoded,
            metadata=ImageMetadata(width=width, height=height, format=fmt.value, size=len(encoded)),
            compression_skipped=skipped,
        )

    def _recompress(
        self,
        encoded: bytes,
        fmt: OutputFormat,
        width: int,
        height: int,
        backend_quality: int | None,
    ) -> bytes:
        quality = backend_quality or self._compressor.get_optimal_quality(len(encoded), fmt.value)
        compressed = self._compressor.compress_image(
            encoded,
            filename=f"processed-image.{FILE_EXTENSIONS[fmt]}",
            quality=quality,
            fmt=fmt.value,
        )

        try:
            dims = analyze(compressed)
        except DecodeError as exc:
            raise CompressionBackendError("Compression backend returned an unreadable image.") from exc
        if (dims.width, dims.height) != (width, height):
            raise CompressionBackendError(
                f"Compression backend changed dimensions from {width}x{height} to {dims}."
            )

        logger.info(
            "Recompressed %s output at quality %d: %d -> %d bytes",
            fmt.value,
            quality,
            len(encoded),
            len(compressed),
        )
        return compressed
