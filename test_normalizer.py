"""Tests for output encoding and recompression handling."""

from unittest.mock import MagicMock

import pytest

from app.errors import CompressionBackendError, InvalidParameterError
from app.models.images import OutputFormat
from app.services.dimensions import analyze, detect_format
from app.services.normalizer import FormatNormalizer, png_compress_level, validate_quality
from conftest import make_image_bytes


@pytest.mark.parametrize("quality", [0, 101, -5, 80.0, "80", True, None])
def test_invalid_quality_is_rejected(quality):
    with pytest.raises(InvalidParameterError):
        validate_quality(quality)


@pytest.mark.parametrize("quality", [1, 50, 100])
def test_valid_quality_passes_through(quality):
    assert validate_quality(quality) == quality


def test_png_compress_level_mapping():
    assert png_compress_level(1) == 9
    assert png_compress_level(100) == 0
    assert 0 <= png_compress_level(50) <= 9


@pytest.mark.parametrize("fmt", ["jpeg", "jpg", "png", "webp", "svg"])
def test_normalize_preserves_dimensions(fmt, png_100x50):
    result = FormatNormalizer().normalize(png_100x50, fmt, 80)

    expected = OutputFormat.parse(fmt).value
    assert result.metadata.format == expected
    assert (result.metadata.width, result.metadata.height) == (100, 50)
    assert result.metadata.size == len(result.buffer)
    assert detect_format(result.buffer) == expected
    dims = analyze(result.buffer)
    assert (dims.width, dims.height) == (100, 50)


def test_unknown_format_is_rejected(png_100x50):
    with pytest.raises(InvalidParameterError):
        FormatNormalizer().normalize(png_100x50, "gif", 80)


def test_lower_jpeg_quality_is_smaller():
    buffer = make_image_bytes(400, 300, "PNG")
    normalizer = FormatNormalizer()
    high = normalizer.normalize(buffer, "jpeg", 95)
    low = normalizer.normalize(buffer, "jpeg", 10)
    assert low.metadata.size < high.metadata.size


def test_compressor_output_is_used(png_100x50):
    compressed = make_image_bytes(100, 50, "JPEG")
    compressor = MagicMock()
    compressor.get_optimal_quality.return_value = 85
    compressor.compress_image.return_value = compressed

    result = FormatNormalizer(compressor).normalize(png_100x50, "jpeg", 80)

    assert result.buffer == compressed
    assert not result.compression_skipped
    kwargs = compressor.compress_image.call_args.kwargs
    assert kwargs["quality"] == 85
    assert kwargs["fmt"] == "jpeg"
    assert kwargs["filename"].endswith(".jpg")


def test_compressor_failure_keeps_local_encoding(png_100x50):
    compressor = MagicMock()
    compressor.get_optimal_quality.return_value = 85
    compressor.compress_image.side_effect = CompressionBackendError("boom")

    result = FormatNormalizer(compressor).normalize(png_100x50, "jpeg", 80)

    assert result.compression_skipped
    assert detect_format(result.buffer) == "jpeg"
    assert (result.metadata.width, result.metadata.height) == (100, 50)


def test_compressor_changing_dimensions_is_a_failure(png_100x50):
    compressor = MagicMock()
    compressor.get_optimal_quality.return_value = 85
    compressor.compress_image.return_value = make_image_bytes(50, 25, "JPEG")

    result = FormatNormalizer(compressor).normalize(png_100x50, "jpeg", 80)

    assert result.compression_skipped
    assert analyze(result.buffer).width == 100


def test_compressor_not_called_when_disabled_or_svg(png_100x50):
    compressor = MagicMock()
    normalizer = FormatNormalizer(compressor)

    normalizer.normalize(png_100x50, "png", 80, compress=False)
    normalizer.normalize(png_100x50, "svg", 80)

    compressor.compress_image.assert_not_called()


def test_backend_quality_overrides_recommendation(png_100x50):
    compressor = MagicMock()
    compressor.compress_image.return_value = make_image_bytes(100, 50, "JPEG")

    FormatNormalizer(compressor).normalize(png_100x50, "jpeg", 70, backend_quality=70)

    compressor.get_optimal_quality.assert_not_called()
    assert compressor.compress_image.call_args.kwargs["quality"] == 70
