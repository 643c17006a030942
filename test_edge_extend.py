"""Tests for the local edge-replication path."""

import numpy as np
import pytest

from app.errors import InvalidParameterError
from app.models.images import ExtensionStrategy, ImageDimensions, StrategyType
from app.services import edge_extend
from app.services.dimensions import analyze, decode
from app.services.planner import select_plan
from conftest import make_image_bytes

EDGE = ExtensionStrategy(type=StrategyType.EDGE_EXTEND)


def test_extend_reaches_target_size(png_100x50):
    plan = select_plan(ImageDimensions(100, 50), ImageDimensions(160, 90), EDGE)
    result = edge_extend.extend(png_100x50, plan)

    assert (result.metadata.width, result.metadata.height) == (160, 90)
    assert result.metadata.format == "png"
    dims = analyze(result.buffer)
    assert (dims.width, dims.height) == (160, 90)


def test_extend_is_deterministic(png_100x50):
    plan = select_plan(ImageDimensions(100, 50), ImageDimensions(301, 77), EDGE)
    first = edge_extend.extend(png_100x50, plan)
    second = edge_extend.extend(png_100x50, plan)
    assert first.buffer == second.buffer


def test_padding_replicates_border_pixels():
    image = np.zeros((4, 4, 3), dtype=np.uint8)
    image[:, 0] = (10, 20, 30)
    image[:, -1] = (200, 100, 50)
    plan = select_plan(ImageDimensions(4, 4), ImageDimensions(10, 4), EDGE)

    output = edge_extend.apply_plan(image, plan)

    assert output.shape == (4, 10, 3)
    assert (output[:, :3] == (10, 20, 30)).all()
    assert (output[:, -3:] == (200, 100, 50)).all()


def test_crop_only_plan_keeps_center_pixels():
    image = np.arange(6 * 6 * 3, dtype=np.uint8).reshape(6, 6, 3)
    plan = select_plan(ImageDimensions(6, 6), ImageDimensions(2, 2), EDGE)

    output = edge_extend.apply_plan(image, plan)

    assert np.array_equal(output, image[2:4, 2:4])


def test_alpha_channel_survives_extension():
    buffer = make_image_bytes(10, 10, "PNG", mode="RGBA")
    plan = select_plan(ImageDimensions(10, 10), ImageDimensions(20, 20), EDGE)

    result = edge_extend.extend(buffer, plan)

    assert decode(result.buffer).shape == (20, 20, 4)


def test_plan_for_a_different_image_is_rejected(png_100x50):
    plan = select_plan(ImageDimensions(99, 50), ImageDimensions(200, 100), EDGE)
    with pytest.raises(InvalidParameterError):
        edge_extend.extend(png_100x50, plan)
