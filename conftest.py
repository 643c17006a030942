from io import BytesIO

import numpy as np
import pytest
from PIL import Image

from app.config import Settings

ENV_VARS = (
    "REPLICATE_API_TOKEN",
    "REPLICATE_MODEL",
    "REPLICATE_BASE_URL",
    "AI_TIMEOUT_SECONDS",
    "AI_POLL_INTERVAL_SECONDS",
    "CLOUDCONVERT_API_KEY",
    "CLOUDCONVERT_BASE_URL",
    "COMPRESSION_TIMEOUT_SECONDS",
    "MAX_UPLOAD_BYTES",
    "BLOB_MAX_UPLOAD_BYTES",
    "BLOB_TOKEN_TTL_SECONDS",
    "BLOB_TTL_SECONDS",
    "REQUEST_TIMEOUT_SECONDS",
    "STORAGE_DIR",
    "PUBLIC_BASE_URL",
    "BATCH_MAX_WORKERS",
    "LOG_LEVEL",
)


def make_image_bytes(width: int, height: int, fmt: str = "JPEG", mode: str = "RGB") -> bytes:
    """Synthesize a gradient image so edges and crops are distinguishable."""
    xs = np.linspace(0, 255, width, dtype=np.uint8)
    ys = np.linspace(0, 255, height, dtype=np.uint8)
    pixels = np.zeros((height, width, 3), dtype=np.uint8)
    pixels[..., 0] = xs[np.newaxis, :]
    pixels[..., 1] = ys[:, np.newaxis]
    pixels[..., 2] = 128
    image = Image.fromarray(pixels, "RGB")
    if mode == "RGBA":
        image = image.convert("RGBA")
    buffer = BytesIO()
    image.save(buffer, format=fmt)
    return buffer.getvalue()


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep developer credentials out of the test run."""
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def settings(tmp_path):
    return Settings(storage_dir=tmp_path / "blobs", public_base_url="http://testserver")


@pytest.fixture
def jpeg_800x600():
    return make_image_bytes(800, 600, "JPEG")


@pytest.fixture
def jpeg_1920x1080():
    return make_image_bytes(1920, 1080, "JPEG")


@pytest.fixture
def png_100x50():
    return make_image_bytes(100, 50, "PNG")
