"""HTTP-level tests for the v1 API using FastAPI's TestClient."""

import base64
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from app.config import get_settings
from app.errors import AIBackendError
from app.main import create_app
from app.services.blob_store import BlobStore, UploadConstraints, get_blob_store
from app.services.dimensions import analyze
from app.services.pipeline import ImageReframer, get_reframer


def _b64(buffer: bytes, mime: str = "image/jpeg") -> str:
    return f"data:{mime};base64,{base64.b64encode(buffer).decode('ascii')}"


def _decode(image_data: str) -> bytes:
    return base64.b64decode(image_data.split(",", 1)[1])


@pytest.fixture
def store(settings):
    return BlobStore(base_dir=settings.storage_dir, public_base_url=settings.public_base_url)


@pytest.fixture
def outpainting_client():
    client = MagicMock()
    client.extend.side_effect = AIBackendError("Replicate request failed: unreachable")
    return client


@pytest.fixture
def client(settings, store, outpainting_client):
    app = create_app()
    reframer = ImageReframer(settings, outpainting_client=outpainting_client)
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_reframer] = lambda: reframer
    app.dependency_overrides[get_blob_store] = lambda: store
    return TestClient(app)


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}

    body = client.get("/api/v1/health").json()
    assert body["status"] == "ok"
    assert body["api_version"] == "v1"
    assert body["ai_available"] is True


def test_process_with_ai_failure_reports_fallback(client, jpeg_800x600):
    response = client.post(
        "/api/v1/process",
        json={
            "imageData": _b64(jpeg_800x600),
            "targetDimensions": {"width": 1920, "height": 1080},
            "quality": 80,
            "format": "jpeg",
            "strategy": {"type": "ai"},
        },
    )

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    data = body["data"]
    assert data["fallbackUsed"] is True
    assert "compressionSkipped" not in data
    assert data["metadata"]["width"] == 1920
    assert data["metadata"]["height"] == 1080
    assert data["metadata"]["format"] == "jpeg"
    assert data["filename"].startswith("image_expanded_")
    assert data["filename"].endswith(".jpg")
    assert data["imageData"].startswith("data:image/jpeg;base64,")
    assert analyze(_decode(data["imageData"])).width == 1920


def test_process_crop_only_has_no_fallback_flag(client, jpeg_1920x1080, outpainting_client):
    response = client.post(
        "/api/v1/process",
        json={"imageData": _b64(jpeg_1920x1080), "targetDimensions": {"width": 800, "height": 600}},
    )

    data = response.json()["data"]
    assert "fallbackUsed" not in data
    assert (data["metadata"]["width"], data["metadata"]["height"]) == (800, 600)
    outpainting_client.extend.assert_not_called()


def test_process_accepts_raw_base64_without_prefix(client, png_100x50):
    response = client.post(
        "/api/v1/process",
        json={
            "imageData": base64.b64encode(png_100x50).decode("ascii"),
            "targetDimensions": {"width": 50, "height": 50},
            "format": "png",
        },
    )
    assert response.status_code == 200
    assert response.json()["data"]["filename"].endswith(".png")


def test_process_rejects_bad_quality(client, jpeg_800x600):
    response = client.post(
        "/api/v1/process",
        json={
            "imageData": _b64(jpeg_800x600),
            "targetDimensions": {"width": 100, "height": 100},
            "quality": 101,
        },
    )
    assert response.status_code == 400
    assert response.json()["success"] is False
    assert "Quality" in response.json()["error"]


def test_process_rejects_invalid_base64(client):
    response = client.post(
        "/api/v1/process",
        json={"imageData": "data:image/png;base64,@@@", "targetDimensions": {"width": 1, "height": 1}},
    )
    assert response.status_code == 400
    assert response.json() == {"success": False, "error": "Image data is not valid base64."}


def test_process_requires_image_source(client):
    response = client.post("/api/v1/process", json={"targetDimensions": {"width": 10, "height": 10}})
    assert response.status_code == 400
    assert response.json()["success"] is False


def test_process_undecodable_image_is_server_error(client):
    response = client.post(
        "/api/v1/process",
        json={"imageData": _b64(b"not an image"), "targetDimensions": {"width": 10, "height": 10}},
    )
    assert response.status_code == 500
    assert response.json()["success"] is False


def test_oversized_image_is_413(client, settings):
    oversized = b"\x00" * (settings.max_upload_bytes + 1)
    response = client.post(
        "/api/v1/process",
        json={"imageData": _b64(oversized), "targetDimensions": {"width": 10, "height": 10}},
    )
    assert response.status_code == 413
    assert "smaller than 10MB" in response.json()["error"]


def test_convert_format(client, jpeg_800x600):
    response = client.post(
        "/api/v1/convert-format",
        json={"imageData": _b64(jpeg_800x600), "targetFormat": "webp", "quality": 90},
    )

    data = response.json()["data"]
    assert data["metadata"]["format"] == "webp"
    assert (data["metadata"]["width"], data["metadata"]["height"]) == (800, 600)
    assert data["filename"].startswith("image_converted-webp_")
    assert data["imageData"].startswith("data:image/webp;base64,")


def test_convert_format_rejects_unknown_format(client, jpeg_800x600):
    response = client.post(
        "/api/v1/convert-format",
        json={"imageData": _b64(jpeg_800x600), "targetFormat": "gif"},
    )
    assert response.status_code == 400


def test_manual_crop(client, jpeg_800x600):
    response = client.post(
        "/api/v1/process-image",
        json={
            "imageData": _b64(jpeg_800x600),
            "cropX": 10,
            "cropY": 20,
            "cropWidth": 300,
            "cropHeight": 200,
            "format": "png",
        },
    )

    data = response.json()["data"]
    assert (data["metadata"]["width"], data["metadata"]["height"]) == (300, 200)
    assert data["filename"].startswith("image_cropped_")


def test_compress_without_backend_reencodes(client, jpeg_800x600):
    response = client.post("/api/v1/compress", json={"imageData": _b64(jpeg_800x600)})

    assert response.status_code == 200
    assert response.json()["data"]["metadata"]["format"] == "jpeg"


def test_dimensions(client, png_100x50):
    response = client.post("/api/v1/dimensions", json={"imageData": _b64(png_100x50, "image/png")})
    assert response.json() == {"success": True, "data": {"width": 100, "height": 50}}


def test_rotate_flip_quarter_turn(client, jpeg_800x600):
    response = client.post(
        "/api/v1/rotate-flip",
        json={"imageData": _b64(jpeg_800x600), "operation": "rotate-90", "format": "png"},
    )

    assert response.status_code == 200
    data = response.json()["data"]
    assert (data["metadata"]["width"], data["metadata"]["height"]) == (600, 800)
    assert data["filename"].startswith("image_transformed_")
    assert data["filename"].endswith(".png")


def test_rotate_flip_custom_angle_with_extra_flip(client, png_100x50):
    response = client.post(
        "/api/v1/rotate-flip",
        json={
            "imageData": _b64(png_100x50, "image/png"),
            "operation": "custom",
            "customAngle": 30,
            "flipHorizontal": True,
        },
    )

    assert response.status_code == 200
    metadata = response.json()["data"]["metadata"]
    assert metadata["width"] > 100
    assert metadata["height"] > 50


@pytest.mark.parametrize(
    "payload",
    [
        {"operation": "custom", "customAngle": 181},
        {"operation": "spin"},
        {"operation": "rotate-90", "quality": 0},
    ],
)
def test_rotate_flip_rejects_bad_parameters(client, jpeg_800x600, payload):
    response = client.post("/api/v1/rotate-flip", json={"imageData": _b64(jpeg_800x600), **payload})

    assert response.status_code == 400
    assert response.json()["success"] is False


def test_unexpected_error_keeps_response_envelope(settings):
    reframer = MagicMock()
    reframer.get_image_dimensions.side_effect = RuntimeError("disk on fire")
    app = create_app()
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_reframer] = lambda: reframer
    client = TestClient(app, raise_server_exceptions=False)

    response = client.post("/api/v1/dimensions", json={"imageData": _b64(b"anything")})

    assert response.status_code == 500
    assert response.json() == {"success": False, "error": "Internal server error: RuntimeError"}


def test_batch_reports_each_item(client, jpeg_800x600):
    target = {"width": 400, "height": 300}
    response = client.post(
        "/api/v1/process/batch",
        json={
            "items": [
                {"imageData": _b64(jpeg_800x600), "targetDimensions": target},
                {"imageData": _b64(b"broken"), "targetDimensions": target},
            ]
        },
    )

    results = response.json()["data"]["results"]
    assert [result["success"] for result in results] == [True, False]
    assert results[0]["data"]["metadata"]["width"] == 400
    assert results[1]["error"]


def test_blob_upload_then_process_deletes_blob(client, store, jpeg_800x600):
    token_response = client.post(
        "/api/v1/blob/upload-token",
        json={"filename": "photo.jpg", "contentType": "image/jpeg"},
    )
    token = token_response.json()["data"]

    upload = client.put(
        f"/api/v1/blob/upload/{token['token']}",
        content=jpeg_800x600,
        headers={"Content-Type": "image/jpeg"},
    )
    blob_url = upload.json()["data"]["url"]
    blob_id = blob_url.rsplit("/", 1)[1]

    fetched = client.get(f"/api/v1/blobs/{blob_id}")
    assert fetched.content == jpeg_800x600
    assert fetched.headers["content-type"] == "image/jpeg"

    response = client.post(
        "/api/v1/process",
        json={"blobUrl": blob_url, "targetDimensions": {"width": 400, "height": 300}},
    )
    assert response.status_code == 200
    assert client.get(f"/api/v1/blobs/{blob_id}").status_code == 400


def test_upload_token_rejects_disallowed_type(client):
    response = client.post(
        "/api/v1/blob/upload-token",
        json={"filename": "anim.gif", "contentType": "image/gif"},
    )
    assert response.status_code == 400


def test_blob_delete(client, store, png_100x50):
    token = store.issue_upload_token(UploadConstraints())
    url = store.store_upload(token.token, png_100x50, "image/png")

    response = client.post("/api/v1/blob/delete", json={"url": url})

    assert response.json() == {"success": True}
    assert list(store.base_dir.iterdir()) == []
