import asyncio
import base64
import binascii
import logging
import re
import time
from typing import Callable, TypeVar

from fastapi import APIRouter, Depends, Request, Response
from fastapi.concurrency import run_in_threadpool

from app.api.v1.schemas import (
    ApiResponse,
    BatchProcessRequestBody,
    BlobDeleteRequestBody,
    CompressRequestBody,
    ConvertFormatRequestBody,
    CropRequestBody,
    DimensionsRequestBody,
    ImageSource,
    ProcessedImageData,
    ProcessRequestBody,
    RotateFlipRequestBody,
    UploadTokenRequestBody,
)
from app.config import Settings, get_settings
from app.errors import InvalidParameterError, ProcessingError
from app.models.images import (
    ExtensionStrategy,
    ImageDimensions,
    ImageProcessingOptions,
    OutputFormat,
    ProcessedImage,
    Region,
)
from app.services.blob_store import BlobStore, UploadConstraints, get_blob_store
from app.services.normalizer import FILE_EXTENSIONS
from app.services.pipeline import ImageReframer, ProcessRequest, get_reframer

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1")

T = TypeVar("T")

DATA_URI_PREFIX = re.compile(r"^data:[^;,]*;base64,", re.IGNORECASE)


def decode_image_data(image_data: str) -> bytes:
    """Decode base64 image data, with or without a `data:` URI prefix."""
    payload = DATA_URI_PREFIX.sub("", image_data.strip(), count=1)
    try:
        buffer = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise InvalidParameterError("Image data is not valid base64.") from exc
    if not buffer:
        raise InvalidParameterError("No image data provided.")
    return buffer


def encode_image_data(image: ProcessedImage) -> str:
    fmt = OutputFormat.parse(image.metadata.format)
    mime = "image/svg+xml" if fmt == OutputFormat.SVG else f"image/{fmt.value}"
    return f"data:{mime};base64,{base64.b64encode(image.buffer).decode('ascii')}"


def output_filename(suffix: str, fmt: str) -> str:
    extension = FILE_EXTENSIONS[OutputFormat.parse(fmt)]
    return f"image_{suffix}_{int(time.time() * 1000)}.{extension}"


def image_response(image: ProcessedImage, suffix: str) -> ApiResponse:
    data = ProcessedImageData.from_processed(
        image,
        image_data=encode_image_data(image),
        filename=output_filename(suffix, image.metadata.format),
    )
    return ApiResponse(success=True, data=data.model_dump(by_alias=True, exclude_none=True))


async def run_bounded(settings: Settings, func: Callable[..., T], *args, **kwargs) -> T:
    """Run blocking pipeline work in the threadpool under the request deadline."""
    try:
        return await asyncio.wait_for(
            run_in_threadpool(func, *args, **kwargs),
            timeout=settings.request_timeout_seconds,
        )
    except asyncio.TimeoutError as exc:
        logger.error("Request exceeded %.0fs deadline", settings.request_timeout_seconds)
        raise ProcessingError(
            f"Processing timed out after {settings.request_timeout_seconds:.0f} seconds."
        ) from exc


def load_source(source: ImageSource, store: BlobStore) -> bytes:
    if source.image_data:
        return decode_image_data(source.image_data)
    return store.fetch(source.blob_url)


def release_source(source: ImageSource, store: BlobStore) -> None:
    if source.blob_url and not source.image_data:
        store.delete(source.blob_url)


def to_process_request(body: ProcessRequestBody, buffer: bytes) -> ProcessRequest:
    target = ImageDimensions(body.target_dimensions.width, body.target_dimensions.height)
    original = None
    if body.original_dimensions is not None:
        original = ImageDimensions(body.original_dimensions.width, body.original_dimensions.height)
    return ProcessRequest(
        buffer=buffer,
        original_dimensions=original,
        options=ImageProcessingOptions(
            target_dimensions=target,
            quality=body.quality,
            format=OutputFormat.parse(body.format),
        ),
        strategy=ExtensionStrategy(type=body.strategy.type, fallback=body.strategy.fallback),
    )


@router.get("/health", tags=["health"])
async def health_check(reframer: ImageReframer = Depends(get_reframer)) -> dict:
    """API v1 health check endpoint."""
    return {
        "status": "ok",
        "api_version": "v1",
        "ai_available": reframer.ai_available,
        "compression_enabled": reframer.normalizer.compression_enabled,
    }


@router.post(
    "/process",
    response_model=ApiResponse,
    response_model_exclude_none=True,
    tags=["images"],
    summary="Reframe an image onto a new canvas size",
)
async def process_image(
    body: ProcessRequestBody,
    reframer: ImageReframer = Depends(get_reframer),
    store: BlobStore = Depends(get_blob_store),
    settings: Settings = Depends(get_settings),
) -> ApiResponse:
    """
    Crop and/or extend an image to `targetDimensions`.

    Axes where the target is smaller are center-cropped; axes where it is
    larger are extended with AI outpainting, or by replicating edge pixels when
    AI is unavailable or fails (`fallbackUsed` is set in that case).
    """
    buffer = load_source(body, store)
    try:
        request = to_process_request(body, buffer)
        result = await run_bounded(
            settings,
            reframer.process,
            request.buffer,
            request.original_dimensions,
            request.options.target_dimensions,
            request.options,
            request.strategy,
        )
    finally:
        release_source(body, store)
    return image_response(result, "expanded")


@router.post(
    "/process/batch",
    response_model=ApiResponse,
    response_model_exclude_none=True,
    tags=["images"],
    summary="Reframe several images independently",
)
async def process_batch(
    body: BatchProcessRequestBody,
    reframer: ImageReframer = Depends(get_reframer),
    store: BlobStore = Depends(get_blob_store),
    settings: Settings = Depends(get_settings),
) -> ApiResponse:
    """
    Each item succeeds or fails on its own; `data.results` keeps input order.
    The envelope is successful if the batch ran, even when items failed.
    """
    requests = []
    try:
        for item in body.items:
            requests.append(to_process_request(item, load_source(item, store)))
        outcomes = await run_bounded(settings, reframer.process_batch, requests)
    finally:
        for item in body.items:
            release_source(item, store)

    results = []
    for outcome in outcomes:
        if outcome.success:
            results.append(image_response(outcome.image, "expanded").model_dump(exclude_none=True))
        else:
            results.append(ApiResponse(success=False, error=outcome.error.message).model_dump(exclude_none=True))
    return ApiResponse(success=True, data={"results": results})


@router.post(
    "/convert-format",
    response_model=ApiResponse,
    response_model_exclude_none=True,
    tags=["images"],
    summary="Convert an image to another format",
)
async def convert_format(
    body: ConvertFormatRequestBody,
    reframer: ImageReframer = Depends(get_reframer),
    settings: Settings = Depends(get_settings),
) -> ApiResponse:
    buffer = decode_image_data(body.image_data)
    target_format = OutputFormat.parse(body.target_format)
    result = await run_bounded(settings, reframer.convert_format, buffer, target_format, body.quality)
    return image_response(result, f"converted-{target_format.value}")


@router.post(
    "/process-image",
    response_model=ApiResponse,
    response_model_exclude_none=True,
    tags=["images"],
    summary="Crop an explicit region out of an image",
)
async def crop_image(
    body: CropRequestBody,
    reframer: ImageReframer = Depends(get_reframer),
    store: BlobStore = Depends(get_blob_store),
    settings: Settings = Depends(get_settings),
) -> ApiResponse:
    buffer = load_source(body, store)
    region = Region(x=body.crop_x, y=body.crop_y, width=body.crop_width, height=body.crop_height)
    try:
        result = await run_bounded(settings, reframer.crop, buffer, region, body.format, body.quality)
    finally:
        release_source(body, store)
    return image_response(result, "cropped")


@router.post(
    "/rotate-flip",
    response_model=ApiResponse,
    response_model_exclude_none=True,
    tags=["images"],
    summary="Rotate or mirror an image",
)
async def rotate_flip_image(
    body: RotateFlipRequestBody,
    reframer: ImageReframer = Depends(get_reframer),
    store: BlobStore = Depends(get_blob_store),
    settings: Settings = Depends(get_settings),
) -> ApiResponse:
    """Rotations are clockwise; `custom` rotates by `customAngle` onto a canvas that fits."""
    buffer = load_source(body, store)
    try:
        result = await run_bounded(
            settings,
            reframer.rotate_flip,
            buffer,
            body.operation,
            body.custom_angle,
            body.format,
            body.quality,
            body.flip_horizontal,
            body.flip_vertical,
        )
    finally:
        release_source(body, store)
    return image_response(result, "transformed")


@router.post(
    "/compress",
    response_model=ApiResponse,
    response_model_exclude_none=True,
    tags=["images"],
    summary="Re-encode and compress an image",
)
async def compress_image(
    body: CompressRequestBody,
    reframer: ImageReframer = Depends(get_reframer),
    settings: Settings = Depends(get_settings),
) -> ApiResponse:
    buffer = decode_image_data(body.image_data)
    result = await run_bounded(settings, reframer.compress, buffer, body.format, body.quality)
    return image_response(result, "compressed")


@router.post(
    "/dimensions",
    response_model=ApiResponse,
    response_model_exclude_none=True,
    tags=["images"],
    summary="Read an image's pixel dimensions",
)
async def image_dimensions(
    body: DimensionsRequestBody,
    reframer: ImageReframer = Depends(get_reframer),
) -> ApiResponse:
    dims = reframer.get_image_dimensions(decode_image_data(body.image_data))
    return ApiResponse(success=True, data={"width": dims.width, "height": dims.height})


@router.post(
    "/blob/upload-token",
    response_model=ApiResponse,
    response_model_exclude_none=True,
    tags=["blobs"],
    summary="Authorize a direct upload for a large image",
)
async def create_upload_token(
    body: UploadTokenRequestBody,
    store: BlobStore = Depends(get_blob_store),
    settings: Settings = Depends(get_settings),
) -> ApiResponse:
    constraints = UploadConstraints(max_bytes=settings.blob_max_upload_bytes)
    if body.content_type and body.content_type not in constraints.allowed_types:
        raise InvalidParameterError(
            f"Content type {body.content_type!r} is not allowed. "
            "Only JPG, PNG, WebP, and SVG are supported."
        )
    token = store.issue_upload_token(constraints, filename=body.filename)
    return ApiResponse(success=True, data={"url": token.url, "token": token.token})


@router.put(
    "/blob/upload/{token}",
    response_model=ApiResponse,
    response_model_exclude_none=True,
    tags=["blobs"],
    summary="Upload raw image bytes against a token",
)
async def upload_blob(
    token: str,
    request: Request,
    store: BlobStore = Depends(get_blob_store),
) -> ApiResponse:
    data = await request.body()
    url = store.store_upload(token, data, request.headers.get("content-type"))
    return ApiResponse(success=True, data={"url": url})


@router.get("/blobs/{blob_id}", tags=["blobs"], summary="Download a stored blob")
async def get_blob(blob_id: str, store: BlobStore = Depends(get_blob_store)) -> Response:
    data, content_type = store.get(blob_id)
    return Response(content=data, media_type=content_type)


@router.post(
    "/blob/delete",
    response_model=ApiResponse,
    response_model_exclude_none=True,
    tags=["blobs"],
    summary="Delete a stored blob",
)
async def delete_blob(
    body: BlobDeleteRequestBody,
    store: BlobStore = Depends(get_blob_store),
) -> ApiResponse:
    store.delete(body.url)
    return ApiResponse(success=True)
