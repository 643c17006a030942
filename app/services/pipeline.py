"""
Reframing pipeline orchestration.

A run walks analyzing -> extending -> optimizing -> completed, reporting each
phase to an optional observer. Two failures are absorbed instead of surfaced:

- AI outpainting failure: the whole pipeline runs again with edge-extend and
  the result is flagged `fallback_used`.
- Compression backend failure: the re-encoded output is kept and flagged
  `compression_skipped` (handled inside the normalizer).

Decode failures, and failure of the local edge-extend path, are fatal.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from functools import lru_cache
from typing import Callable, List, Optional

from app.config import Settings, get_settings
from app.errors import (
    AIBackendError,
    DecodeError,
    InvalidParameterError,
    PayloadTooLargeError,
    ProcessingError,
    ReframeError,
)
from app.models.images import (
    ExtensionStrategy,
    ImageDimensions,
    ImageProcessingOptions,
    OutputFormat,
    PlanKind,
    ProcessedImage,
    ProcessingStage,
    ProcessingStatus,
    Region,
    RotateOperation,
    StrategyType,
    TransformPlan,
)
from app.services import dimensions, edge_extend, orientation
from app.services.cloudconvert_client import CloudConvertClient, get_optimal_quality
from app.services.normalizer import FormatNormalizer, encode_lossless, validate_quality
from app.services.planner import select_plan
from app.services.replicate_http_client import ReplicateHTTPClient

logger = logging.getLogger(__name__)

ProgressObserver = Callable[[ProcessingStatus], None]

STAGE_PROGRESS = {
    ProcessingStage.ANALYZING: 10,
    ProcessingStage.EXTENDING: 35,
    ProcessingStage.OPTIMIZING: 75,
    ProcessingStage.COMPLETED: 100,
}


@dataclass(slots=True, frozen=True)
class ProcessRequest:
    """Already-validated input for one pipeline run."""

    buffer: bytes
    original_dimensions: ImageDimensions | None
    options: ImageProcessingOptions
    strategy: ExtensionStrategy = field(default_factory=ExtensionStrategy)


@dataclass(slots=True, frozen=True)
class BatchOutcome:
    """Independent result of one file in a batch."""

    index: int
    image: ProcessedImage | None = None
    error: ReframeError | None = None

    @property
    def success(self) -> bool:
        return self.image is not None


class ImageReframer:
    """
    Entry point of the reframing core.

    Backends are injected: pass `outpainting_client=None` to run without AI
    and `compressor=None` to skip recompression.
    """

    def __init__(
        self,
        settings: Settings,
        outpainting_client: ReplicateHTTPClient | None = None,
        compressor: CloudConvertClient | None = None,
    ) -> None:
        self.settings = settings
        self.outpainting_client = outpainting_client
        self.normalizer = FormatNormalizer(compressor)

    @property
    def ai_available(self) -> bool:
        return self.outpainting_client is not None

    def check_size(self, buffer: bytes) -> None:
        """Reject oversized input before anything tries to decode it."""
        if len(buffer) > self.settings.max_upload_bytes:
            raise PayloadTooLargeError(len(buffer), self.settings.max_upload_bytes)

    def get_image_dimensions(self, buffer: bytes) -> ImageDimensions:
        self.check_size(buffer)
        return dimensions.analyze(buffer)

    def convert_format(
        self,
        buffer: bytes,
        target_format: OutputFormat | str,
        quality: int = 90,
    ) -> ProcessedImage:
        """Re-encode without touching geometry. Never consults the compression backend."""
        self.check_size(buffer)
        validate_quality(quality)
        return self.normalizer.normalize(buffer, target_format, quality, compress=False)

    def compress(
        self,
        buffer: bytes,
        target_format: OutputFormat | str = OutputFormat.JPEG,
        quality: int | None = None,
    ) -> ProcessedImage:
        """
        Re-encode and recompress through the backend.

        Without an explicit quality, the backend gets the size-based
        recommendation and the local re-encode uses the same value.
        """
        self.check_size(buffer)
        if quality is None:
            quality = get_optimal_quality(len(buffer))
        validate_quality(quality)
        return self.normalizer.normalize(buffer, target_format, quality, backend_quality=quality)

    def crop(
        self,
        buffer: bytes,
        region: Region,
        target_format: OutputFormat | str = OutputFormat.JPEG,
        quality: int = 80,
    ) -> ProcessedImage:
        """Cut an explicit region out of the image and encode it."""
        self.check_size(buffer)
        validate_quality(quality)
        dims = dimensions.analyze(buffer)

        if region.width <= 0 or region.height <= 0 or region.x < 0 or region.y < 0:
            raise InvalidParameterError("Crop region must have a non-negative origin and positive size.")
        if region.x + region.width > dims.width or region.y + region.height > dims.height:
            raise InvalidParameterError(f"Crop region {region} falls outside the {dims} image.")

        image = dimensions.decode(buffer)
        cropped = image[region.y : region.y + region.height, region.x : region.x + region.width]
        return self.normalizer.normalize(encode_lossless(cropped), target_format, quality)

    def rotate_flip(
        self,
        buffer: bytes,
        operation: RotateOperation | str,
        custom_angle: float = 0.0,
        target_format: OutputFormat | str = OutputFormat.JPEG,
        quality: int = 90,
        flip_horizontal: bool = False,
        flip_vertical: bool = False,
    ) -> ProcessedImage:
        """
        Rotate (clockwise) or mirror the image, then encode it.

        `custom_angle` is only read for the `custom` operation and must lie in
        [-180, 180]. Like format conversion, this never recompresses.
        """
        self.check_size(buffer)
        validate_quality(quality)
        operation = RotateOperation.parse(operation)
        angle = orientation.validate_angle(custom_angle) if operation == RotateOperation.CUSTOM else 0.0

        image = dimensions.decode(buffer)
        try:
            transformed = orientation.rotate_flip(image, operation, angle, flip_horizontal, flip_vertical)
        except Exception as exc:  # noqa: BLE001
            logger.error("Rotate/flip %s failed: %s", operation.value, exc)
            raise ProcessingError(f"Image transformation failed: {exc}") from exc
        return self.normalizer.normalize(encode_lossless(transformed), target_format, quality, compress=False)

    def process(
        self,
        buffer: bytes,
        original_dimensions: ImageDimensions | None,
        target_dimensions: ImageDimensions,
        options: ImageProcessingOptions | None = None,
        strategy: ExtensionStrategy | None = None,
        on_progress: Optional[ProgressObserver] = None,
    ) -> ProcessedImage:
        """
        Reframe `buffer` onto a `target_dimensions` canvas.

        Raises only for invalid input, oversized input, decode failure, or when
        every processing path has been exhausted.
        """
        self.check_size(buffer)
        if options is None:
            options = ImageProcessingOptions(target_dimensions=target_dimensions)
        elif options.target_dimensions != target_dimensions:
            options = replace(options, target_dimensions=target_dimensions)

        validate_quality(options.quality)
        options = replace(options, format=OutputFormat.parse(options.format))

        request = ProcessRequest(
            buffer=buffer,
            original_dimensions=original_dimensions,
            options=options,
            strategy=strategy or ExtensionStrategy(),
        )
        return self._run(request, on_progress)

    def process_batch(
        self,
        requests: List[ProcessRequest],
        on_progress: Optional[Callable[[int, ProcessingStatus], None]] = None,
    ) -> List[BatchOutcome]:
        """
        Run one independent pipeline per request.

        Outcomes come back in input order, but files are processed
        concurrently with no ordering guarantee between them.
        """

        def run_one(index: int, request: ProcessRequest) -> BatchOutcome:
            observer = (lambda status: on_progress(index, status)) if on_progress else None
            try:
                image = self.process(
                    request.buffer,
                    request.original_dimensions,
                    request.options.target_dimensions,
                    request.options,
                    request.strategy,
                    on_progress=observer,
                )
            except ReframeError as exc:
                logger.warning("Batch item %d failed: %s", index, exc.message)
                return BatchOutcome(index=index, error=exc)
            except Exception as exc:  # noqa: BLE001
                logger.exception("Batch item %d failed unexpectedly", index)
                return BatchOutcome(index=index, error=ProcessingError(f"Processing failed: {exc}"))
            return BatchOutcome(index=index, image=image)

        if not requests:
            return []
        workers = min(self.settings.batch_max_workers, len(requests))
        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = [executor.submit(run_one, i, r) for i, r in enumerate(requests)]
            return [future.result() for future in futures]

    def _run(
        self,
        request: ProcessRequest,
        on_progress: Optional[ProgressObserver],
        fallback_used: bool = False,
    ) -> ProcessedImage:
        def notify(stage: ProcessingStage, message: str) -> None:
            if on_progress is not None:
                on_progress(ProcessingStatus(stage=stage, progress=STAGE_PROGRESS[stage], message=message))

        target = request.options.target_dimensions
        try:
            notify(ProcessingStage.ANALYZING, "Analyzing image dimensions")
            original = dimensions.analyze(request.buffer)
            if request.original_dimensions is not None and request.original_dimensions != original:
                logger.warning(
                    "Caller reported %s but image is %s; using the decoded size.",
                    request.original_dimensions,
                    original,
                )

            plan = select_plan(original, target, request.strategy, ai_available=self.ai_available)
            if (
                request.strategy.type == StrategyType.AI
                and plan.kind == PlanKind.EDGE_EXTEND
                and not self.ai_available
            ):
                if not request.strategy.fallback:
                    raise AIBackendError("AI outpainting is not configured on this server.")
                logger.warning("AI extension requested but no outpainting client is configured.")
                fallback_used = True

            notify(ProcessingStage.EXTENDING, self._extending_message(plan))
            extended = None
            if plan.kind == PlanKind.AI_EXTEND:
                try:
                    extended = self._extend_with_ai(request.buffer, plan)
                except AIBackendError as exc:
                    if not request.strategy.fallback:
                        raise
                    logger.warning("AI extension failed, retrying with edge-extend: %s", exc.message)
            else:
                extended = self._extend_locally(request.buffer, plan)

            if extended is not None:
                notify(ProcessingStage.OPTIMIZING, "Optimizing output")
                normalized = self.normalizer.normalize(
                    extended.buffer, request.options.format, request.options.quality
                )
        except ReframeError as exc:
            if on_progress is not None:
                on_progress(ProcessingStatus(stage=ProcessingStage.ERROR, progress=0, message=exc.message))
            raise

        if extended is None:
            # Same decoded request, edge-extend only.
            retry = replace(request, strategy=ExtensionStrategy(type=StrategyType.EDGE_EXTEND))
            return self._run(retry, on_progress, fallback_used=True)

        result = replace(normalized, fallback_used=fallback_used)
        notify(ProcessingStage.COMPLETED, "Processing completed")
        logger.info(
            "Reframed %s -> %s via %s (%s, %d bytes, fallback=%s, compression skipped=%s)",
            original,
            target,
            plan.kind.value,
            result.metadata.format,
            result.metadata.size,
            result.fallback_used,
            result.compression_skipped,
        )
        return result

    def _extend_with_ai(self, buffer: bytes, plan: TransformPlan) -> ProcessedImage:
        """Unexpected client failures count as backend failures, so they can fall back."""
        try:
            return self.outpainting_client.extend(buffer, plan)
        except ReframeError:
            raise
        except Exception as exc:  # noqa: BLE001
            logger.exception("Outpainting client failed unexpectedly")
            raise AIBackendError(f"AI outpainting failed: {exc}") from exc

    @staticmethod
    def _extend_locally(buffer: bytes, plan: TransformPlan) -> ProcessedImage:
        try:
            return edge_extend.extend(buffer, plan)
        except (DecodeError, InvalidParameterError):
            raise
        except Exception as exc:  # noqa: BLE001
            logger.error("Edge-extend failed for %s -> %s: %s", plan.original, plan.target, exc)
            raise ProcessingError(f"Image processing failed: {exc}") from exc

    @staticmethod
    def _extending_message(plan: TransformPlan) -> str:
        if plan.kind == PlanKind.CROP_ONLY:
            return "Cropping to target size" if not plan.is_identity else "Image already at target size"
        if plan.kind == PlanKind.AI_EXTEND:
            return "Extending background with AI"
        return "Extending background from image edges"


def build_reframer(settings: Settings) -> ImageReframer:
    """Wire the reframer with whichever backends the settings enable."""
    outpainting_client = None
    if settings.replicate_api_token:
        outpainting_client = ReplicateHTTPClient(
            api_token=settings.replicate_api_token,
            model=settings.replicate_model,
            base_url=settings.replicate_base_url,
            timeout_seconds=settings.ai_timeout_seconds,
            poll_interval=settings.ai_poll_interval_seconds,
        )
    else:
        logger.warning("REPLICATE_API_TOKEN not set; AI requests will use edge-extend.")

    compressor = None
    if settings.cloudconvert_api_key:
        compressor = CloudConvertClient(
            api_key=settings.cloudconvert_api_key,
            base_url=settings.cloudconvert_base_url,
            timeout_seconds=settings.compression_timeout_seconds,
        )
    return ImageReframer(settings, outpainting_client=outpainting_client, compressor=compressor)


@lru_cache()
def get_reframer() -> ImageReframer:
    """
    Return the process-wide reframer.

    Routes depend on this function so tests can override it.
    """
    return build_reframer(get_settings())
