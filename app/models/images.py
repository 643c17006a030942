from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from app.errors import InvalidParameterError


class StrategyType(str, Enum):
    """Requested way of filling new canvas area."""

    AI = "ai"
    EDGE_EXTEND = "edge-extend"


class PlanKind(str, Enum):
    """Concrete transform chosen for a single pipeline run."""

    CROP_ONLY = "crop-only"
    AI_EXTEND = "ai-extend"
    EDGE_EXTEND = "edge-extend"


class OutputFormat(str, Enum):
    JPEG = "jpeg"
    PNG = "png"
    WEBP = "webp"
    SVG = "svg"

    @classmethod
    def parse(cls, value: "str | OutputFormat") -> "OutputFormat":
        """Accept enum members, names and the common `jpg` alias."""
        if isinstance(value, OutputFormat):
            return value
        normalized = str(value or "").strip().lower()
        if normalized == "jpg":
            normalized = "jpeg"
        try:
            return cls(normalized)
        except ValueError as exc:
            raise InvalidParameterError(
                f"Unsupported format {value!r}. Use one of: jpeg, png, webp, svg."
            ) from exc


class RotateOperation(str, Enum):
    """Orientation change; rotations are clockwise."""

    ROTATE_90 = "rotate-90"
    ROTATE_180 = "rotate-180"
    ROTATE_270 = "rotate-270"
    FLIP_HORIZONTAL = "flip-horizontal"
    FLIP_VERTICAL = "flip-vertical"
    CUSTOM = "custom"

    @classmethod
    def parse(cls, value: "str | RotateOperation") -> "RotateOperation":
        if isinstance(value, RotateOperation):
            return value
        try:
            return cls(str(value or "").strip().lower())
        except ValueError as exc:
            raise InvalidParameterError(f"Invalid operation type {value!r}.") from exc


class ProcessingStage(str, Enum):
    """UI-facing lifecycle stages reported through progress callbacks."""

    IDLE = "idle"
    UPLOADING = "uploading"
    ANALYZING = "analyzing"
    EXTENDING = "extending"
    ENHANCING = "enhancing"
    OPTIMIZING = "optimizing"
    COMPLETED = "completed"
    ERROR = "error"
    FINALIZING = "finalizing"


@dataclass(slots=True, frozen=True)
class ImageDimensions:
    width: int
    height: int

    def __post_init__(self) -> None:
        for name in ("width", "height"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
                raise InvalidParameterError(
                    f"Image {name} must be a positive integer, got {value!r}."
                )

    def fits_within(self, other: "ImageDimensions") -> bool:
        """True when this size is no larger than `other` on both axes."""
        return self.width <= other.width and self.height <= other.height

    def __str__(self) -> str:
        return f"{self.width}x{self.height}"


@dataclass(slots=True, frozen=True)
class ExtensionStrategy:
    """
    Requested strategy for a pipeline run.

    `fallback` controls whether a failed AI extension may be replaced by the
    deterministic edge-extend path. It only matters for `type == "ai"`.
    """

    type: StrategyType = StrategyType.AI
    fallback: bool = True


@dataclass(slots=True, frozen=True)
class Region:
    """Rectangular region in pixel coordinates."""

    x: int
    y: int
    width: int
    height: int


@dataclass(slots=True, frozen=True)
class Padding:
    """Pixels added on each side of the (cropped) original."""

    left: int = 0
    right: int = 0
    top: int = 0
    bottom: int = 0

    @property
    def is_empty(self) -> bool:
        return not (self.left or self.right or self.top or self.bottom)


@dataclass(slots=True, frozen=True)
class TransformPlan:
    """
    Concrete geometry for turning the original image into the target canvas.

    Shrinking axes are described by `crop` (in original image coordinates),
    growing axes by `padding`. Applying the crop first and then the padding
    always yields exactly `target`.
    """

    kind: PlanKind
    original: ImageDimensions
    target: ImageDimensions
    crop: Region
    padding: Padding = field(default_factory=Padding)

    @property
    def is_identity(self) -> bool:
        return self.original == self.target


@dataclass(slots=True, frozen=True)
class ImageProcessingOptions:
    target_dimensions: ImageDimensions
    quality: int = 80
    format: OutputFormat = OutputFormat.JPEG


@dataclass(slots=True, frozen=True)
class ImageMetadata:
    width: int
    height: int
    format: str
    size: int


@dataclass(slots=True, frozen=True)
class ProcessedImage:
    """
    Final (or intermediate) image produced by a pipeline step.

    Ownership of `buffer` passes to the caller; instances are never mutated.
    """

    buffer: bytes
    metadata: ImageMetadata
    fallback_used: bool = False
    compression_skipped: bool = False


@dataclass(slots=True, frozen=True)
class ProcessingStatus:
    stage: ProcessingStage
    progress: int
    message: str
