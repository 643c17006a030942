from typing import Any, List

from pydantic import BaseModel, ConfigDict, Field, PositiveInt, model_validator

from app.models.images import ProcessedImage, StrategyType


class CamelModel(BaseModel):
    """Wire models use camelCase field names, matching the web client."""

    model_config = ConfigDict(populate_by_name=True)


class DimensionsPayload(CamelModel):
    """Pixel size of an image or target canvas."""

    width: PositiveInt = Field(..., description="Width in pixels.")
    height: PositiveInt = Field(..., description="Height in pixels.")


class StrategyPayload(CamelModel):
    type: StrategyType = Field(default=StrategyType.AI, description="'ai' or 'edge-extend'.")
    fallback: bool = Field(
        default=True,
        description="Allow falling back to edge-extend when AI extension fails.",
    )


class ImageSource(CamelModel):
    """Either inline base64 data or a blob URL issued by this service."""

    image_data: str | None = Field(
        default=None,
        alias="imageData",
        description="Base64 image bytes, optionally as a data: URI.",
    )
    blob_url: str | None = Field(
        default=None,
        alias="blobUrl",
        description="URL returned by the blob upload endpoint.",
    )

    @model_validator(mode="after")
    def _require_source(self) -> "ImageSource":
        if not self.image_data and not self.blob_url:
            raise ValueError("No image data or blob URL provided")
        return self


class ProcessRequestBody(ImageSource):
    target_dimensions: DimensionsPayload = Field(..., alias="targetDimensions")
    original_dimensions: DimensionsPayload | None = Field(
        default=None,
        alias="originalDimensions",
        description="Size the client believes the image has; the decoded size wins.",
    )
    quality: int = Field(default=80, description="Output quality, 1-100.")
    format: str = Field(default="jpeg", description="jpeg, png, webp or svg.")
    strategy: StrategyPayload = Field(default_factory=StrategyPayload)


class BatchProcessRequestBody(CamelModel):
    items: List[ProcessRequestBody] = Field(..., min_length=1)


class ConvertFormatRequestBody(CamelModel):
    image_data: str = Field(..., alias="imageData")
    target_format: str = Field(..., alias="targetFormat")
    quality: int = 90


class CropRequestBody(ImageSource):
    crop_x: int = Field(..., alias="cropX")
    crop_y: int = Field(..., alias="cropY")
    crop_width: PositiveInt = Field(..., alias="cropWidth")
    crop_height: PositiveInt = Field(..., alias="cropHeight")
    quality: int = 80
    format: str = "jpeg"


class RotateFlipRequestBody(ImageSource):
    operation: str = Field(
        ...,
        description="rotate-90, rotate-180, rotate-270, flip-horizontal, flip-vertical or custom.",
    )
    custom_angle: float = Field(
        default=0,
        alias="customAngle",
        description="Clockwise degrees in [-180, 180]; only used by 'custom'.",
    )
    flip_horizontal: bool = Field(default=False, alias="flipHorizontal")
    flip_vertical: bool = Field(default=False, alias="flipVertical")
    quality: int = 90
    format: str = "jpeg"


class CompressRequestBody(CamelModel):
    image_data: str = Field(..., alias="imageData")
    format: str = "jpeg"
    quality: int | None = None


class DimensionsRequestBody(CamelModel):
    image_data: str = Field(..., alias="imageData")


class UploadTokenRequestBody(CamelModel):
    filename: str = Field(..., min_length=1)
    content_type: str | None = Field(default=None, alias="contentType")


class BlobDeleteRequestBody(CamelModel):
    url: str


class ImageMetadataPayload(CamelModel):
    width: int
    height: int
    format: str
    size: int


class ProcessedImageData(CamelModel):
    image_data: str = Field(..., alias="imageData")
    metadata: ImageMetadataPayload
    filename: str
    fallback_used: bool | None = Field(default=None, alias="fallbackUsed")
    compression_skipped: bool | None = Field(default=None, alias="compressionSkipped")

    @classmethod
    def from_processed(cls, image: ProcessedImage, image_data: str, filename: str) -> "ProcessedImageData":
        meta = image.metadata
        return cls(
            image_data=image_data,
            metadata=ImageMetadataPayload(
                width=meta.width, height=meta.height, format=meta.format, size=meta.size
            ),
            filename=filename,
            fallback_used=image.fallback_used or None,
            compression_skipped=image.compression_skipped or None,
        )


class ApiResponse(CamelModel):
    """Response envelope shared by every endpoint."""

    success: bool
    data: Any | None = None
    error: str | None = None
