"""
Error taxonomy for the reframing service.

Every error raised by the core derives from `ReframeError` so the HTTP layer
can translate it into the response envelope with a single handler. Only
`DecodeError` and `ProcessingError` are fatal to a pipeline run; the backend
errors are absorbed by the orchestrator and replaced with a fallback unless the
caller disabled it.
"""

from __future__ import annotations

from http import HTTPStatus
from typing import Any, ClassVar


class ReframeError(Exception):
    """Base class for all errors raised by the reframing core."""

    http_status: ClassVar[int] = HTTPStatus.INTERNAL_SERVER_ERROR

    def __init__(self, message: str, *, context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def to_dict(self) -> dict[str, Any]:
        """Envelope representation used by the API layer."""
        return {"success": False, "error": self.message}


class DecodeError(ReframeError):
    """The buffer is not a supported image encoding."""


class AIBackendError(ReframeError):
    """The generative backend is unreachable, rejected the call, or replied with garbage."""


class CompressionBackendError(ReframeError):
    """The external optimization service failed."""


class ProcessingError(ReframeError):
    """All processing paths failed for an input that decoded fine."""


class BlobStorageError(ReframeError):
    """Raised when a storage operation fails in a non-recoverable way."""


class InvalidParameterError(ReframeError):
    """Missing or malformed request fields."""

    http_status = HTTPStatus.BAD_REQUEST


class ConfigurationError(InvalidParameterError):
    """Required configuration is absent or malformed."""


class PayloadTooLargeError(ReframeError):
    """Input exceeds the configured size ceiling."""

    http_status = HTTPStatus.REQUEST_ENTITY_TOO_LARGE

    def __init__(self, size: int, limit: int) -> None:
        limit_mb = limit / 1024 / 1024
        super().__init__(
            f"Image file is too large ({size / 1024 / 1024:.2f}MB). "
            f"Please use an image smaller than {limit_mb:.0f}MB or reduce the "
            "image quality before upload.",
            context={"size": size, "limit": limit},
        )
        self.size = size
        self.limit = limit
