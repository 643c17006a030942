"""
HTTP client for the CloudConvert optimization API.

Uses the synchronous jobs endpoint: one request imports the image as base64,
optimizes it and exports it to a temporary URL, which is then downloaded.
Every failure surfaces as `CompressionBackendError`; the caller decides what
to do about it.
"""

from __future__ import annotations

import base64
import logging
import time

import requests

from app.errors import CompressionBackendError, ConfigurationError

logger = logging.getLogger(__name__)

# (upper bound in bytes, recommended quality)
QUALITY_TABLE = (
    (100 * 1024, 95),
    (500 * 1024, 85),
    (2 * 1024 * 1024, 75),
)
LARGE_FILE_QUALITY = 65

CLOUDCONVERT_FORMATS = {"jpeg": "jpg", "jpg": "jpg", "png": "png", "webp": "webp"}


def get_optimal_quality(size: int, fmt: str | None = None) -> int:
    """Fixed-threshold quality recommendation for an encoded size in bytes."""
    for limit, quality in QUALITY_TABLE:
        if size < limit:
            return quality
    return LARGE_FILE_QUALITY


class CloudConvertClient:
    """Thin client around CloudConvert's `optimize` operation."""

    def __init__(
        self,
        api_key: str | None,
        base_url: str = "https://sync.api.cloudconvert.com/v2",
        timeout_seconds: float = 15.0,
        session: requests.Session | None = None,
    ) -> None:
        if not api_key:
            raise ConfigurationError("CLOUDCONVERT_API_KEY is required for the compression backend.")
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.session = session or requests.Session()

    def get_optimal_quality(self, size: int, fmt: str | None = None) -> int:
        return get_optimal_quality(size, fmt)

    def compress_image(self, buffer: bytes, filename: str, quality: int, fmt: str = "jpeg") -> bytes:
        """
        Optimize `buffer` and return the compressed bytes.

        The whole exchange (job + download) shares one timeout budget.
        """
        target = CLOUDCONVERT_FORMATS.get(fmt.lower())
        if target is None:
            raise CompressionBackendError(f"CloudConvert cannot optimize {fmt!r} output.")

        optimize_task = {"operation": "optimize", "input": "import-file", "quality": quality}
        if target != "png":
            optimize_task["input_format"] = target
        payload = {
            "tasks": {
                "import-file": {
                    "operation": "import/base64",
                    "file": base64.b64encode(buffer).decode("ascii"),
                    "filename": filename,
                },
                "compress-image": optimize_task,
                "export-file": {"operation": "export/url", "input": "compress-image"},
            }
        }
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

        deadline = time.monotonic() + self.timeout_seconds
        logger.info("Calling CloudConvert optimize (quality=%d, format=%s, %d bytes)", quality, target, len(buffer))

        try:
            response = self.session.post(
                f"{self.base_url}/jobs",
                headers=headers,
                json=payload,
                timeout=self.timeout_seconds,
            )
        except requests.exceptions.RequestException as exc:
            raise CompressionBackendError(f"CloudConvert request failed: {exc}") from exc

        if not response.ok:
            raise CompressionBackendError(
                f"CloudConvert API error: {response.status_code} {response.reason}"
            )

        try:
            job = response.json()["data"]
        except (ValueError, KeyError, TypeError) as exc:
            raise CompressionBackendError("Malformed CloudConvert job response.") from exc

        if not isinstance(job, dict):
            raise CompressionBackendError("Malformed CloudConvert job response.")
        if job.get("status") == "error":
            raise CompressionBackendError("CloudConvert job failed.")

        url = self._export_url(job)
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise CompressionBackendError("CloudConvert timed out before download.")

        try:
            download = self.session.get(url, timeout=remaining)
            download.raise_for_status()
        except requests.exceptions.RequestException as exc:
            raise CompressionBackendError(f"Failed to download compressed file: {exc}") from exc

        if not download.content:
            raise CompressionBackendError("CloudConvert returned an empty file.")
        return download.content

    @staticmethod
    def _export_url(job: dict) -> str:
        tasks = job.get("tasks") or []
        if not isinstance(tasks, list):
            raise CompressionBackendError("Malformed CloudConvert task list.")
        for task in tasks:
            if not isinstance(task, dict):
                raise CompressionBackendError("Malformed CloudConvert task entry.")
            if task.get("name") != "export-file":
                continue
            result = task.get("result")
            files = result.get("files") if isinstance(result, dict) else None
            if isinstance(files, list) and files and isinstance(files[0], dict):
                url = files[0].get("url")
                if isinstance(url, str) and url:
                    return url
        raise CompressionBackendError("No download URL found in CloudConvert response.")
