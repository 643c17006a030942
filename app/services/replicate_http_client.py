"""
Direct HTTP client for Replicate outpainting.

The image is cropped to the plan, placed on an edge-replicated base canvas of
the target size and sent together with a mask of the padding area to an
inpainting model (LaMa by default). No text prompt is involved.

This client never retries and never falls back on its own: every problem is
raised as `AIBackendError` and the pipeline orchestrator decides what to do.
"""

from __future__ import annotations

import base64
import logging
import time
from io import BytesIO

import cv2
import numpy as np
import requests
from PIL import Image, UnidentifiedImageError

from app.errors import AIBackendError, ConfigurationError
from app.models.images import ImageMetadata, ProcessedImage, TransformPlan
from app.services.dimensions import decode
from app.services.edge_extend import crop_to_plan, replicate_edges
from app.services.normalizer import encode_lossless

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = ("starting", "processing")


class ReplicateHTTPClient:
    """
    Outpainting client for the Replicate predictions API.

    A missing token is a configuration error, not a silent downgrade: callers
    that want to run without AI simply do not construct a client.
    """

    def __init__(
        self,
        api_token: str | None,
        model: str,
        base_url: str = "https://api.replicate.com/v1",
        timeout_seconds: float = 40.0,
        poll_interval: float = 1.0,
        session: requests.Session | None = None,
    ) -> None:
        if not api_token:
            raise ConfigurationError("REPLICATE_API_TOKEN is required for AI outpainting.")
        if not api_token.startswith("r8_"):
            logger.warning("Replicate token doesn't start with 'r8_' and might be invalid.")

        self.api_token = api_token
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.poll_interval = poll_interval
        self.session = session or requests.Session()

    @property
    def headers(self) -> dict:
        return {
            "Authorization": f"Token {self.api_token}",
            "Content-Type": "application/json",
        }

    def extend(self, buffer: bytes, plan: TransformPlan) -> ProcessedImage:
        """
        Fill the plan's padding with generated content.

        Raises `DecodeError` for unreadable input and `AIBackendError` for
        anything that goes wrong on the backend side, including timeouts.
        """
        image = decode(buffer)
        cropped = crop_to_plan(image, plan)
        if image.ndim == 3 and image.shape[2] == 4:
            cropped = cv2.cvtColor(cropped, cv2.COLOR_BGRA2BGR)

        base_image = replicate_edges(cropped, plan)
        mask = self._build_mask(plan)
        deadline = time.monotonic() + self.timeout_seconds

        logger.info(
            "Calling Replicate outpainting: model=%s, canvas=%s, mask coverage=%.1f%%",
            self.model,
            plan.target,
            100.0 * np.count_nonzero(mask) / mask.size,
        )

        prediction = self._create_prediction(base_image, mask, deadline)
        output_url = self._wait_for_prediction(prediction, deadline)
        result = self._download_image(output_url, deadline)

        target_w, target_h = plan.target.width, plan.target.height
        if result.shape[1] != target_w or result.shape[0] != target_h:
            logger.info(
                "Replicate returned %dx%d, resizing to %s",
                result.shape[1],
                result.shape[0],
                plan.target,
            )
            result = cv2.resize(result, (target_w, target_h), interpolation=cv2.INTER_LANCZOS4)

        encoded = encode_lossless(result)
        logger.info("Replicate outpainting completed for %s", plan.target)
        return ProcessedImage(
            buffer=encoded,
            metadata=ImageMetadata(width=target_w, height=target_h, format="png", size=len(encoded)),
        )

    @staticmethod
    def _build_mask(plan: TransformPlan) -> np.ndarray:
        """Binary mask over the target canvas: 255 = generate, 0 = keep."""
        height, width = plan.target.height, plan.target.width
        pad = plan.padding
        mask = np.zeros((height, width), dtype=np.uint8)
        if pad.top > 0:
            mask[0 : pad.top, :] = 255
        if pad.bottom > 0:
            mask[height - pad.bottom : height, :] = 255
        if pad.left > 0:
            mask[:, 0 : pad.left] = 255
        if pad.right > 0:
            mask[:, width - pad.right : width] = 255
        return mask

    def _get_model_version(self) -> str:
        """Return the version hash of `owner/name:hash`, or the model as-is."""
        if ":" in self.model:
            return self.model.split(":", 1)[1]
        return self.model

    @staticmethod
    def _remaining(deadline: float) -> float:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise AIBackendError("Replicate outpainting timed out.")
        return remaining

    def _create_prediction(self, image: np.ndarray, mask: np.ndarray, deadline: float) -> dict:
        payload = {
            "version": self._get_model_version(),
            "input": {
                "image": self._image_to_data_uri(image),
                "mask": self._image_to_data_uri(mask),
            },
        }

        try:
            response = self.session.post(
                f"{self.base_url}/predictions",
                headers=self.headers,
                json=payload,
                timeout=self._remaining(deadline),
            )
        except requests.exceptions.Timeout as exc:
            raise AIBackendError("Replicate request timed out.") from exc
        except requests.exceptions.RequestException as exc:
            raise AIBackendError(f"Replicate request failed: {exc}") from exc

        if response.status_code == 401:
            raise AIBackendError("Replicate rejected the API token (401).")
        if response.status_code == 404:
            raise AIBackendError(f"Replicate model not found: {self.model}")
        if response.status_code == 429:
            raise AIBackendError("Replicate rate limited the request (429).")
        if not response.ok:
            raise AIBackendError(
                f"Replicate API error ({response.status_code}): {self._error_detail(response)}"
            )

        try:
            prediction = response.json()
        except ValueError as exc:
            raise AIBackendError("Malformed prediction response from Replicate.") from exc
        if not isinstance(prediction, dict):
            raise AIBackendError("Malformed prediction response from Replicate.")
        urls = prediction.get("urls")
        if not isinstance(urls, dict) or not isinstance(urls.get("get"), str):
            raise AIBackendError("Replicate prediction response has no status URL.")
        return prediction

    def _wait_for_prediction(self, prediction: dict, deadline: float) -> str:
        """Poll until the prediction finishes and return its output URL."""
        prediction_url = prediction["urls"]["get"]

        while True:
            if not isinstance(prediction, dict):
                raise AIBackendError("Malformed prediction status from Replicate.")
            status = prediction.get("status")

            if status == "succeeded":
                output = prediction.get("output")
                if isinstance(output, list) and output:
                    output = output[0]
                if not isinstance(output, str) or not output:
                    raise AIBackendError("Replicate prediction succeeded without an output image.")
                return output

            if status in ("failed", "canceled"):
                raise AIBackendError(
                    f"Replicate prediction {status}: {prediction.get('error') or 'unknown error'}"
                )

            if status not in ACTIVE_STATUSES:
                raise AIBackendError(f"Unknown Replicate prediction status: {status!r}")

            time.sleep(min(self.poll_interval, self._remaining(deadline)))
            try:
                response = self.session.get(
                    prediction_url, headers=self.headers, timeout=self._remaining(deadline)
                )
                response.raise_for_status()
                prediction = response.json()
            except requests.exceptions.RequestException as exc:
                raise AIBackendError(f"Failed to poll Replicate prediction: {exc}") from exc
            except ValueError as exc:
                raise AIBackendError("Malformed prediction status from Replicate.") from exc

    def _download_image(self, url: str, deadline: float) -> np.ndarray:
        """Download the generated image as a BGR array."""
        try:
            response = self.session.get(url, timeout=self._remaining(deadline))
            response.raise_for_status()
        except requests.exceptions.RequestException as exc:
            raise AIBackendError(f"Failed to download Replicate output: {exc}") from exc

        try:
            with Image.open(BytesIO(response.content)) as pil_image:
                rgb = np.array(pil_image.convert("RGB"))
        except (UnidentifiedImageError, OSError) as exc:
            raise AIBackendError("Replicate output is not a readable image.") from exc
        return cv2.cvtColor(rgb, cv2.COLOR_RGB2BGR)

    @staticmethod
    def _image_to_data_uri(image: np.ndarray) -> str:
        """Encode a BGR image or single-channel mask as a PNG data URI."""
        if image.ndim == 2:
            pil_image = Image.fromarray(image)
        else:
            pil_image = Image.fromarray(cv2.cvtColor(image, cv2.COLOR_BGR2RGB))
        buffer = BytesIO()
        pil_image.save(buffer, format="PNG")
        b64_data = base64.b64encode(buffer.getvalue()).decode("utf-8")
        return f"data:image/png;base64,{b64_data}"

    @staticmethod
    def _error_detail(response: requests.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text[:200]
        if isinstance(body, dict):
            return str(body.get("detail", body))
        return str(body)
