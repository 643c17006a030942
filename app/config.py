from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Mapping

from app.errors import ConfigurationError

DEFAULT_REPLICATE_MODEL = (
    "twn39/lama:2b91ca2340801c2a5be745612356fac36a17f698354a07f48a62d564d3b3a7a0"
)


def _optional(environ: Mapping[str, str], name: str) -> str | None:
    value = environ.get(name, "").strip()
    return value or None


def _number(environ: Mapping[str, str], name: str, default, cast):
    raw = environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = cast(raw.strip())
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}.") from exc
    if value <= 0:
        raise ConfigurationError(f"{name} must be positive, got {raw!r}.")
    return value


@dataclass(slots=True, frozen=True)
class Settings:
    """
    Application configuration loaded from environment variables.

    Secrets have no defaults: when `REPLICATE_API_TOKEN` is absent the AI
    outpainting path is simply not wired, and when `CLOUDCONVERT_API_KEY` is
    absent output is never sent for recompression.
    """

    replicate_api_token: str | None = None
    replicate_model: str = DEFAULT_REPLICATE_MODEL
    replicate_base_url: str = "https://api.replicate.com/v1"
    ai_timeout_seconds: float = 40.0
    ai_poll_interval_seconds: float = 1.0
    cloudconvert_api_key: str | None = None
    cloudconvert_base_url: str = "https://sync.api.cloudconvert.com/v2"
    compression_timeout_seconds: float = 15.0
    max_upload_bytes: int = 10 * 1024 * 1024
    blob_max_upload_bytes: int = 50 * 1024 * 1024
    blob_token_ttl_seconds: int = 600
    blob_ttl_seconds: int = 3600
    request_timeout_seconds: float = 60.0
    storage_dir: Path = Path("storage/blobs")
    public_base_url: str = "http://127.0.0.1:8000"
    batch_max_workers: int = 4
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Settings":
        env = os.environ if environ is None else environ
        defaults = cls()
        return cls(
            replicate_api_token=_optional(env, "REPLICATE_API_TOKEN"),
            replicate_model=_optional(env, "REPLICATE_MODEL") or defaults.replicate_model,
            replicate_base_url=(
                _optional(env, "REPLICATE_BASE_URL") or defaults.replicate_base_url
            ).rstrip("/"),
            ai_timeout_seconds=_number(env, "AI_TIMEOUT_SECONDS", defaults.ai_timeout_seconds, float),
            ai_poll_interval_seconds=_number(
                env, "AI_POLL_INTERVAL_SECONDS", defaults.ai_poll_interval_seconds, float
            ),
            cloudconvert_api_key=_optional(env, "CLOUDCONVERT_API_KEY"),
            cloudconvert_base_url=(
                _optional(env, "CLOUDCONVERT_BASE_URL") or defaults.cloudconvert_base_url
            ).rstrip("/"),
            compression_timeout_seconds=_number(
                env, "COMPRESSION_TIMEOUT_SECONDS", defaults.compression_timeout_seconds, float
            ),
            max_upload_bytes=_number(env, "MAX_UPLOAD_BYTES", defaults.max_upload_bytes, int),
            blob_max_upload_bytes=_number(
                env, "BLOB_MAX_UPLOAD_BYTES", defaults.blob_max_upload_bytes, int
            ),
            blob_token_ttl_seconds=_number(
                env, "BLOB_TOKEN_TTL_SECONDS", defaults.blob_token_ttl_seconds, int
            ),
            blob_ttl_seconds=_number(env, "BLOB_TTL_SECONDS", defaults.blob_ttl_seconds, int),
            request_timeout_seconds=_number(
                env, "REQUEST_TIMEOUT_SECONDS", defaults.request_timeout_seconds, float
            ),
            storage_dir=Path(_optional(env, "STORAGE_DIR") or defaults.storage_dir),
            public_base_url=(
                _optional(env, "PUBLIC_BASE_URL") or defaults.public_base_url
            ).rstrip("/"),
            batch_max_workers=_number(env, "BATCH_MAX_WORKERS", defaults.batch_max_workers, int),
            log_level=(_optional(env, "LOG_LEVEL") or defaults.log_level).upper(),
        )


@lru_cache()
def get_settings() -> Settings:
    """Return a cached Settings instance so it is only parsed once."""
    return Settings.from_env()
