import logging
import os
from pathlib import Path

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from app.api.v1.routes import router as api_v1_router
from app.config import get_settings
from app.errors import ReframeError

logger = logging.getLogger(__name__)


def _mask(secret: str) -> str:
    return f"{secret[:6]}..." if len(secret) > 6 else "***"


def load_environment(env_path: Path) -> None:
    """Load `.env` and print a short configuration banner."""
    print("\n" + "=" * 60)
    print("🔧 LOADING ENVIRONMENT CONFIGURATION")
    print("=" * 60)
    print(f"Looking for .env file at: {env_path}")

    if env_path.exists():
        load_dotenv(dotenv_path=env_path, override=True)
        print("✓ .env file loaded successfully")
    else:
        print(f"⚠ .env file not found at: {env_path}")

    for name in ("REPLICATE_API_TOKEN", "CLOUDCONVERT_API_KEY"):
        value = os.environ.get(name)
        if value:
            print(f"✓ {name} loaded: {_mask(value)}")
        else:
            print(f"⚠ {name} not set")
    print("=" * 60 + "\n")


def create_app() -> FastAPI:
    """
    Application factory for the Image Reframe API.

    Settings are read lazily through `get_settings()`, so tests can set
    environment variables (or override dependencies) before the first request.
    """
    app = FastAPI(
        title="Image Reframe API",
        version="0.1.0",
        description="Crop, extend and re-encode images to arbitrary canvas sizes.",
    )

    @app.exception_handler(ReframeError)
    async def reframe_error_handler(request: Request, exc: ReframeError) -> JSONResponse:
        if exc.http_status >= 500:
            logger.error("%s on %s: %s", type(exc).__name__, request.url.path, exc.message)
        else:
            logger.info("%s on %s: %s", type(exc).__name__, request.url.path, exc.message)
        return JSONResponse(status_code=int(exc.http_status), content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        errors = exc.errors()
        message = errors[0].get("msg", "Invalid request") if errors else "Invalid request"
        return JSONResponse(status_code=400, content={"success": False, "error": message})

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error on %s", request.url.path)
        return JSONResponse(
            status_code=500,
            content={"success": False, "error": f"Internal server error: {type(exc).__name__}"},
        )

    # Infrastructure-level health check (non-versioned) primarily for ops.
    @app.get("/health", tags=["health"])
    async def root_health_check() -> dict:
        """Simple root health check endpoint."""
        return {"status": "ok"}

    app.include_router(api_v1_router)

    return app


load_environment(Path(__file__).parent.parent / ".env")
logging.basicConfig(
    level=get_settings().log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = create_app()
