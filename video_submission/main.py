"""
FastAPI application entry point.

This module creates and configures the FastAPI application.
Using an application factory pattern (create_app function) because:
- Easier to test with different configurations
- Explicit about initialization order
- Can create multiple app instances if needed (e.g., for testing)

For local development:
    uvicorn video_submission.main:app --reload

For production:
    gunicorn video_submission.main:app -w 4 -k uvicorn.workers.UvicornWorker
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .api.dependencies import close_shared_instances, describe_backend
from .api.errors import register_exception_handlers
from .api.routes import admin, health, playback, uploads
from .config.settings import get_settings

# Configure logging
logging.basicConfig(
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    level=logging.INFO,
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Startup logs the backend selection and any missing configuration;
    shutdown closes the shared storage client.
    """
    settings = get_settings()
    logging.getLogger().setLevel(settings.log_level.upper())

    logger.info(
        "Video submission API starting",
        extra={"version": settings.api_version, **describe_backend(settings)},
    )

    missing_fields = settings.validate_required_fields()
    if missing_fields:
        # Requests that need the missing settings fail with config_error
        logger.error(
            "Missing required configuration",
            extra={"missing_fields": missing_fields}
        )

    yield

    await close_shared_instances()
    logger.info("Video submission API shutting down")


def create_app() -> FastAPI:
    """
    Application factory.

    Creates and configures the FastAPI application.
    This function is called once at startup (in production) or
    multiple times (in tests with different configurations).
    """
    settings = get_settings()

    app = FastAPI(
        title=settings.api_title,
        version=settings.api_version,
        description="""
        Video submissions for course assignments.

        ## Authentication

        All endpoints require an API key in the `X-API-Key` header. The host
        application identifies the user with `X-User-Id`, and optionally
        `X-User-Is-Admin` and `X-User-Capabilities` (e.g. `grade`).

        ## Workflow

        1. **Request an upload target**: `POST /api/v1/videos/upload-session`
        2. **Upload** the file directly to the returned `upload_target`
        3. **Confirm**: `POST /api/v1/videos/confirm-upload`
        4. **Watch**: `GET /api/v1/videos/playback-credential`

        Failed uploads can be reset with `POST /api/v1/videos/retry-upload`
        or removed with `POST /api/v1/videos/cleanup-failed-upload`.
        """,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    # Configure allowed origins via CORS_ORIGINS environment variable
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["Retry-After"],
    )

    register_exception_handlers(app)

    app.include_router(
        health.router,
        prefix="/health",
        tags=["Health"],
    )

    app.include_router(
        uploads.router,
        prefix="/api/v1/videos",
        tags=["Uploads"],
    )

    app.include_router(
        playback.router,
        prefix="/api/v1/videos",
        tags=["Playback"],
    )

    app.include_router(
        admin.router,
        prefix="/api/v1/admin",
        tags=["Admin"],
    )

    @app.get("/", include_in_schema=False)
    async def root():
        """Root endpoint - points at the docs."""
        return {
            "message": "Video Submission API",
            "version": settings.api_version,
            "docs": "/docs",
            "health": "/health",
        }

    logger.info(
        "FastAPI application created",
        extra={
            "title": settings.api_title,
            "version": settings.api_version,
        }
    )

    return app


# Create the application instance
# This is what uvicorn/gunicorn will import
app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()

    uvicorn.run(
        "video_submission.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level=settings.log_level.lower(),
    )
