import time
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from webhook_pipeline.routers.router import router
from webhook_pipeline.core.container import Pipeline, build_pipeline
from webhook_pipeline.core.lifespan import lifespan
from webhook_pipeline.core.config import Settings, settings as default_settings
from webhook_pipeline.core.logger import logger
from webhook_pipeline.core.rate_limiter import limiter


def create_app(pipeline: Optional[Pipeline] = None, app_settings: Optional[Settings] = None) -> FastAPI:
    """
    Build the FastAPI app around a pipeline. The pipeline is constructed
    from settings unless one is injected.
    """
    app_settings = app_settings or (pipeline.settings if pipeline else default_settings)
    pipeline = pipeline or build_pipeline(app_settings)

    app = FastAPI(
        title=app_settings.PROJECT_NAME,
        description="""
    Webhook ingestion pipeline.

    **POST /** - Submit a webhook payload

    ### Request Body:
    - `name` (required): Non-empty string
    - `age` (required): Integer, 18 or older
    - `email` (required): Valid email address

    ### Responses:
    - **200** `{"message": "hellou, hellou"}` - payload validated and enqueued
    - **400** `{"message": "Validation failed", "errors": [{"path", "message"}]}`
    - **500** payload could not be enqueued; retry the request

    Accepted payloads are processed asynchronously: authenticity check,
    then processing, with redelivery and dead-lettering on failure.
    """,
        version="1.0.0",
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc"
    )
    app.state.pipeline = pipeline

    # Configure rate limiting
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    # Request/Response logging middleware
    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        start_time = time.time()
        response = await call_next(request)
        duration = time.time() - start_time

        log_data = {
            "method": request.method,
            "path": request.url.path,
            "status_code": response.status_code,
            "duration_ms": int(duration * 1000),
            "client": request.client.host if request.client else "unknown"
        }

        # Only log non-health-check requests
        if request.url.path != "/health":
            logger.info(f"Request: {log_data}")

        return response

    if app_settings.ENABLE_CORS:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=False,
            allow_methods=["POST"],
            allow_headers=["Content-Type"],
        )

    app.include_router(router)
    return app


def run() -> None:
    """Console entry point: serve the app with uvicorn."""
    uvicorn.run("webhook_pipeline.main:create_app", factory=True, host="0.0.0.0", port=8000)
