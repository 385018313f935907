# routers/router.py
"""
FastAPI Router for webhook ingestion
"""

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from webhook_pipeline.core.container import Pipeline
from webhook_pipeline.core.errors import QueueUnavailableError
from webhook_pipeline.core.logger import logger
from webhook_pipeline.core.rate_limiter import limit_param, limiter
from webhook_pipeline.schemas.webhook_models import (
    AcceptedResponse,
    HealthResponse,
    RejectedResponse,
)


# ============================================================================
# ROUTER CONFIGURATION
# ============================================================================

router = APIRouter(
    tags=["Webhooks"],
    responses={
        429: {"description": "Too Many Requests"},
        500: {"description": "Internal Server Error - payload not enqueued"}
    }
)


def get_pipeline(request: Request) -> Pipeline:
    return request.app.state.pipeline


# ============================================================================
# INGRESS ENDPOINT
# ============================================================================

@router.post(
    "/",
    status_code=status.HTTP_200_OK,
    summary="Submit Webhook Payload",
    description="Validate a JSON payload and enqueue it for processing",
    responses={
        200: {"model": AcceptedResponse},
        400: {"model": RejectedResponse, "description": "Validation failed"},
    }
)
@limiter.limit(limit_param)
async def receive_webhook(
    request: Request,
    pipeline: Pipeline = Depends(get_pipeline)
) -> JSONResponse:
    """
    Accept a webhook payload.

    The body is read raw so the exact bytes the caller sent are what gets
    enqueued; parsing and schema validation happen in the gateway.
    """
    raw_body = await request.body()
    result = await run_in_threadpool(pipeline.gateway.handle, raw_body, request.headers)
    return JSONResponse(
        status_code=result.status_code,
        content=result.body,
        headers={k: v for k, v in result.headers.items() if k.lower() != "content-type"},
    )


# ============================================================================
# HEALTH CHECK ENDPOINT
# ============================================================================

@router.get(
    "/health",
    response_model=HealthResponse,
    status_code=status.HTTP_200_OK,
    summary="Service Health Check",
    description="Queue depths and dispatcher status"
)
def check_health(pipeline: Pipeline = Depends(get_pipeline)) -> HealthResponse:
    health_status = HealthResponse(dispatcher=pipeline.dispatcher.status())

    try:
        health_status.queue_depth = pipeline.queue.depth()
        health_status.dead_letter_depth = pipeline.dead_letter_queue.depth()
    except QueueUnavailableError as e:
        logger.error(f"Queue health check failed: {e}")
        health_status.status = "degraded"

    return health_status
