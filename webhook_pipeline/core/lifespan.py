from contextlib import asynccontextmanager

from fastapi import FastAPI

from webhook_pipeline.core.logger import logger


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Starts the dispatcher workers on startup when enabled and stops them,
    together with the rest of the pipeline, on shutdown.
    """
    pipeline = app.state.pipeline
    if pipeline.settings.DISPATCHER_ENABLED:
        pipeline.dispatcher.start()
        logger.info("Lifespan startup: dispatcher running with %s worker(s)", pipeline.dispatcher.workers)
    else:
        logger.info("Lifespan startup: dispatcher disabled, ingress only")
    yield
    pipeline.close()
    logger.info("Lifespan shutdown.")
