import logging

from fastapi import FastAPI

from app.utils.redis_client import get_redis_client

logger = logging.getLogger(__name__)

SHUTDOWN_DRAIN_SECONDS = 10.0


def register_event_handlers(app: FastAPI) -> None:
    @app.on_event("startup")
    async def on_startup() -> None:
        logger.info("Application startup")

    @app.on_event("shutdown")
    async def on_shutdown() -> None:
        workflow = getattr(app.state, "loan_workflow", None)
        if workflow is not None:
            pending = workflow.notifier.pending
            if pending:
                logger.info("Draining %d in-flight notification task(s)", pending)
            await workflow.notifier.drain(timeout=SHUTDOWN_DRAIN_SECONDS)
        await get_redis_client().aclose()
        logger.info("Application shutdown")
