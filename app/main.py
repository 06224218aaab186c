from fastapi import FastAPI

from app.api.v1 import api_router
from app.core.errors import register_exception_handlers
from app.core.logging import configure_logging
from app.core.settings import settings
from app.db.session import AsyncSessionLocal
from app.events import register_event_handlers
from app.middlewares.request_context import RequestContextMiddleware
from app.services.loan_workflow import build_loan_workflow
from app.utils.redis_client import get_redis_client


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title="Loanflow Workflow Service", version="0.1.0")
    register_exception_handlers(app)
    app.state.loan_workflow = build_loan_workflow(AsyncSessionLocal, get_redis_client(), settings)
    app.add_middleware(RequestContextMiddleware)
    app.include_router(api_router, prefix="/api/v1")
    register_event_handlers(app)
    return app


app = create_app()
