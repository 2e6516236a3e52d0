from __future__ import annotations

from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, HTTPException

from app.api.errors import register_api_exception_handlers
from app.api.router import router as api_router
from app.db.session import check_database, close_engine
from app.http.middleware import RequestLoggingMiddleware, parse_skip_paths
from app.logging_config import configure_logging, parse_redact_fields
from app.logging_utils import structured_log
from app.services.queries.execution import PageExecutionService
from app.services.queries.orchestrator import OrchestratorDispatcher, PaginationOrchestrator
from app.services.queries.scheduler import CombinationScheduler
from app.services.search.client import LiveSearchProvider
from app.services.search.credentials import DatabaseCredentialResolver
from app.settings import settings

logger = logging.getLogger(__name__)

configure_logging(
    level=settings.log_level,
    log_format=settings.log_format,
    redact_fields=parse_redact_fields(settings.log_redact_fields),
    include_uvicorn_access=settings.log_uvicorn_access,
)

orchestrator_dispatcher = OrchestratorDispatcher(
    PaginationOrchestrator(
        execution=PageExecutionService(
            provider=LiveSearchProvider(),
            credential_resolver=DatabaseCredentialResolver(),
        ),
    )
)
combination_scheduler = CombinationScheduler(
    enabled=settings.scheduler_enabled,
    tick_seconds=settings.scheduler_tick_seconds,
    batch_size=settings.scheduler_batch_size,
    dispatcher=orchestrator_dispatcher,
)


@asynccontextmanager
async def lifespan(application: FastAPI):
    structured_log(
        logger,
        "info",
        "app.startup",
        scheduler_enabled=settings.scheduler_enabled,
        log_format=settings.log_format,
    )
    application.state.orchestrator_dispatcher = orchestrator_dispatcher
    await combination_scheduler.start()
    yield
    await combination_scheduler.stop()
    await close_engine()


app = FastAPI(title=settings.app_name, lifespan=lifespan)
app.state.orchestrator_dispatcher = orchestrator_dispatcher
register_api_exception_handlers(app)
app.add_middleware(
    RequestLoggingMiddleware,
    log_requests=settings.log_requests,
    skip_paths=parse_skip_paths(settings.log_request_skip_paths),
)
app.include_router(api_router)


@app.get("/healthz")
async def healthz() -> dict[str, str]:
    if await check_database():
        return {"status": "ok"}
    raise HTTPException(status_code=500, detail="database unavailable")
