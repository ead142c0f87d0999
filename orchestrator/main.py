import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import DBAPIError

from orchestrator.settings import settings
from orchestrator.api.v1.pipelines import router as pipelines_router
from orchestrator.api.v1.runs import router as runs_router
from orchestrator.api.v1.tasks import router as tasks_router
from orchestrator.api.v1.workers import router as workers_router
from orchestrator.api.v1.dlq import router as dlq_router
from orchestrator.api.v1.admin import router as admin_router
from orchestrator.api.v1.metrics import router as metrics_router

logger = logging.getLogger(__name__)

@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    from orchestrator.db.session import create_schema
    from orchestrator.pipelines import load_definitions, registry
    from orchestrator.scheduler.service import SchedulerService

    # 1. Dev bootstrap: production schema is owned by migrations
    if settings.AUTO_CREATE_SCHEMA:
        await create_schema()
        logger.info("Database schema ensured.")

    # 2. Pipeline definitions (validated here, read-only afterwards)
    if settings.PIPELINES_FILE:
        for definition in load_definitions(settings.PIPELINES_FILE):
            registry.register(definition)
        logger.info("Loaded %s pipeline definitions from %s", len(registry.list()), settings.PIPELINES_FILE)

    # 3. Start Scheduler (reaper, DLQ retention, gauges)
    scheduler = SchedulerService()
    await scheduler.start()

    yield

    # Shutdown
    await scheduler.stop()

app = FastAPI(
    title=settings.PROJECT_NAME,
    lifespan=lifespan
)

app.include_router(pipelines_router, prefix="/api/v1/pipelines", tags=["pipelines"])
app.include_router(runs_router, prefix="/api/v1/runs", tags=["runs"])
app.include_router(tasks_router, prefix="/api/v1/tasks", tags=["tasks"])
app.include_router(workers_router, prefix="/api/v1/workers", tags=["workers"])
app.include_router(dlq_router, prefix="/api/v1/dlq", tags=["dlq"])
app.include_router(admin_router, prefix="/api/v1/admin", tags=["admin"])
app.include_router(metrics_router, tags=["metrics"])

@app.exception_handler(DBAPIError)
async def database_unavailable(request: Request, exc: DBAPIError):
    # Nothing was committed; the session rolls back on close
    logger.error("Database error on %s %s: %s", request.method, request.url.path, exc.orig)
    return JSONResponse(status_code=503, content={"detail": "Database unavailable"})

@app.get("/health")
async def health():
    return {"status": "ok"}
