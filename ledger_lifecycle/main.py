"""FastAPI application entry point for the ledger partition lifecycle service."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from ledger_lifecycle.api.exception_handlers import register_exception_handlers
from ledger_lifecycle.api.routes import partitions_router
from ledger_lifecycle.core import close_db, get_session_factory, get_settings, init_db
from ledger_lifecycle.core.logging import get_logger, setup_logging
from ledger_lifecycle.jobs.partition_scheduler_job import PartitionSchedulerJob

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None]:
    """Manage application lifecycle - startup and shutdown events."""
    # Initialize logging first (before any other initialization)
    setup_logging()

    settings = get_settings()
    await init_db()
    logger.info("Database initialized")

    scheduler = PartitionSchedulerJob.from_settings(settings, get_session_factory())
    app.state.partition_scheduler = scheduler
    if settings.partition_scheduler_enabled:
        await scheduler.start()
        logger.info("Partition scheduler started")
    else:
        logger.info("Partition scheduler disabled (PARTITION_SCHEDULER_ENABLED=false)")

    yield

    await scheduler.stop()
    logger.info("Partition scheduler stopped")
    await close_db()
    logger.info("Database connections closed")


app = FastAPI(
    title="Ledger Partition Lifecycle API",
    description="Creation, archival and deletion of day partitions of the ledger table",
    version="0.1.0",
    lifespan=lifespan,
)

register_exception_handlers(app)
app.include_router(partitions_router)


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint - basic health check."""
    return {"message": "Ledger Partition Lifecycle API is running"}


@app.get("/api/metrics")
async def metrics() -> Response:
    """Prometheus metrics in exposition format."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(app, host=settings.api_host, port=settings.api_port)
