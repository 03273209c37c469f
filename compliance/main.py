"""Service entry point.

Serves the billing webhook, the public recovery and certificate routes and
`/health`, and runs the maintenance jobs (deletion sweep, export cleanup,
recovery-code cleanup) once an hour for the life of the process.

    python -m compliance.main
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import sys
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
import uvicorn
from fastapi import FastAPI

from compliance.api.router import router as gdpr_router
from compliance.config import settings
from compliance.db.engine import db_lifespan, ping
from compliance.events import emit, start_event_system, stop_event_system, subscribe, unsubscribe
from compliance.gdpr.jobs import run_deletion_sweep, run_export_cleanup, run_recovery_code_cleanup
from compliance.integrations.warehouse.client import warehouse
from compliance.schemas.events import EventType, SystemEvent
from compliance.security.audit import audit_on_event
from compliance.webhooks.billing import router as billing_router

MAINTENANCE_INTERVAL_SECONDS = 3600

MAINTENANCE_JOBS = (run_deletion_sweep, run_export_cleanup, run_recovery_code_cleanup)


def configure_logging() -> None:
    """Stdlib logging to stdout; structlog on top, JSON lines in production."""
    logging.basicConfig(
        level=getattr(logging, settings.log_level),
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
        stream=sys.stdout,
    )
    renderer = structlog.processors.JSONRenderer() if settings.is_production else structlog.dev.ConsoleRenderer()
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
    )


configure_logging()
logger = logging.getLogger(__name__)


async def _maintenance_loop() -> None:
    # Jobs catch their own failures and return a summary
    while True:
        for job in MAINTENANCE_JOBS:
            await job()
        await asyncio.sleep(MAINTENANCE_INTERVAL_SECONDS)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    logger.info("Starting data lifecycle service (env=%s)", settings.environment)

    async with db_lifespan():
        await start_event_system()
        subscribe(audit_on_event)
        await emit(SystemEvent(event_type=EventType.SYSTEM_STARTUP, source_module="main"))
        maintenance = asyncio.create_task(_maintenance_loop())

        try:
            yield
        finally:
            maintenance.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await maintenance
            await emit(SystemEvent(event_type=EventType.SYSTEM_SHUTDOWN, source_module="main"))
            await stop_event_system()
            unsubscribe(audit_on_event)
            await warehouse.dispose()

    logger.info("Data lifecycle service stopped")


app = FastAPI(
    title="Data Lifecycle Service",
    description="Export, scheduled deletion, recovery and deletion certificates",
    version="0.1.0",
    lifespan=lifespan,
)
app.include_router(billing_router)
app.include_router(gdpr_router)


@app.get("/health")
async def health_check() -> dict[str, str]:
    """Liveness plus reachability of the primary store and the warehouse."""
    primary = await ping()
    return {
        "status": "ok" if primary else "degraded",
        "environment": settings.environment,
        "primary_store": "up" if primary else "down",
        "warehouse": "up" if await ping(warehouse.engine) else "down",
    }


if __name__ == "__main__":
    uvicorn.run(
        "compliance.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.environment == "development",
        log_level=settings.log_level.lower(),
    )
