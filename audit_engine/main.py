"""
Audit & Security Engine — FastAPI Application.

This is the entry point for the application.
All routers are registered here.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from audit_engine.config import get_settings
from audit_engine.logging_config import setup_logging
from audit_engine.models.base import SessionLocal
from audit_engine.services.reputation import default_oracle
from audit_engine.services.workers import start_workers
from audit_engine.api.health import router as health_router
from audit_engine.api.audit import router as audit_router
from audit_engine.api.security_events import router as security_events_router
from audit_engine.api.profiles import router as profiles_router
from audit_engine.api.kyc import router as kyc_router
from audit_engine.api.summary import router as summary_router

settings = get_settings()
setup_logging()

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    workers = []
    if settings.RUN_BACKGROUND_WORKERS:
        workers = start_workers(SessionLocal, settings, default_oracle())
    logger.info(
        "application started",
        extra={"environment": settings.ENVIRONMENT, "workers": len(workers)},
    )
    yield
    for worker in workers:
        worker.stop(timeout=settings.CONSUMER_POLL_SECONDS * 2)
    logger.info("application stopped")


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Append-only audit log with risk scoring, threat correlation and KYC review",
    lifespan=lifespan,
)

# Register routers
app.include_router(health_router)
app.include_router(audit_router)
app.include_router(security_events_router)
app.include_router(profiles_router)
app.include_router(kyc_router)
app.include_router(summary_router)
