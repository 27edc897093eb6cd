"""
Billing API: refunds, financial reports, subscription admin, provider webhooks, metrics.
The reconciliation scheduler runs inside this process unless SCHEDULER_ENABLED=false.
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.concurrency import run_in_threadpool

from billing.api.routes import admin, health, webhooks
from billing.core.config import settings
from billing.core.logging import configure_logging
from billing.services.reconciliation.runner import ScheduledReconciliationRunner
from billing.utils.metrics import router as metrics_router

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    runner = None
    if settings.scheduler_enabled:
        runner = ScheduledReconciliationRunner()
        runner.start()
    app.state.reconciliation_runner = runner
    try:
        yield
    finally:
        if runner is not None:
            # stop() waits for in-flight ticks; keep the event loop free meanwhile
            await run_in_threadpool(runner.stop)


app = FastAPI(
    title="Billing API",
    description="Refunds, subscription lifecycle and financial reporting",
    version="1.0.0",
    lifespan=lifespan,
)

# CORS
origins = [o.strip() for o in settings.cors_origins.split(",") if o.strip()]
if not origins:
    origins = ["http://localhost:3000", "http://127.0.0.1:3000"]
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Routers
app.include_router(health.router, tags=["health"])
app.include_router(admin.router)
app.include_router(webhooks.router)
app.include_router(metrics_router)
