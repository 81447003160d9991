"""Loyalty Ledger - FastAPI Application.

Hosts the accrual reconciliation worker next to health endpoints.
"""

import asyncio
import logging
from contextlib import asynccontextmanager, suppress

from fastapi import FastAPI
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from loyalty.api import mocks
from loyalty.bridges.accrual import AccrualClient
from loyalty.core.config import settings
from loyalty.core.logger import setup_logging
from loyalty.db.session import async_session_maker, engine
from loyalty.services.accrual_worker import AccrualWorker
from loyalty.services.ledger_store import LedgerStore
from loyalty.services.mocks import accrual_mock_instance

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging(settings.LOG_LEVEL, settings.LOG_JSON)

    client = AccrualClient()
    worker = AccrualWorker.from_settings(LedgerStore(async_session_maker), client, settings)
    app.state.worker = worker

    task = None
    if settings.ACCRUAL_WORKER_ENABLED:
        task = asyncio.create_task(worker.run(), name="accrual-worker")
    else:
        logger.info("Accrual worker disabled by configuration")

    try:
        yield
    finally:
        if task is not None:
            # interrupts in-flight oracle calls and rolls back open transactions
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
        await client.close()
        await engine.dispose()


app = FastAPI(
    title=settings.APP_NAME,
    description="Loyalty Ledger - accrual reconciliation service",
    version="1.0.0",
    lifespan=lifespan,
)

if settings.DEBUG:
    accrual_mock_instance.random_mode = settings.ACCRUAL_MOCK_RANDOM
    app.include_router(mocks.router)  # Mock accrual system controls
    app.include_router(mocks.accrual_api_router)  # Mock accrual wire contract


@app.get("/")
async def root():
    """Service info."""
    return {
        "service": settings.APP_NAME,
        "version": "1.0.0",
        "status": "operational",
    }


@app.get("/health")
async def health():
    """Detailed health check."""
    database = "connected"
    try:
        async with async_session_maker() as session:
            await session.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        logger.error(f"Health check database ping failed: {e}")
        database = "unreachable"

    worker: AccrualWorker = app.state.worker
    return {
        "status": "healthy" if database == "connected" else "degraded",
        "database": database,
        "accrual_worker": {
            "running": worker.running,
            "cycles": worker.cycles,
            "cooldown_remaining": round(worker.cooldown.remaining, 1),
        },
    }
