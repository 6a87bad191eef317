"""
FastAPI Application — entry point.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Awaitable, Callable

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from prospect_api.config import settings
from prospect_api.database import init_db, close_db
from prospect_api.routes import router, VERSION
from prospect_api.routes.audit import audit_router
from prospect_api.routes.enrichment import enrichment_router
from prospect_api.services.batch_orchestrator import enrichment_queue, run_scheduled_enrichment
from prospect_api.services.reconciliation import run_all_sweeps

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s  %(levelname)-8s  %(name)s  %(message)s",
)

logger = logging.getLogger(__name__)


async def periodic(name: str, fn: Callable[[], Awaitable[object]], interval: int) -> None:
    """Run ``fn`` every ``interval`` seconds until cancelled."""
    while True:
        try:
            await asyncio.sleep(interval)
            await fn()
        except asyncio.CancelledError:
            break
        except Exception as e:
            logger.error("%s loop error: %s", name, e)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown hook."""
    logger.info("🚀 Starting Prospect Enrichment API v%s", VERSION)
    await init_db()
    logger.info("✅ Database ready")

    # Repair anything a previous process left locked or running
    try:
        results = await run_all_sweeps()
        logger.info("🧹 Startup sweeps: %s", results)
    except Exception as e:
        logger.error("Startup sweeps failed: %s", e)

    loops: list[asyncio.Task] = []
    if settings.auto_enrichment_interval > 0:
        loops.append(asyncio.create_task(
            periodic("auto-enrichment", run_scheduled_enrichment, settings.auto_enrichment_interval)
        ))
    if settings.sweep_interval > 0:
        loops.append(asyncio.create_task(
            periodic("sweeps", run_all_sweeps, settings.sweep_interval)
        ))

    yield

    # Shutdown
    for task in loops:
        task.cancel()
    for task in loops:
        try:
            await task
        except asyncio.CancelledError:
            pass
    dropped = await enrichment_queue.halt("shutdown")
    if dropped:
        logger.info("⏹️ Released %d queued task(s) on shutdown", dropped)
    await close_db()
    logger.info("👋 Shutdown complete")


app = FastAPI(
    title="Prospect Enrichment API",
    description=(
        "Enrichment pipeline for the outreach CRM — locks, status machine, "
        "batch dispatch and reconciliation sweeps."
    ),
    version=VERSION,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(router, prefix="/api/v1")
app.include_router(enrichment_router, prefix="/api/v1")
app.include_router(audit_router, prefix="/api/v1")


@app.get("/", include_in_schema=False)
async def root():
    return {
        "service": "Prospect Enrichment API",
        "version": VERSION,
        "docs": "/docs",
    }
