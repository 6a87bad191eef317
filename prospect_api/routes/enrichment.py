"""
Enrichment API Routes — batch trigger, single enrichment, stats, jobs,
graceful stop, reconciliation sweeps and the auto-enrichment toggle.

Pipeline errors map to HTTP status codes:
    ProspectNotFound / JobNotFound  → 404
    LockContention / InvalidTransition → 409
    ProviderRateLimited → 429, ProviderQuotaExhausted → 402
    ConfigurationError → 503
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from prospect_api.database import get_db
from prospect_api.errors import (
    ConfigurationError,
    InvalidTransition,
    JobNotFound,
    LockContention,
    ProspectNotFound,
    ProviderError,
    ProviderQuotaExhausted,
    ProviderRateLimited,
)
from prospect_api.models.enrichment_job import EnrichmentJob, get_or_create_settings
from prospect_api.schemas import (
    BatchRequest,
    BatchResponse,
    EnrichmentSettingsOut,
    EnrichmentSettingsUpdate,
    GracefulStopResponse,
    JobDetailOut,
    JobListResponse,
    JobOut,
    ReconcileResponse,
    SingleEnrichResponse,
    StatsResponse,
    StuckJobSweepResponse,
    StuckLockSweepResponse,
)
from prospect_api.services import batch_orchestrator, reconciliation, stats

logger = logging.getLogger(__name__)

enrichment_router = APIRouter(prefix="/enrichment", tags=["enrichment"])


def _http_error(exc: Exception) -> HTTPException:
    """Translate a pipeline exception into the matching HTTPException."""
    if isinstance(exc, (ProspectNotFound, JobNotFound)):
        return HTTPException(404, str(exc))
    if isinstance(exc, (LockContention, InvalidTransition)):
        return HTTPException(409, str(exc))
    if isinstance(exc, ProviderRateLimited):
        headers = {"Retry-After": str(int(exc.retry_after))} if exc.retry_after else None
        return HTTPException(429, str(exc), headers=headers)
    if isinstance(exc, ProviderQuotaExhausted):
        return HTTPException(402, str(exc))
    if isinstance(exc, ConfigurationError):
        return HTTPException(503, str(exc))
    return HTTPException(502, str(exc))


# ── Batch + single ──────────────────────────────────────

@enrichment_router.post("/batch", response_model=BatchResponse, status_code=202)
async def trigger_batch(req: Optional[BatchRequest] = None):
    """Queue a batch. Returns as soon as work is dispatched."""
    req = req or BatchRequest()
    try:
        return await batch_orchestrator.run_batch(
            max_items=req.max_items, source=req.source, job_type="manual"
        )
    except (ProviderRateLimited, ConfigurationError) as e:
        raise _http_error(e)


@enrichment_router.post("/prospects/{prospect_id}", response_model=SingleEnrichResponse)
async def enrich_single(prospect_id: str):
    """Synchronous enrichment of one prospect (manual retry / re-run)."""
    try:
        return await batch_orchestrator.enrich_single_prospect(prospect_id)
    except (ProspectNotFound, InvalidTransition, LockContention, ProviderError,
            ConfigurationError) as e:
        raise _http_error(e)


# ── Stats ───────────────────────────────────────────────

@enrichment_router.get("/stats", response_model=StatsResponse)
async def enrichment_stats():
    return await stats.get_enrichment_stats()


# ── Jobs ────────────────────────────────────────────────

@enrichment_router.get("/jobs", response_model=JobListResponse)
async def list_jobs(
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    status: Optional[str] = None,
    session: AsyncSession = Depends(get_db),
):
    stmt = select(EnrichmentJob)
    count_stmt = select(func.count(EnrichmentJob.id))
    if status:
        stmt = stmt.where(EnrichmentJob.status == status)
        count_stmt = count_stmt.where(EnrichmentJob.status == status)
    result = await session.execute(
        stmt.order_by(EnrichmentJob.created_at.desc()).offset(offset).limit(limit)
    )
    total = (await session.execute(count_stmt)).scalar() or 0
    jobs = [JobOut.model_validate(j) for j in result.scalars().all()]
    return JobListResponse(jobs=jobs, total=total)


@enrichment_router.get("/jobs/{job_id}", response_model=JobDetailOut)
async def get_job(job_id: str, session: AsyncSession = Depends(get_db)):
    job = await session.get(EnrichmentJob, job_id)
    if not job:
        raise HTTPException(404, f"Enrichment job {job_id} not found")
    return job


@enrichment_router.post("/jobs/{job_id}/stop", response_model=GracefulStopResponse)
async def stop_job(job_id: str):
    """Graceful stop: in-flight items → stopped, locks released."""
    try:
        return await reconciliation.graceful_stop(job_id)
    except JobNotFound as e:
        raise _http_error(e)


# ── Reconciliation ──────────────────────────────────────

@enrichment_router.post("/reconcile", response_model=ReconcileResponse)
async def reconcile():
    """State/data reconciliation. Safe to call on a schedule."""
    return await reconciliation.reconcile_state()


@enrichment_router.post("/sweeps/stuck-locks", response_model=StuckLockSweepResponse)
async def sweep_stuck_locks():
    return await reconciliation.sweep_stuck_locks()


@enrichment_router.post("/sweeps/stuck-jobs", response_model=StuckJobSweepResponse)
async def sweep_stuck_jobs():
    return await reconciliation.sweep_stuck_jobs()


# ── Settings ────────────────────────────────────────────

@enrichment_router.get("/settings", response_model=EnrichmentSettingsOut)
async def get_settings(session: AsyncSession = Depends(get_db)):
    row = await get_or_create_settings(session)
    await session.commit()
    return row


@enrichment_router.patch("/settings", response_model=EnrichmentSettingsOut)
async def update_settings(req: EnrichmentSettingsUpdate, session: AsyncSession = Depends(get_db)):
    row = await get_or_create_settings(session)
    row.auto_enrichment_enabled = req.auto_enrichment_enabled
    await session.commit()
    logger.info("Auto-enrichment %s", "enabled" if req.auto_enrichment_enabled else "disabled")
    return row
