"""
Batch Orchestrator — select, lock, dispatch.

Flow per batch:
    candidates (oldest-updated first) → skip live locks → acquire →
    new|review → enriching → JobItem(pending) → enqueue (fire-and-forget)

The call returns as soon as everything is queued. Workers finish in the
background and report through their JobItems; anything they leave behind is
picked up by the reconciliation sweeps.

A provider 429 trips a dispatch backoff and halts the queue (no retry is
charged); a 402 / credential error halts the queue and fails the job.
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import or_, select

from prospect_api.config import settings
from prospect_api.database import async_session_factory
from prospect_api.errors import (
    ConfigurationError,
    InvalidTransition,
    LockContention,
    ProspectNotFound,
    ProviderQuotaExhausted,
    ProviderRateLimited,
)
from prospect_api.models.enrichment_job import (
    EnrichmentJob,
    EnrichmentJobItem,
    get_or_create_settings,
    sync_job_counters,
)
from prospect_api.models.prospect import ProspectActivity
from prospect_api.services import lock_manager
from prospect_api.services.ai import ensure_configured
from prospect_api.services.audit import JOBS_TABLE, PROSPECTS_TABLE, record_audit
from prospect_api.services.enrichment_worker import enrich_prospect
from prospect_api.services.lock_manager import clear_lock, has_live_lock, utcnow
from prospect_api.services.notify import send_alert
from prospect_api.services.queue import EnrichmentQueue, EnrichmentTask
from prospect_api.services.status_machine import ENRICHING, NEW, REVIEW, apply_status

logger = logging.getLogger("enrichment.batch")

AUTO_SOURCE_STATUSES = (NEW, ENRICHING)
SOURCES = ("auto", "review")

# Global dispatch queue; workers run in the background
enrichment_queue = EnrichmentQueue(max_concurrent=settings.enrichment_concurrency)

_rate_limited_until: Optional[datetime] = None


# ── Provider backoff ────────────────────────────────────

def rate_limit_remaining(now: Optional[datetime] = None) -> float:
    """Seconds left on the dispatch backoff (0 when dispatch is allowed)."""
    if _rate_limited_until is None:
        return 0.0
    now = now or utcnow()
    return max((_rate_limited_until - now).total_seconds(), 0.0)


def trip_rate_limit(retry_after: Optional[float] = None) -> None:
    global _rate_limited_until
    seconds = retry_after or settings.rate_limit_backoff_seconds
    _rate_limited_until = utcnow() + timedelta(seconds=seconds)
    logger.warning("⏸️ Provider rate limited — dispatch paused for %ds", seconds)


def reset_rate_limit() -> None:
    global _rate_limited_until
    _rate_limited_until = None


def _check_dispatch_allowed() -> None:
    remaining = rate_limit_remaining()
    if remaining > 0:
        raise ProviderRateLimited(
            f"Provider rate limited — retry in {int(remaining)}s", retry_after=remaining
        )
    ensure_configured()


# ── Candidate selection ─────────────────────────────────

async def select_candidates(db, max_items: int, source: str = "auto") -> list[ProspectActivity]:
    """Eligible prospects, oldest-updated first, capped at ``max_items``."""
    stmt = select(ProspectActivity).where(
        ProspectActivity.enrichment_retry_count < settings.enrichment_max_retries
    )
    if source == "review":
        stmt = stmt.where(ProspectActivity.status == REVIEW)
    else:
        stmt = stmt.where(
            ProspectActivity.status.in_(AUTO_SOURCE_STATUSES),
            # contacts found but no opener yet still needs another pass
            or_(
                ProspectActivity.contact_count == 0,
                ProspectActivity.icebreaker_text.is_(None),
            ),
        )
    stmt = stmt.order_by(ProspectActivity.updated_at.asc()).limit(max_items)
    result = await db.execute(stmt)
    return list(result.scalars().all())


# ── Batch ───────────────────────────────────────────────

async def run_batch(
    max_items: Optional[int] = None,
    source: str = "auto",
    job_type: str = "auto",
) -> dict:
    """Select, lock and dispatch one batch. Returns {jobId, queued, skipped, results}.

    Raises ProviderRateLimited while the dispatch backoff is active and
    ConfigurationError when AI credentials are missing; nothing is locked or
    queued in either case.
    """
    if source not in SOURCES:
        raise ValueError(f"Unknown batch source: {source!r}")
    _check_dispatch_allowed()

    limit = max_items or settings.enrichment_batch_size
    job_id = str(uuid.uuid4())
    worker_id = f"{job_type}-batch:{job_id}"
    now = utcnow()

    async with async_session_factory() as db:
        candidates = await select_candidates(db, limit, source)
        db.add(EnrichmentJob(
            id=job_id,
            job_type=job_type,
            status="running",
            worker_id=worker_id,
            started_at=now,
        ))
        totals = await get_or_create_settings(db)
        totals.last_run_at = now
        await db.commit()

    logger.info("🚀 Batch %s (%s/%s): %d candidates", job_id, job_type, source, len(candidates))

    results: list[dict] = []
    tasks: list[EnrichmentTask] = []
    skipped = 0

    for candidate in candidates:
        entry = {"prospectId": candidate.id, "domain": candidate.domain}

        if has_live_lock(candidate):
            skipped += 1
            results.append({**entry, "status": "skipped", "reason": "locked"})
            continue
        if not await lock_manager.acquire(candidate.id, worker_id):
            skipped += 1
            results.append({**entry, "status": "skipped", "reason": "lock contention"})
            continue

        item_id = str(uuid.uuid4())
        try:
            async with async_session_factory() as db:
                prospect = await db.get(ProspectActivity, candidate.id)
                if prospect.status != ENRICHING:
                    apply_status(db, prospect, ENRICHING, changed_by=worker_id,
                                 context=f"Picked up by {job_type} batch {job_id}")
                db.add(EnrichmentJobItem(
                    id=item_id,
                    job_id=job_id,
                    prospect_id=prospect.id,
                    domain=prospect.domain,
                    status="pending",
                ))
                await db.commit()
        except InvalidTransition as e:
            # Status moved under us between selection and lock
            await lock_manager.release(candidate.id, worker_id)
            skipped += 1
            results.append({**entry, "status": "skipped", "reason": str(e)})
            continue

        tasks.append(EnrichmentTask(candidate.id, worker_id, job_id, item_id))
        results.append({**entry, "status": "queued", "itemId": item_id})

    async with async_session_factory() as db:
        job = await db.get(EnrichmentJob, job_id)
        job.total_count = len(tasks)
        if not tasks:
            job.status = "completed"
            job.completed_at = utcnow()
        await db.commit()

    for task in tasks:
        if not await enrichment_queue.enqueue(task):
            await discard_task(task, "already queued")

    logger.info("📬 Batch %s: queued=%d skipped=%d", job_id, len(tasks), skipped)
    return {"jobId": job_id, "queued": len(tasks), "skipped": skipped, "results": results}


async def trigger_batch_enrichment(
    max_items: Optional[int] = None,
    job_type: str = "manual",
    source: str = "auto",
) -> dict:
    """Manual / scheduled entry point → {jobId, queued, skipped}."""
    result = await run_batch(max_items=max_items, source=source, job_type=job_type)
    return {"jobId": result["jobId"], "queued": result["queued"], "skipped": result["skipped"]}


async def run_scheduled_enrichment() -> Optional[dict]:
    """Timer entry point: honours the auto-enrichment toggle, never raises."""
    async with async_session_factory() as db:
        totals = await get_or_create_settings(db)
        enabled = totals.auto_enrichment_enabled
        await db.commit()
    if not enabled:
        logger.debug("Auto-enrichment disabled — skipping scheduled batch")
        return None
    try:
        return await trigger_batch_enrichment(job_type="auto")
    except ProviderRateLimited as e:
        logger.warning("Scheduled batch skipped: %s", e)
    except ConfigurationError as e:
        logger.error("Scheduled batch aborted: %s", e)
    return None


# ── Queue callbacks ─────────────────────────────────────

async def process_task(task: EnrichmentTask) -> None:
    """Queue processor: run the worker, translate batch-level failures."""
    try:
        await enrich_prospect(task.prospect_id, task.worker_id, task.item_id)
    except ProviderRateLimited as e:
        trip_rate_limit(e.retry_after)
        await enrichment_queue.halt("rate_limited")
    except (ProviderQuotaExhausted, ConfigurationError) as e:
        await enrichment_queue.halt("aborted")
        if task.job_id:
            await fail_job(task.job_id, str(e))
        await send_alert("Enrichment batch aborted", [str(e)])


async def discard_task(task: EnrichmentTask, reason: str) -> None:
    """Undo a dispatched-but-never-run task: free the lock, close the item.

    Status stays as it is and no retry is charged.
    """
    item_status = "rate_limited" if reason == "rate_limited" else "failed"
    async with async_session_factory() as db:
        prospect = await db.get(ProspectActivity, task.prospect_id)
        if prospect is not None:
            owner = prospect.enrichment_locked_by
            if clear_lock(prospect, task.worker_id):
                record_audit(
                    db, table=PROSPECTS_TABLE, record_id=prospect.id,
                    action_type="LOCK_RELEASE", field_name="enrichment_locked_by",
                    old_value=owner, new_value=None,
                    business_context=f"Dispatch halted: {reason}", changed_by=task.worker_id,
                )
        if task.item_id:
            item = await db.get(EnrichmentJobItem, task.item_id)
            if item is not None and item.status == "pending":
                item.finish(item_status, f"Dispatch halted: {reason}")
                await sync_job_counters(db, item.job_id)
        await db.commit()


async def fail_job(job_id: str, error: str) -> None:
    """Mark a job failed (fatal provider/config error)."""
    async with async_session_factory() as db:
        job = await db.get(EnrichmentJob, job_id)
        if job is None or job.status in ("completed", "failed"):
            await db.commit()
            return
        old = job.status
        job.recount()
        job.status = "failed"
        job.error_message = error[:1000]
        job.completed_at = utcnow()
        record_audit(
            db, table=JOBS_TABLE, record_id=job_id, action_type="JOB_FAIL",
            field_name="status", old_value=old, new_value="failed",
            business_context=error[:500], changed_by=job.worker_id,
        )
        await db.commit()
    logger.error("💥 Job %s failed: %s", job_id, error)


enrichment_queue.set_processor(process_task)
enrichment_queue.set_discard_handler(discard_task)


# ── Single prospect ─────────────────────────────────────

async def enrich_single_prospect(prospect_id: str, changed_by: str = "admin") -> dict:
    """Synchronous one-off enrichment → {status, contactsFound, hasEmails}.

    Raises ProspectNotFound, InvalidTransition (prospect is past enrichment),
    LockContention, and the provider/config errors of the worker.
    """
    _check_dispatch_allowed()
    worker_id = f"manual:{uuid.uuid4().hex[:12]}"

    async with async_session_factory() as db:
        prospect = await db.get(ProspectActivity, prospect_id)
        if prospect is None:
            raise ProspectNotFound(prospect_id)
        if prospect.status not in (NEW, ENRICHING, REVIEW):
            raise InvalidTransition(prospect.status, ENRICHING)
        if has_live_lock(prospect):
            raise LockContention(prospect_id, prospect.enrichment_locked_by)

    if not await lock_manager.acquire(prospect_id, worker_id):
        raise LockContention(prospect_id)

    try:
        async with async_session_factory() as db:
            prospect = await db.get(ProspectActivity, prospect_id)
            if prospect.status != ENRICHING:
                apply_status(db, prospect, ENRICHING, changed_by=changed_by,
                             context="Manual single-prospect enrichment")
            await db.commit()
    except InvalidTransition:
        await lock_manager.release(prospect_id, worker_id)
        raise

    try:
        result = await enrich_prospect(prospect_id, worker_id)
    except ProviderRateLimited as e:
        trip_rate_limit(e.retry_after)
        raise
    return result.as_response()
