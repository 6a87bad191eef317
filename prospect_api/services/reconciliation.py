"""
Reconciliation & Cleanup — repair state left behind by crashed or slow workers.

Three idempotent sweeps, each safe to run on any schedule:

  * sweep_stuck_locks  — force-release locks older than the stuck threshold
  * sweep_stuck_jobs   — fail running jobs that stopped making progress
  * reconcile_state    — recompute status/contact_count from stored data

Plus ``graceful_stop`` for user-requested cancellation of a running job.
None of these charge the retry budget: a crash or a stop is not the
prospect's fault. Every correction writes an audit row.
"""

import logging
from datetime import timedelta
from typing import Optional

from sqlalchemy import and_, or_, select

from prospect_api.config import settings
from prospect_api.database import async_session_factory
from prospect_api.errors import JobNotFound
from prospect_api.models.enrichment_job import (
    JOB_ITEM_IN_FLIGHT,
    EnrichmentJob,
    EnrichmentJobItem,
    sync_job_counters,
)
from prospect_api.models.prospect import ProspectActivity
from prospect_api.services.audit import JOBS_TABLE, PROSPECTS_TABLE, record_audit
from prospect_api.services.batch_orchestrator import enrichment_queue
from prospect_api.services.lock_manager import as_utc, clear_lock, has_live_lock, utcnow
from prospect_api.services.notify import send_alert
from prospect_api.services.status_machine import (
    ENRICHED,
    ENRICHING,
    PIPELINE_STATUSES,
    REVIEW,
    apply_field,
    apply_status,
    load_facts,
    resolve_repair_status,
)

logger = logging.getLogger("enrichment.reconcile")

SYSTEM_ACTOR = "system:reconciliation"


def _describe(facts) -> str:
    return (
        f"{facts.acceptable_contacts} acceptable of {facts.total_contacts} contacts, "
        f"icebreaker={'yes' if facts.has_icebreaker else 'no'}, "
        f"company={'yes' if facts.has_company_name else 'no'}, "
        f"retries={facts.retry_count}"
    )


async def _repair_prospect(
    db,
    prospect: ProspectActivity,
    *,
    context: str,
    changed_by: str = SYSTEM_ACTOR,
    leave_enriching: bool = False,
    force: bool = True,
) -> Optional[str]:
    """Re-derive a pipeline-owned prospect's status. Returns the new status if it changed."""
    if prospect.status not in PIPELINE_STATUSES:
        return None
    facts = await load_facts(db, prospect)
    target = resolve_repair_status(prospect.status, facts, leave_enriching=leave_enriching)
    apply_field(db, prospect, "contact_count", facts.acceptable_contacts,
                changed_by=changed_by, context=context, action_type="RECONCILE")
    changed = apply_status(
        db, prospect, target,
        changed_by=changed_by,
        context=f"{context} ({_describe(facts)})",
        force=force,
        action_type="RECONCILE" if force else "STATUS_CHANGE",
    )
    return target if changed else None


def _audit_lock_release(db, prospect_id: str, owner: Optional[str], context: str, changed_by: str):
    record_audit(
        db, table=PROSPECTS_TABLE, record_id=prospect_id,
        action_type="LOCK_RELEASE", field_name="enrichment_locked_by",
        old_value=owner, new_value=None,
        business_context=context, changed_by=changed_by,
    )


# ── Stuck-lock sweep ────────────────────────────────────

async def sweep_stuck_locks(threshold_minutes: Optional[float] = None) -> dict:
    """Force-release locks older than the threshold and re-derive status.

    Returns {released, statusChanged, itemsFailed}.
    """
    threshold = settings.stuck_lock_minutes if threshold_minutes is None else threshold_minutes
    now = utcnow()
    cutoff = now - timedelta(minutes=threshold)
    stats = {"released": 0, "statusChanged": 0, "itemsFailed": 0}

    async with async_session_factory() as db:
        result = await db.execute(
            select(ProspectActivity).where(
                or_(
                    ProspectActivity.enrichment_locked_at < cutoff,
                    # half-written lock: owner without timestamp
                    and_(
                        ProspectActivity.enrichment_locked_at.is_(None),
                        ProspectActivity.enrichment_locked_by.isnot(None),
                    ),
                )
            )
        )
        for prospect in result.scalars().all():
            owner = prospect.enrichment_locked_by
            locked_at = as_utc(prospect.enrichment_locked_at)
            age = int((now - locked_at).total_seconds() // 60) if locked_at else None
            context = f"Stale lock held by {owner} for {age} min force-released"

            clear_lock(prospect)
            _audit_lock_release(db, prospect.id, owner, context, SYSTEM_ACTOR)
            stats["released"] += 1

            # The crashed worker's item would otherwise stay in flight forever
            items = await db.execute(
                select(EnrichmentJobItem)
                .join(EnrichmentJob, EnrichmentJob.id == EnrichmentJobItem.job_id)
                .where(
                    EnrichmentJobItem.prospect_id == prospect.id,
                    EnrichmentJobItem.status.in_(JOB_ITEM_IN_FLIGHT),
                    EnrichmentJob.worker_id == owner,
                )
            )
            for item in items.scalars().all():
                item.finish("failed", "Lock expired — worker presumed crashed")
                await sync_job_counters(db, item.job_id)
                stats["itemsFailed"] += 1

            if await _repair_prospect(db, prospect, context=context):
                stats["statusChanged"] += 1

        await db.commit()

    if stats["released"]:
        logger.info("🧹 Stuck-lock sweep: %s", stats)
    return stats


# ── Stuck-job sweep ─────────────────────────────────────

async def sweep_stuck_jobs(threshold_minutes: Optional[float] = None) -> dict:
    """Fail running jobs idle longer than the threshold.

    In-flight items → failed (timeout), locks held by the job's worker →
    released, affected prospects re-derived. Returns
    {jobsFailed, itemsFailed, locksReleased}.
    """
    threshold = settings.stuck_job_minutes if threshold_minutes is None else threshold_minutes
    cutoff = utcnow() - timedelta(minutes=threshold)
    stats = {"jobsFailed": 0, "itemsFailed": 0, "locksReleased": 0}
    failed_jobs: list[str] = []

    async with async_session_factory() as db:
        result = await db.execute(
            select(EnrichmentJob).where(
                EnrichmentJob.status == "running",
                EnrichmentJob.updated_at < cutoff,
            )
        )
        for job in result.scalars().all():
            enrichment_queue.drop_job(job.id)
            timeout_msg = f"Timed out: no progress for over {int(threshold)} minutes"

            for item in job.items:
                if item.status not in JOB_ITEM_IN_FLIGHT:
                    continue
                item.finish("failed", timeout_msg)
                stats["itemsFailed"] += 1

                prospect = await db.get(ProspectActivity, item.prospect_id)
                if prospect is None:
                    continue
                if clear_lock(prospect, job.worker_id):
                    _audit_lock_release(db, prospect.id, job.worker_id,
                                        f"Job {job.id} timed out", SYSTEM_ACTOR)
                    stats["locksReleased"] += 1
                    await _repair_prospect(db, prospect, context=f"Job {job.id} timed out")

            job.recount()
            job.status = "failed"
            job.error_message = timeout_msg
            job.completed_at = utcnow()
            record_audit(
                db, table=JOBS_TABLE, record_id=job.id, action_type="JOB_FAIL",
                field_name="status", old_value="running", new_value="failed",
                business_context=timeout_msg, changed_by=SYSTEM_ACTOR,
            )
            stats["jobsFailed"] += 1
            failed_jobs.append(job.id)

        await db.commit()

    if failed_jobs:
        logger.error("💥 Stuck-job sweep failed %d job(s): %s", len(failed_jobs), stats)
        await send_alert(
            "Stuck enrichment jobs failed",
            [f"Jobs: {', '.join(j[:8] for j in failed_jobs)}",
             f"Items timed out: {stats['itemsFailed']}",
             f"Locks released: {stats['locksReleased']}"],
        )
    return stats


# ── State / data reconciliation ─────────────────────────

async def reconcile_state() -> dict:
    """Recompute status + contact_count for every pipeline-owned prospect.

    Records under a live lock belong to their worker and are skipped.
    Running it twice in a row yields zero corrections the second time.
    Returns {promoted, movedToReview, resetToEnriching, alreadyCorrect,
    contactCountFixed, skippedLocked}.
    """
    stats = {
        "promoted": 0,
        "movedToReview": 0,
        "resetToEnriching": 0,
        "alreadyCorrect": 0,
        "contactCountFixed": 0,
        "skippedLocked": 0,
    }

    async with async_session_factory() as db:
        result = await db.execute(
            select(ProspectActivity)
            .where(ProspectActivity.status.in_(PIPELINE_STATUSES))
            .order_by(ProspectActivity.created_at)
        )
        for prospect in result.scalars().all():
            if has_live_lock(prospect):
                stats["skippedLocked"] += 1
                continue

            facts = await load_facts(db, prospect)
            target = resolve_repair_status(prospect.status, facts)
            count_ok = prospect.contact_count == facts.acceptable_contacts
            if target == prospect.status and count_ok:
                stats["alreadyCorrect"] += 1
                continue

            changed = await _repair_prospect(db, prospect, context="State/data reconciliation")
            if changed == ENRICHED:
                stats["promoted"] += 1
            elif changed == REVIEW:
                stats["movedToReview"] += 1
            elif changed == ENRICHING:
                stats["resetToEnriching"] += 1
            else:
                stats["contactCountFixed"] += 1

        await db.commit()

    logger.info("🔁 Reconciliation: %s", stats)
    return stats


# ── Graceful stop ───────────────────────────────────────

async def graceful_stop(job_id: str, changed_by: str = "admin") -> dict:
    """Stop a job: in-flight items → stopped, locks released, prospects moved
    to the best status their partial data supports (never left enriching).

    Returns {enriched, noContacts, failed, stopped}.
    """
    summary = {"enriched": 0, "noContacts": 0, "failed": 0, "stopped": 0}

    async with async_session_factory() as db:
        job = await db.get(EnrichmentJob, job_id)
        if job is None:
            raise JobNotFound(job_id)

        active = job.status in ("queued", "running")
        if active:
            enrichment_queue.drop_job(job_id)

        for item in job.items:
            if item.status == "success":
                if item.has_emails:
                    summary["enriched"] += 1
                elif not item.contacts_found:
                    summary["noContacts"] += 1
                else:
                    summary["failed"] += 1
            elif item.status in ("failed", "rate_limited"):
                summary["failed"] += 1
            elif item.status == "stopped":
                summary["stopped"] += 1
            elif item.status in JOB_ITEM_IN_FLIGHT and active:
                item.finish("stopped", "Stopped by user")
                summary["stopped"] += 1

                prospect = await db.get(ProspectActivity, item.prospect_id)
                if prospect is None or not clear_lock(prospect, job.worker_id):
                    continue
                _audit_lock_release(db, prospect.id, job.worker_id,
                                    f"Job {job_id} stopped by user", changed_by)
                if prospect.status == ENRICHING:
                    await _repair_prospect(
                        db, prospect,
                        context=f"Job {job_id} stopped by user",
                        changed_by=changed_by,
                        leave_enriching=True,
                        force=False,
                    )

        if active:
            job.recount()
            job.status = "completed"
            job.stopped_reason = "user_requested"
            job.completed_at = utcnow()
            record_audit(
                db, table=JOBS_TABLE, record_id=job_id, action_type="JOB_STOP",
                field_name="status", old_value="running", new_value="completed",
                business_context=(
                    f"Stopped by user: {summary['enriched']} enriched, "
                    f"{summary['noContacts']} no contacts, {summary['failed']} failed, "
                    f"{summary['stopped']} stopped"
                ),
                changed_by=changed_by,
            )
        await db.commit()

    logger.info("🛑 Job %s stopped: %s", job_id, summary)
    return summary


# ── Scheduler entry ─────────────────────────────────────

async def run_all_sweeps() -> dict:
    """Run every sweep; one failing never blocks the others."""
    results: dict = {}
    for name, sweep in (
        ("stuckJobs", sweep_stuck_jobs),
        ("stuckLocks", sweep_stuck_locks),
        ("reconcile", reconcile_state),
    ):
        try:
            results[name] = await sweep()
        except Exception as e:
            logger.error("Sweep %s failed: %s", name, e)
            results[name] = {"error": str(e)}
    return results
