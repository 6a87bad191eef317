"""
Enrichment pipeline — Dashboard stats (read-only).
"""

import logging
from datetime import timedelta

from sqlalchemy import func, select

from prospect_api.config import settings
from prospect_api.database import async_session_factory
from prospect_api.models.audit_log import AuditLog
from prospect_api.models.enrichment_job import get_or_create_settings
from prospect_api.models.prospect import ProspectActivity
from prospect_api.services.batch_orchestrator import enrichment_queue, rate_limit_remaining
from prospect_api.services.lock_manager import utcnow
from prospect_api.services.status_machine import ENRICHED, ENRICHING, NEW, REVIEW

logger = logging.getLogger("enrichment.stats")


async def _count(db, stmt) -> int:
    return (await db.execute(stmt)).scalar() or 0


async def get_enrichment_stats() -> dict:
    """Queue size, review backlog, last-24h attempt/success counts and totals."""
    since = utcnow() - timedelta(hours=24)

    async with async_session_factory() as db:
        queue_count = await _count(db, select(func.count(ProspectActivity.id)).where(
            ProspectActivity.status.in_((NEW, ENRICHING)),
            ProspectActivity.enrichment_retry_count < settings.enrichment_max_retries,
        ))
        review_count = await _count(db, select(func.count(ProspectActivity.id)).where(
            ProspectActivity.status == REVIEW,
        ))
        attempts = select(func.count(AuditLog.id)).where(
            AuditLog.action_type == "ENRICHMENT_ATTEMPT",
            AuditLog.changed_at >= since,
        )
        last24h_attempts = await _count(db, attempts)
        last24h_successful = await _count(db, attempts.where(AuditLog.new_value == ENRICHED))

        totals = await get_or_create_settings(db)
        await db.commit()

    return {
        "queueCount": queue_count,
        "needsReviewCount": review_count,
        "last24hAttempts": last24h_attempts,
        "last24hSuccessful": last24h_successful,
        "totalEnriched": totals.total_enriched,
        "failedCount": totals.total_failed,
        "lastRunAt": totals.last_run_at.isoformat() if totals.last_run_at else None,
        "autoEnrichmentEnabled": totals.auto_enrichment_enabled,
        "pendingDispatch": enrichment_queue.pending,
        "rateLimitedForSeconds": int(rate_limit_remaining()),
    }
