"""
Enrichment pipeline — Cooperative per-prospect lock.

The lock is two columns on ProspectActivity (locked_at, locked_by). Acquire is
one conditional UPDATE so two concurrent callers can never both win; a lock
older than the timeout counts as absent. Release is idempotent.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import or_, update

from prospect_api.config import settings
from prospect_api.database import async_session_factory
from prospect_api.models.prospect import ProspectActivity

logger = logging.getLogger("enrichment.locks")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; every timestamp we store is UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def is_stale(
    locked_at: Optional[datetime],
    threshold_minutes: float,
    now: Optional[datetime] = None,
) -> bool:
    """True iff ``now - locked_at`` strictly exceeds the threshold."""
    if locked_at is None:
        return False
    now = as_utc(now) or utcnow()
    return now - as_utc(locked_at) > timedelta(minutes=threshold_minutes)


def has_live_lock(
    prospect: ProspectActivity,
    threshold_minutes: Optional[float] = None,
    now: Optional[datetime] = None,
) -> bool:
    """A lock exists and has not yet gone stale."""
    if prospect.enrichment_locked_at is None:
        return False
    threshold = settings.lock_timeout_minutes if threshold_minutes is None else threshold_minutes
    return not is_stale(prospect.enrichment_locked_at, threshold, now)


async def acquire(
    prospect_id: str,
    worker_id: str,
    timeout_minutes: Optional[float] = None,
) -> bool:
    """Take the lock for ``worker_id``. False (no mutation) when a live lock exists.

    No re-entrancy: a worker that already holds a live lock is refused as well.
    """
    timeout = settings.lock_timeout_minutes if timeout_minutes is None else timeout_minutes
    now = utcnow()
    cutoff = now - timedelta(minutes=timeout)

    async with async_session_factory() as db:
        result = await db.execute(
            update(ProspectActivity)
            .where(
                ProspectActivity.id == prospect_id,
                or_(
                    ProspectActivity.enrichment_locked_at.is_(None),
                    ProspectActivity.enrichment_locked_at < cutoff,
                ),
            )
            .values(enrichment_locked_at=now, enrichment_locked_by=worker_id)
            .execution_options(synchronize_session=False)
        )
        await db.commit()

    acquired = result.rowcount == 1
    if acquired:
        logger.debug("🔒 %s acquired lock on %s", worker_id, prospect_id)
    else:
        logger.debug("Lock on %s not available for %s", prospect_id, worker_id)
    return acquired


async def release(prospect_id: str, worker_id: Optional[str] = None) -> bool:
    """Clear both lock fields. Idempotent.

    With ``worker_id`` the release only applies while that worker still owns
    the lock. Returns True when a lock was actually cleared.
    """
    conditions = [
        ProspectActivity.id == prospect_id,
        or_(
            ProspectActivity.enrichment_locked_at.isnot(None),
            ProspectActivity.enrichment_locked_by.isnot(None),
        ),
    ]
    if worker_id is not None:
        conditions.append(ProspectActivity.enrichment_locked_by == worker_id)

    async with async_session_factory() as db:
        result = await db.execute(
            update(ProspectActivity)
            .where(*conditions)
            .values(enrichment_locked_at=None, enrichment_locked_by=None)
            .execution_options(synchronize_session=False)
        )
        await db.commit()

    if result.rowcount:
        logger.debug("🔓 Released lock on %s", prospect_id)
    return bool(result.rowcount)


def clear_lock(prospect: ProspectActivity, worker_id: Optional[str] = None) -> bool:
    """Release on an already-loaded row, inside the caller's transaction."""
    if prospect.enrichment_locked_at is None and prospect.enrichment_locked_by is None:
        return False
    if worker_id is not None and prospect.enrichment_locked_by != worker_id:
        return False
    prospect.enrichment_locked_at = None
    prospect.enrichment_locked_by = None
    return True
