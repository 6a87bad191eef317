"""
API Routes — health, prospects, manual status changes.
"""

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from prospect_api.database import get_db
from prospect_api.errors import InvalidTransition
from prospect_api.models.prospect import ProspectActivity, Report
from prospect_api.schemas import (
    HealthResponse,
    ProspectCreate,
    ProspectOut,
    StatusUpdateRequest,
)
from prospect_api.services.audit import PROSPECTS_TABLE, record_audit
from prospect_api.services.batch_orchestrator import enrichment_queue
from prospect_api.services.domain_validation import clean_domain
from prospect_api.services.lock_manager import has_live_lock
from prospect_api.services.status_machine import apply_status, normalise_status

logger = logging.getLogger(__name__)

VERSION = "1.0.0"

router = APIRouter()


# ── Health ──────────────────────────────────────────────

@router.get("/health", response_model=HealthResponse, tags=["system"])
async def health():
    return HealthResponse(
        status="ok",
        timestamp=datetime.now(timezone.utc).isoformat(),
        version=VERSION,
        queue_pending=enrichment_queue.pending,
        queue_running=enrichment_queue.is_running,
    )


# ── Prospects ───────────────────────────────────────────

async def _get_prospect_or_404(session: AsyncSession, prospect_id: str) -> ProspectActivity:
    prospect = await session.get(ProspectActivity, prospect_id)
    if not prospect:
        raise HTTPException(404, f"Prospect {prospect_id} not found")
    return prospect


@router.post("/prospects", response_model=ProspectOut, status_code=201, tags=["prospects"])
async def create_prospect(req: ProspectCreate, session: AsyncSession = Depends(get_db)):
    """Select a domain for outreach: creates the Report and a `new` prospect."""
    domain = clean_domain(req.domain)
    existing = await session.execute(select(Report).where(Report.domain == domain))
    if existing.scalar_one_or_none():
        raise HTTPException(409, f"Domain {domain} already has a prospect")

    report = Report(domain=domain, company_name=req.company_name)
    prospect = ProspectActivity(report=report, contacts=[], source=req.source, status="new")
    session.add_all([report, prospect])
    try:
        await session.flush()
    except IntegrityError:
        await session.rollback()
        raise HTTPException(409, f"Domain {domain} already has a prospect")

    record_audit(
        session, table=PROSPECTS_TABLE, record_id=prospect.id, action_type="INSERT",
        field_name="status", old_value=None, new_value="new",
        business_context=f"Prospect created ({req.source}) for {domain}",
        changed_by="admin",
    )
    await session.commit()

    prospect = await _get_prospect_or_404(session, prospect.id)
    logger.info("➕ Prospect %s created for %s", prospect.id, domain)
    return prospect


@router.get("/prospects/{prospect_id}", response_model=ProspectOut, tags=["prospects"])
async def get_prospect(prospect_id: str, session: AsyncSession = Depends(get_db)):
    return await _get_prospect_or_404(session, prospect_id)


@router.patch("/prospects/{prospect_id}/status", response_model=ProspectOut, tags=["prospects"])
async def update_prospect_status(
    prospect_id: str,
    req: StatusUpdateRequest,
    session: AsyncSession = Depends(get_db),
):
    """Manual sales-pipeline progression or not_viable override."""
    try:
        new_status = normalise_status(req.status)
    except ValueError as e:
        raise HTTPException(422, str(e))

    prospect = await _get_prospect_or_404(session, prospect_id)
    if has_live_lock(prospect):
        raise HTTPException(409, f"Prospect {prospect_id} is being enriched by {prospect.enrichment_locked_by}")

    try:
        apply_status(
            session, prospect, new_status,
            changed_by=req.changed_by,
            context=req.reason or "Manual status change",
        )
    except InvalidTransition as e:
        raise HTTPException(409, str(e))

    await session.commit()
    return prospect
