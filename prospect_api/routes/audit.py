"""
Audit Log API — read-only feed of pipeline mutations for the admin UI.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from prospect_api.database import get_db
from prospect_api.models.audit_log import AuditLog
from prospect_api.schemas import AuditLogOut

logger = logging.getLogger(__name__)

audit_router = APIRouter(tags=["audit"])


@audit_router.get("/audit-logs", response_model=list[AuditLogOut])
async def list_audit_logs(
    table: Optional[str] = None,
    record_id: Optional[str] = Query(None, alias="recordId"),
    action_type: Optional[str] = Query(None, alias="actionType"),
    limit: int = Query(50, ge=1, le=500),
    session: AsyncSession = Depends(get_db),
):
    """Newest first, optionally filtered by table / record / action."""
    stmt = select(AuditLog)
    if table:
        stmt = stmt.where(AuditLog.table_name == table)
    if record_id:
        stmt = stmt.where(AuditLog.record_id == record_id)
    if action_type:
        stmt = stmt.where(AuditLog.action_type == action_type)
    result = await session.execute(stmt.order_by(AuditLog.changed_at.desc()).limit(limit))
    return list(result.scalars().all())
