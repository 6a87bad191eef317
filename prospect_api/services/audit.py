"""
Enrichment pipeline — Audit side-channel.

Every state mutation the pipeline performs is mirrored into the append-only
``audit_logs`` table as {table, record, action, field, old → new, context, who}.
"""

import logging
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from prospect_api.models.audit_log import AuditLog

logger = logging.getLogger("enrichment.audit")

PROSPECTS_TABLE = "prospect_activities"
JOBS_TABLE = "enrichment_jobs"


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    return str(value)


def record_audit(
    db: AsyncSession,
    *,
    table: str,
    record_id: str,
    action_type: str,
    field_name: str | None = None,
    old_value: Any = None,
    new_value: Any = None,
    business_context: str = "",
    changed_by: str = "system",
) -> AuditLog:
    """Add an audit row to the caller's session. The caller's commit persists it."""
    entry = AuditLog(
        table_name=table,
        record_id=str(record_id),
        action_type=action_type,
        field_name=field_name,
        old_value=_text(old_value),
        new_value=_text(new_value),
        business_context=business_context,
        changed_by=changed_by,
    )
    db.add(entry)
    logger.debug("Audit %s %s/%s %s: %s → %s", action_type, table, record_id,
                 field_name, entry.old_value, entry.new_value)
    return entry

